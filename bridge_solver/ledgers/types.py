from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Protocol

from bridge_solver.orders.types import AttestationHandle, Order


@dataclass(slots=True, frozen=True)
class OrderEvent:
    order: Order
    cursor: str | None


@dataclass(slots=True, frozen=True)
class OrderEventPage:
    events: list[OrderEvent]
    next_cursor: str | None
    has_more: bool = False


class SourceLedger(Protocol):
    name: str

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def healthcheck(self) -> None:
        ...

    async def fetch_order_events(self, *, cursor: str | None, limit: int) -> OrderEventPage:
        ...

    def subscribe_order_events(self, *, idle_timeout_seconds: float) -> AsyncIterator[OrderEvent]:
        ...

    async def open_order_ids(self, orders: list[Order]) -> set[str]:
        ...

    async def current_required_amount(self, order_id: str) -> int | None:
        ...

    def solver_identity(self) -> bytes:
        ...

    async def settle(self, *, order: Order, vaa: bytes, timeout_seconds: float) -> str:
        ...


class DestinationLedger(Protocol):
    name: str
    emitter_chain: int

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def healthcheck(self) -> None:
        ...

    async def native_balance(self) -> int:
        ...

    async def fulfillment_overhead(self) -> int:
        ...

    async def submit_fulfillment(self, *, order: Order, amount: int, solver_identity: bytes) -> str:
        ...

    async def wait_for_confirmation(self, tx_hash: str, *, timeout_seconds: float) -> None:
        ...

    async def transaction_status(self, tx_hash: str) -> bool | None:
        ...

    async def parse_emitted_message(self, tx_hash: str) -> AttestationHandle | None:
        ...
