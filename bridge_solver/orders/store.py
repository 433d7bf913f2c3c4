from __future__ import annotations

from typing import Any, Protocol

from .types import LifecycleState, OrderRecord


class OrderStore(Protocol):
    async def save_order_record(self, record: OrderRecord) -> None:
        ...

    async def get_order_record(self, order_id: str) -> OrderRecord | None:
        ...

    async def list_order_records(
        self,
        *,
        states: set[LifecycleState] | None = None,
        limit: int = 100,
    ) -> list[OrderRecord]:
        ...

    async def acquire_payment_guard(self, *, order_id: str, owner: str) -> bool:
        ...

    async def get_payment_guard(self, *, order_id: str) -> str | None:
        ...

    async def release_payment_guard(self, *, order_id: str, owner: str) -> bool:
        ...

    async def load_cursor(self, name: str) -> str | None:
        ...

    async def save_cursor(self, name: str, cursor: str) -> None:
        ...


class EventSink(Protocol):
    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        ...

    async def record_order_outcome(self, summary: dict[str, Any]) -> None:
        ...
