from __future__ import annotations

import asyncio
import logging
from typing import Any

from bridge_solver.common import log_event
from bridge_solver.orders.types import LifecycleState, OrderRecord

from .settings import ConfigUpdateHandler


class InMemoryStorage:
    """Process-local stand-in for ``StorageGateway`` (``ORDER_CACHE_BACKEND=memory``).

    Nothing survives a restart, so crash recovery is limited to the live process.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        runtime_config: dict[str, Any] | None = None,
        run_id: str = "memory",
    ) -> None:
        self._logger = logger
        self._run_id = run_id
        self._records: dict[str, dict[str, str]] = {}
        self._guards: dict[str, str] = {}
        self._cursors: dict[str, str] = {}
        self._runtime_config = {str(key): str(value) for key, value in (runtime_config or {}).items()}
        self._lock = asyncio.Lock()
        self.events: list[dict[str, Any]] = []
        self.outcomes: list[dict[str, Any]] = []
        self.status: dict[str, Any] = {}

    @property
    def run_id(self) -> str:
        return self._run_id

    async def connect(self) -> None:
        log_event(
            self._logger,
            level="warning",
            event="memory_storage_enabled",
            message="Using in-memory order cache; state will not survive a restart",
        )

    async def healthcheck(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        return None

    async def get_runtime_config(self) -> dict[str, str]:
        return dict(self._runtime_config)

    async def save_order_record(self, record: OrderRecord) -> None:
        self._records[record.order_id] = record.to_mapping()

    async def get_order_record(self, order_id: str) -> OrderRecord | None:
        mapping = self._records.get(order_id)
        return OrderRecord.from_mapping(mapping) if mapping else None

    async def list_order_records(
        self,
        *,
        states: set[LifecycleState] | None = None,
        limit: int = 100,
    ) -> list[OrderRecord]:
        wanted = {state.value for state in (states or set())}
        records = [
            OrderRecord.from_mapping(mapping)
            for mapping in self._records.values()
            if not wanted or mapping.get("status") in wanted
        ]
        records.sort(key=lambda item: item.updated_at)
        return records[: max(1, limit)]

    async def acquire_payment_guard(self, *, order_id: str, owner: str) -> bool:
        async with self._lock:
            if order_id in self._guards:
                return False
            self._guards[order_id] = owner
            return True

    async def get_payment_guard(self, *, order_id: str) -> str | None:
        return self._guards.get(order_id)

    async def release_payment_guard(self, *, order_id: str, owner: str) -> bool:
        async with self._lock:
            if self._guards.get(order_id) != owner:
                return False
            del self._guards[order_id]
            return True

    async def load_cursor(self, name: str) -> str | None:
        return self._cursors.get(name)

    async def save_cursor(self, name: str, cursor: str) -> None:
        self._cursors[name] = cursor

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        self.events.append({"level": level, "event": event, "message": message, "details": details or {}})

    async def record_order_outcome(self, summary: dict[str, Any]) -> None:
        self.outcomes.append(dict(summary))

    async def record_status(self, mapping: dict[str, Any]) -> None:
        self.status.update(mapping)

    async def update_heartbeat(self) -> None:
        return None

    async def mark_run_stopped(self, *, reason: str) -> None:
        return None
