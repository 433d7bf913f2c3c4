from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from redis.asyncio.client import Redis

from bridge_solver.common import log_event
from bridge_solver.orders.types import LifecycleState, OrderRecord

COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize_for_redis(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


class RedisStorageOps:
    def _record_key(self, order_id: str) -> str:
        return f"{self.settings.order_record_prefix}:{order_id}"

    def _guard_key(self, order_id: str) -> str:
        return f"{self.settings.payment_guard_prefix}:{order_id}"

    def _cursor_key(self, name: str) -> str:
        return f"{self.settings.cursor_prefix}:{name}"

    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        redis_client = self._require_redis()

        mapping = {str(key): _serialize_for_redis(value) for key, value in config.items()}
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.delete(self.settings.redis_config_key)
        if mapping:
            pipeline.hset(self.settings.redis_config_key, mapping=mapping)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config synced to Redis",
            items=len(mapping),
            source=source,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        redis_client = self._require_redis()
        return await redis_client.hgetall(self.settings.redis_config_key)

    async def acquire_payment_guard(self, *, order_id: str, owner: str) -> bool:
        redis_client = self._require_redis()
        acquired = await redis_client.set(
            self._guard_key(order_id),
            owner,
            ex=self.settings.payment_guard_ttl_seconds,
            nx=True,
        )
        return bool(acquired)

    async def get_payment_guard(self, *, order_id: str) -> str | None:
        redis_client = self._require_redis()
        return await redis_client.get(self._guard_key(order_id))

    async def release_payment_guard(self, *, order_id: str, owner: str) -> bool:
        redis_client = self._require_redis()
        deleted = await redis_client.eval(COMPARE_AND_DELETE, 1, self._guard_key(order_id), owner)
        return bool(deleted)

    async def save_order_record(self, record: OrderRecord) -> None:
        redis_client = self._require_redis()
        record_key = self._record_key(record.order_id)

        # replace the whole hash atomically so readers never see a mixed record
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.delete(record_key)
        pipeline.hset(record_key, mapping=record.to_mapping())
        if not record.holds_unsettled_payment:
            # paid orders are kept until settled so they can still be resumed
            pipeline.expire(record_key, self.settings.order_record_ttl_seconds)
        await pipeline.execute()

    async def get_order_record(self, order_id: str) -> OrderRecord | None:
        redis_client = self._require_redis()
        mapping = await redis_client.hgetall(self._record_key(order_id))
        if not mapping:
            return None
        return OrderRecord.from_mapping(mapping)

    async def list_order_records(
        self,
        *,
        states: set[LifecycleState] | None = None,
        limit: int = 100,
    ) -> list[OrderRecord]:
        redis_client = self._require_redis()
        normalized_limit = max(1, limit)
        wanted = {state.value for state in (states or set())}
        pattern = f"{self.settings.order_record_prefix}:*"

        records: list[OrderRecord] = []
        async for key in redis_client.scan_iter(match=pattern, count=min(1000, normalized_limit * 4)):
            mapping = await redis_client.hgetall(key)
            if not mapping:
                continue
            if wanted and str(mapping.get("status", "")) not in wanted:
                continue
            try:
                records.append(OrderRecord.from_mapping(mapping))
            except (KeyError, ValueError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="order_record_unreadable",
                    message="Skipping unreadable order record",
                    key=key,
                    error=str(error),
                )
                continue
            if len(records) >= normalized_limit:
                break

        records.sort(key=lambda item: item.updated_at)
        return records

    async def load_cursor(self, name: str) -> str | None:
        redis_client = self._require_redis()
        return await redis_client.get(self._cursor_key(name))

    async def save_cursor(self, name: str, cursor: str) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self._cursor_key(name), cursor)

    async def record_status(self, mapping: dict[str, Any]) -> None:
        redis_client = self._require_redis()
        payload = {key: _serialize_for_redis(value) for key, value in mapping.items()}
        payload["updated_at"] = _now_iso()
        await redis_client.hset(self.settings.status_key, mapping=payload)

    async def update_heartbeat(self) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self.settings.heartbeat_key, _now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
