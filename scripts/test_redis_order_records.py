from __future__ import annotations

import logging
import os
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from bridge_solver.orders.types import AttestationHandle, FulfillmentRecord, LifecycleState, Order, OrderRecord
from bridge_solver.storage import StorageGateway, StorageSettings

ORDER_ID = "0x" + "ab" * 32


def _make_record() -> OrderRecord:
    return OrderRecord(
        order=Order(
            order_id=ORDER_ID,
            depositor="0x" + "11" * 20,
            recipient="0x" + "22" * 32,
            input_amount=1_000,
            start_price=100,
            floor_price=50,
            start_time=0,
            duration=600,
        )
    )


def _paid(record: OrderRecord) -> OrderRecord:
    record.transition(LifecycleState.FULFILLING)
    record.fulfillment = FulfillmentRecord(
        order_id=ORDER_ID,
        tx_hash="0xpaid",
        amount_paid=80,
        submitted_at="2026-01-01T00:00:00+00:00",
        confirmed=True,
    )
    return record


class RedisOrderRecordTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        with patch.dict(os.environ, {"BOT_RUN_ID": "run-a"}, clear=True):
            settings = StorageSettings.from_env()
        self.gateway = StorageGateway(settings, logging.getLogger("test.redis"))
        self.pipeline = MagicMock()
        self.pipeline.execute = AsyncMock(return_value=[])
        client = MagicMock()
        client.pipeline.return_value = self.pipeline
        self.gateway._redis = client
        self.key = f"orders:record:{ORDER_ID}"

    async def test_open_records_expire(self) -> None:
        record = _make_record()
        record.transition(LifecycleState.OPEN)

        await self.gateway.save_order_record(record)

        self.pipeline.delete.assert_called_once_with(self.key)
        self.pipeline.hset.assert_called_once()
        self.pipeline.expire.assert_called_once_with(self.key, 14 * 86400)
        self.pipeline.execute.assert_awaited_once()

    async def test_failed_record_with_payment_never_expires(self) -> None:
        record = _paid(_make_record())
        record.transition(LifecycleState.AWAITING_ATTESTATION)
        record.transition(LifecycleState.FAILED, reason="attestation not available after 600s")

        await self.gateway.save_order_record(record)

        self.pipeline.hset.assert_called_once()
        self.pipeline.expire.assert_not_called()

    async def test_settled_record_expires_again(self) -> None:
        record = _paid(_make_record())
        record.transition(LifecycleState.AWAITING_ATTESTATION)
        record.handle = AttestationHandle(emitter_chain=21, emitter_address="0x" + "f6" * 32, sequence=3)
        record.transition(LifecycleState.SETTLED)

        await self.gateway.save_order_record(record)

        self.pipeline.expire.assert_called_once_with(self.key, 14 * 86400)


if __name__ == "__main__":
    unittest.main()
