from __future__ import annotations

import asyncio
import logging
import unittest
from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock

from bridge_solver.attestation import AttestationFetcher
from bridge_solver.attestation.codec import FulfillmentPayload, Vaa, encode_fulfillment_payload, encode_vaa
from bridge_solver.auction import AuctionPricer, FixedClock, TimeUnit
from bridge_solver.common import RetryPolicy
from bridge_solver.common.errors import (
    TerminalRejectionError,
    TransactionPendingConfirmationError,
)
from bridge_solver.engine import (
    AssetConfig,
    AssetPair,
    EngineSettings,
    FulfillmentExecutor,
    ProfitabilityGate,
    RuntimeConfig,
    SettlementExecutor,
    SolverEngine,
    StaticPriceReference,
)
from bridge_solver.orders.types import (
    AttestationHandle,
    FulfillmentRecord,
    LifecycleState,
    Order,
    OrderRecord,
)
from bridge_solver.storage import InMemoryStorage

ORDER_ID = "0x" + "ab" * 32
SOLVER = bytes(12) + b"\x5a" * 20
EMITTER = "0x" + "f6" * 32
HANDLE = AttestationHandle(emitter_chain=21, emitter_address=EMITTER, sequence=7)

RUNTIME = RuntimeConfig(
    config_schema_version=1,
    min_profit=Decimal("0.01"),
    source_fee_estimate=Decimal("0"),
    destination_fee_estimate=Decimal("0"),
    trade_enabled=True,
    reevaluate_interval_seconds=0.01,
    expiry_grace_seconds=3600.0,
)


def _make_order(order_id: str = ORDER_ID) -> Order:
    # 1 USDC of collateral for at most 0.5 SUI
    return Order(
        order_id=order_id,
        depositor="0x" + "11" * 20,
        recipient="0x" + "22" * 32,
        input_amount=1_000_000,
        start_price=500_000_000,
        floor_price=400_000_000,
        start_time=0,
        duration=600,
    )


def _signed_vaa(order_id: str = ORDER_ID) -> bytes:
    return encode_vaa(
        Vaa(
            version=1,
            guardian_set_index=0,
            signatures=(),
            timestamp=120,
            nonce=0,
            emitter_chain=HANDLE.emitter_chain,
            emitter_address=bytes.fromhex(EMITTER[2:]),
            sequence=HANDLE.sequence,
            consistency_level=0,
            payload=encode_fulfillment_payload(
                FulfillmentPayload(order_id=bytes.fromhex(order_id[2:]), solver=SOLVER)
            ),
            body=b"",
        )
    )


class FakeTime:
    def __init__(self) -> None:
        self.now = 0.0

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


async def _submit_with_yield(**_kwargs: object) -> str:
    await asyncio.sleep(0)
    return "0xpaid"


class SolverEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.engine")
        self.store = InMemoryStorage(self.logger, run_id="run-a")
        self.stop_event = asyncio.Event()
        self.clock = FixedClock(100)
        self.time = FakeTime()
        self.pricer = AuctionPricer(self.clock, TimeUnit.SECONDS)

        self.source = AsyncMock()
        self.source.settle.return_value = "0xsettled"
        self.source.open_order_ids.return_value = {ORDER_ID}
        self.source.current_required_amount.return_value = None

        self.destination = AsyncMock()
        self.destination.native_balance.return_value = 10**18
        self.destination.fulfillment_overhead.return_value = 0
        self.destination.submit_fulfillment.side_effect = _submit_with_yield
        self.destination.wait_for_confirmation.return_value = None
        self.destination.parse_emitted_message.return_value = HANDLE
        self.destination.transaction_status.return_value = True

        self.guardian = AsyncMock()
        self.guardian.fetch_signed_vaa.return_value = _signed_vaa()

    def _engine(self, *, dry_run: bool = False, settings: EngineSettings | None = None) -> SolverEngine:
        fulfillment = FulfillmentExecutor(
            logger=self.logger,
            destination=self.destination,
            store=self.store,
            pricer=self.pricer,
            solver_identity=SOLVER,
            owner="run-a",
            confirm_timeout_seconds=30.0,
            dry_run=dry_run,
            source=self.source,
        )
        fetcher = AttestationFetcher(
            logger=self.logger,
            parser=self.destination,
            guardian=self.guardian,
            parse_policy=RetryPolicy.fixed(delay_seconds=0.0, max_attempts=3),
            poll_policy=RetryPolicy.fixed(delay_seconds=10.0, timeout_seconds=600.0),
            monotonic=self.time.monotonic,
            sleep=self.time.sleep,
        )
        settlement = SettlementExecutor(
            logger=self.logger,
            source=self.source,
            pricer=self.pricer,
            solver_identity=SOLVER,
            retry_policy=RetryPolicy(max_attempts=2, initial_delay_seconds=0.0),
            confirm_timeout_seconds=30.0,
            sleep=AsyncMock(),
        )
        return SolverEngine(
            logger=self.logger,
            store=self.store,
            events=self.store,
            source=self.source,
            destination=self.destination,
            pricer=self.pricer,
            gate=ProfitabilityGate(
                assets=AssetPair(
                    collateral=AssetConfig(symbol="USDC", decimals=6),
                    payment=AssetConfig(symbol="SUI", decimals=9),
                    quote_symbol="USDC",
                )
            ),
            prices=StaticPriceReference({"USDC": Decimal("1"), "SUI": Decimal("1")}),
            fulfillment=fulfillment,
            fetcher=fetcher,
            settlement=settlement,
            runtime_config=RUNTIME,
            stop_event=self.stop_event,
            settings=settings,
        )

    async def _stored(self, order_id: str = ORDER_ID) -> OrderRecord:
        record = await self.store.get_order_record(order_id)
        assert record is not None
        return record

    def _event_names(self) -> list[str]:
        return [event["event"] for event in self.store.events]

    async def _seed(self, record: OrderRecord) -> None:
        await self.store.save_order_record(record)

    async def test_order_settles_end_to_end(self) -> None:
        engine = self._engine()

        self.assertTrue(await engine.submit(_make_order()))
        await engine.join()

        record = await self._stored()
        self.assertIs(record.state, LifecycleState.SETTLED)
        self.assertEqual(record.settlement_tx, "0xsettled")
        self.assertEqual(record.handle, HANDLE)
        self.assertEqual(record.accepted_amount, 483_333_334)
        self.destination.submit_fulfillment.assert_awaited_once()
        self.assertEqual(self.destination.submit_fulfillment.await_args.kwargs["amount"], 483_333_334)
        self.source.settle.assert_awaited_once()
        self.assertEqual(self._event_names(), ["order_accepted", "order_fulfilled", "order_settled"])
        self.assertEqual(len(self.store.outcomes), 1)
        self.assertEqual(self.store.outcomes[0]["state"], "settled")

    async def test_concurrent_redelivery_pays_once(self) -> None:
        engine = self._engine()
        order = _make_order()

        accepted = await asyncio.gather(*(engine.submit(order) for _ in range(5)))
        await engine.join()

        self.assertEqual(accepted.count(True), 1)
        self.destination.submit_fulfillment.assert_awaited_once()
        self.source.settle.assert_awaited_once()

        self.assertFalse(await engine.submit(order))
        self.destination.submit_fulfillment.assert_awaited_once()

    async def test_each_order_settles_with_its_own_attestation(self) -> None:
        other_id = "0x" + "cd" * 32
        self.guardian.fetch_signed_vaa.side_effect = lambda handle: _signed_vaa(
            ORDER_ID if self.guardian.fetch_signed_vaa.await_count == 1 else other_id
        )
        engine = self._engine()

        await engine.submit(_make_order())
        await engine.join()
        await engine.submit(_make_order(other_id))
        await engine.join()

        self.assertIs((await self._stored()).state, LifecycleState.SETTLED)
        self.assertIs((await self._stored(other_id)).state, LifecycleState.SETTLED)
        self.assertEqual(self.destination.submit_fulfillment.await_count, 2)

    async def test_unconfirmed_fulfillment_never_settles(self) -> None:
        self.destination.wait_for_confirmation.side_effect = TransactionPendingConfirmationError(
            "not confirmed after 30s",
            tx_hash="0xpaid",
        )
        engine = self._engine()

        await engine.submit(_make_order())
        await engine.join()

        record = await self._stored()
        self.assertIs(record.state, LifecycleState.FAILED)
        assert record.fulfillment is not None
        self.assertFalse(record.fulfillment.confirmed)
        self.guardian.fetch_signed_vaa.assert_not_awaited()
        self.source.settle.assert_not_awaited()

    async def test_operator_resume_settles_without_paying_again(self) -> None:
        self.destination.wait_for_confirmation.side_effect = TransactionPendingConfirmationError(
            "not confirmed after 30s",
            tx_hash="0xpaid",
        )
        engine = self._engine()
        await engine.submit(_make_order())
        await engine.join()

        resumed = await engine.resume_failed(ORDER_ID)

        self.assertIs(resumed.state, LifecycleState.SETTLED)
        self.destination.transaction_status.assert_awaited_once_with("0xpaid")
        self.destination.submit_fulfillment.assert_awaited_once()
        self.source.settle.assert_awaited_once()

    async def test_resume_refuses_orders_without_fulfillment(self) -> None:
        record = OrderRecord(order=_make_order())
        record.transition(LifecycleState.FAILED, reason="operator test")
        await self._seed(record)

        with self.assertRaises(TerminalRejectionError):
            await self._engine().resume_failed(ORDER_ID)

    async def test_confirming_without_fulfillment_raises(self) -> None:
        record = OrderRecord(order=_make_order())
        record.transition(LifecycleState.FULFILLING)

        with self.assertRaises(ValueError):
            await self._engine()._confirm_existing(record)

        self.destination.wait_for_confirmation.assert_not_awaited()

    async def test_recovery_resumes_awaiting_orders_once(self) -> None:
        record = OrderRecord(order=_make_order())
        record.transition(LifecycleState.FULFILLING)
        record.fulfillment = FulfillmentRecord(
            order_id=ORDER_ID,
            tx_hash="0xpaid",
            amount_paid=483_333_334,
            submitted_at="2026-01-01T00:00:00+00:00",
            confirmed=True,
        )
        record.transition(LifecycleState.AWAITING_ATTESTATION)
        await self._seed(record)
        await self.store.acquire_payment_guard(order_id=ORDER_ID, owner="run-old")
        engine = self._engine()

        first, second = await asyncio.gather(engine.recover(), engine.recover())
        await engine.join()

        self.assertEqual(first + second, 1)
        self.assertIs((await self._stored()).state, LifecycleState.SETTLED)
        self.destination.submit_fulfillment.assert_not_awaited()
        self.destination.parse_emitted_message.assert_awaited_once_with("0xpaid")
        self.source.settle.assert_awaited_once()
        self.assertEqual(await engine.recover(), 0)

    async def test_recovery_confirms_submitted_payment_instead_of_paying(self) -> None:
        record = OrderRecord(order=_make_order())
        record.transition(LifecycleState.FULFILLING)
        record.fulfillment = FulfillmentRecord(
            order_id=ORDER_ID,
            tx_hash="0xpaid",
            amount_paid=483_333_334,
            submitted_at="2026-01-01T00:00:00+00:00",
        )
        await self._seed(record)
        engine = self._engine()

        self.assertEqual(await engine.recover(), 1)
        await engine.join()

        self.assertIs((await self._stored()).state, LifecycleState.SETTLED)
        self.destination.wait_for_confirmation.assert_awaited_once()
        self.destination.submit_fulfillment.assert_not_awaited()

    async def test_recovery_fails_when_payment_outcome_is_unknown(self) -> None:
        record = OrderRecord(order=_make_order())
        record.transition(LifecycleState.FULFILLING)
        await self._seed(record)
        await self.store.acquire_payment_guard(order_id=ORDER_ID, owner="run-old")
        engine = self._engine()

        self.assertEqual(await engine.recover(), 0)

        stored = await self._stored()
        self.assertIs(stored.state, LifecycleState.FAILED)
        self.assertIn("payment outcome unknown", stored.failure_reason)
        self.destination.submit_fulfillment.assert_not_awaited()

    async def test_recovery_reopens_orders_interrupted_before_payment(self) -> None:
        record = OrderRecord(order=_make_order())
        record.transition(LifecycleState.FULFILLING)
        await self._seed(record)
        engine = self._engine()

        self.assertEqual(await engine.recover(), 1)
        await engine.join()

        self.assertIs((await self._stored()).state, LifecycleState.SETTLED)
        self.destination.submit_fulfillment.assert_awaited_once()

    async def test_economic_rejection_returns_order_to_open(self) -> None:
        self.destination.native_balance.side_effect = [0, 10**18]
        engine = self._engine()

        await engine.submit(_make_order())
        await engine.join()

        self.assertIs((await self._stored()).state, LifecycleState.SETTLED)
        self.destination.submit_fulfillment.assert_awaited_once()
        self.assertIn("order_rejected", self._event_names())

    async def test_unprofitable_order_expires_after_grace(self) -> None:
        self.clock.value = 10_000
        engine = self._engine()
        engine.update_runtime_config(
            replace(RUNTIME, min_profit=Decimal("5"), expiry_grace_seconds=60.0),
        )

        await engine.submit(_make_order())
        await engine.join()

        stored = await self._stored()
        self.assertIs(stored.state, LifecycleState.EXPIRED)
        self.assertEqual(stored.failure_reason, "auction ended without a profitable fill")
        self.destination.submit_fulfillment.assert_not_awaited()

    async def test_order_closed_on_source_expires(self) -> None:
        self.source.open_order_ids.return_value = set()
        engine = self._engine(settings=EngineSettings(open_check_interval_seconds=0.0))
        engine.update_runtime_config(replace(RUNTIME, trade_enabled=False))

        await engine.submit(_make_order())
        await engine.join()

        self.assertIs((await self._stored()).state, LifecycleState.EXPIRED)
        self.source.open_order_ids.assert_awaited()

    async def test_dry_run_leaves_order_open(self) -> None:
        engine = self._engine(dry_run=True)

        await engine.submit(_make_order())
        await engine.join()

        self.assertIs((await self._stored()).state, LifecycleState.OPEN)
        self.destination.submit_fulfillment.assert_not_awaited()
        self.assertIsNone(await self.store.get_payment_guard(order_id=ORDER_ID))

    async def test_replayed_attestation_fails_order(self) -> None:
        for reason in ("execution reverted: replay detected", "MoveAbort: vaa already consumed"):
            with self.subTest(reason):
                self.store = InMemoryStorage(self.logger, run_id="run-a")
                self.source.settle.side_effect = TerminalRejectionError(reason, tx_hash="0xold")
                engine = self._engine()

                await engine.submit(_make_order())
                await engine.join()

                stored = await self._stored()
                self.assertIs(stored.state, LifecycleState.FAILED)
                self.assertEqual(stored.failure_reason, reason)
                self.assertIsNone(stored.settlement_tx)
                self.assertIsNotNone(stored.fulfillment)
                self.assertNotIn("order_settled", self._event_names())

    async def test_missing_attestation_fails_and_can_be_resumed(self) -> None:
        self.guardian.fetch_signed_vaa.return_value = None
        engine = self._engine()

        await engine.submit(_make_order())
        await engine.join()

        stored = await self._stored()
        self.assertIs(stored.state, LifecycleState.FAILED)
        self.assertTrue(stored.failure_reason)
        self.assertEqual(stored.handle, HANDLE)
        assert stored.fulfillment is not None
        self.assertEqual(stored.fulfillment.tx_hash, "0xpaid")
        self.assertTrue(stored.fulfillment.confirmed)
        self.assertEqual(self.time.now, 600.0)
        self.source.settle.assert_not_awaited()

        self.guardian.fetch_signed_vaa.return_value = _signed_vaa()
        resumed = await engine.resume_failed(ORDER_ID)

        self.assertIs(resumed.state, LifecycleState.SETTLED)
        self.destination.submit_fulfillment.assert_awaited_once()
        self.source.settle.assert_awaited_once()

    async def test_error_after_terminal_write_does_not_crash_task(self) -> None:
        save = self.store.save_order_record

        async def failing_final_save(record: OrderRecord) -> None:
            if record.state is LifecycleState.SETTLED:
                raise RuntimeError("redis connection lost")
            await save(record)

        self.store.save_order_record = failing_final_save  # type: ignore[method-assign]
        engine = self._engine()

        with self.assertLogs("test.engine", level="ERROR") as captured:
            await engine.submit(_make_order())
            await engine.join()

        events = [getattr(record, "event", None) for record in captured.records]
        self.assertIn("order_pipeline_error", events)
        self.assertNotIn("order_task_crashed", events)
        self.assertIs((await self._stored()).state, LifecycleState.AWAITING_ATTESTATION)

    async def test_terminal_settlement_error_fails_order(self) -> None:
        self.source.settle.side_effect = TerminalRejectionError("execution reverted: order not open")
        engine = self._engine()

        await engine.submit(_make_order())
        await engine.join()

        stored = await self._stored()
        self.assertIs(stored.state, LifecycleState.FAILED)
        self.assertEqual(stored.failure_reason, "execution reverted: order not open")
        self.assertEqual(self.store.outcomes[-1]["state"], "failed")

    async def test_rejected_payment_is_not_retried(self) -> None:
        self.destination.submit_fulfillment.side_effect = TerminalRejectionError("execution reverted: already filled")
        engine = self._engine()

        await engine.submit(_make_order())
        await engine.join()

        self.assertIs((await self._stored()).state, LifecycleState.FAILED)
        self.destination.submit_fulfillment.assert_awaited_once()

    async def test_shutdown_cancels_and_keeps_order_resumable(self) -> None:
        async def never_ready(_handle: AttestationHandle) -> bytes | None:
            await asyncio.Event().wait()
            return None

        self.guardian.fetch_signed_vaa.side_effect = never_ready
        engine = self._engine()
        await engine.submit(_make_order())
        for _ in range(50):
            if self.guardian.fetch_signed_vaa.await_count:
                break
            await asyncio.sleep(0)

        await engine.shutdown(grace_seconds=0.01)

        stored = await self._stored()
        self.assertIs(stored.state, LifecycleState.AWAITING_ATTESTATION)
        self.assertEqual(stored.handle, HANDLE)
        self.assertEqual(engine.active_order_ids, set())
        self.assertFalse(await engine.submit(_make_order()))

    async def test_submit_after_stop_is_ignored(self) -> None:
        self.stop_event.set()
        engine = self._engine()

        self.assertFalse(await engine.submit(_make_order()))
        self.assertIsNone(await self.store.get_order_record(ORDER_ID))

    async def test_evaluate_uses_current_auction_price(self) -> None:
        engine = self._engine()
        record = OrderRecord(order=_make_order())

        self.clock.value = 300
        decision = engine.evaluate(record)

        self.assertEqual(decision.required_amount, 450_000_000)
        self.assertTrue(decision.should_execute)


if __name__ == "__main__":
    unittest.main()
