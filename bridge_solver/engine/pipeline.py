from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from bridge_solver.attestation import AttestationFetcher
from bridge_solver.auction import AuctionPricer
from bridge_solver.common import guarded_call, log_event, wait_with_stop
from bridge_solver.common.errors import (
    AttestationTimeoutError,
    EconomicRejection,
    MessageParseError,
    TerminalRejectionError,
    TransactionPendingConfirmationError,
    TransientError,
)
from bridge_solver.ledgers.types import DestinationLedger, SourceLedger
from bridge_solver.orders.store import EventSink, OrderStore
from bridge_solver.orders.types import AttestationHandle, LifecycleState, Order, OrderRecord

from .fulfillment import FulfillmentExecutor
from .gate import ProfitabilityGate
from .prices import PriceReference
from .settlement import SettlementExecutor
from .types import GateDecision, RuntimeConfig

ACTIVE_STATES = {
    LifecycleState.OPEN,
    LifecycleState.FULFILLING,
    LifecycleState.AWAITING_ATTESTATION,
}


@dataclass(slots=True, frozen=True)
class EngineSettings:
    open_check_interval_seconds: float = 60.0
    confirm_timeout_seconds: float = 120.0
    recovery_limit: int = 500


class SolverEngine:
    """Runs one asyncio task per order through
    open -> fulfilling -> awaiting_attestation -> settled.

    Every state change is one persisted write of the order record. The stop
    event keeps new stages from starting; ``shutdown`` cancels what is left
    after the grace period.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        store: OrderStore,
        events: EventSink,
        source: SourceLedger,
        destination: DestinationLedger,
        pricer: AuctionPricer,
        gate: ProfitabilityGate,
        prices: PriceReference,
        fulfillment: FulfillmentExecutor,
        fetcher: AttestationFetcher,
        settlement: SettlementExecutor,
        runtime_config: RuntimeConfig,
        stop_event: asyncio.Event,
        settings: EngineSettings | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._store = store
        self._events = events
        self._source = source
        self._destination = destination
        self._pricer = pricer
        self._gate = gate
        self._prices = prices
        self._fulfillment = fulfillment
        self._fetcher = fetcher
        self._settlement = settlement
        self.runtime_config = runtime_config
        self._stop_event = stop_event
        self._settings = settings or EngineSettings()
        self._monotonic = monotonic
        self._claimed: set[str] = set()
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active_order_ids(self) -> set[str]:
        return set(self._tasks)

    def update_runtime_config(self, runtime_config: RuntimeConfig) -> None:
        self.runtime_config = runtime_config

    async def healthcheck(self) -> None:
        await self._source.healthcheck()
        await self._destination.healthcheck()

    # intake

    async def submit(self, order: Order) -> bool:
        """Start tracking ``order``; returns False when it is already tracked or finished.

        The open record is persisted before this returns, so callers may
        advance their cursor afterwards.
        """
        order_id = order.order_id
        if order_id in self._claimed:
            log_event(
                self._logger,
                level="info",
                event="order_redelivered",
                message="Order already has a running pipeline",
                order_id=order_id,
            )
            return False
        if self._stop_event.is_set():
            return False

        self._claimed.add(order_id)
        started = False
        try:
            record = await self._store.get_order_record(order_id)
            if record is None:
                record = OrderRecord(order=order)
                record.transition(LifecycleState.OPEN, reason="order detected")
                await self._store.save_order_record(record)
                log_event(
                    self._logger,
                    level="info",
                    event="order_detected",
                    message="New order detected",
                    order_id=order_id,
                    input_amount=str(order.input_amount),
                    start_price=str(order.start_price),
                    floor_price=str(order.floor_price),
                    start_time=order.start_time,
                    duration=order.duration,
                )
            elif record.state is not LifecycleState.OPEN:
                log_event(
                    self._logger,
                    level="info",
                    event="order_already_known",
                    message="Order is already tracked in the order cache",
                    order_id=order_id,
                    state=record.state.value,
                )
                return False

            self._spawn(record)
            started = True
            return True
        finally:
            if not started:
                self._claimed.discard(order_id)

    def _spawn(self, record: OrderRecord) -> None:
        order_id = record.order_id
        self._claimed.add(order_id)
        task = asyncio.create_task(self._run(record), name=f"order-{order_id}")
        self._tasks[order_id] = task
        task.add_done_callback(lambda finished: self._on_task_done(order_id, finished))

    def _on_task_done(self, order_id: str, task: asyncio.Task[None]) -> None:
        self._tasks.pop(order_id, None)
        self._claimed.discard(order_id)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_event(
                self._logger,
                level="error",
                event="order_task_crashed",
                message="Order pipeline task ended with an exception",
                order_id=order_id,
                error=str(error),
                error_type=type(error).__name__,
            )

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self, *, grace_seconds: float) -> None:
        self._stop_event.set()
        tasks = list(self._tasks.values())
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=max(0.0, grace_seconds))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        log_event(
            self._logger,
            level="info",
            event="engine_shutdown",
            message="Order pipelines stopped",
            finished=len(tasks) - len(pending),
            cancelled=len(pending),
        )

    # recovery

    async def recover(self) -> int:
        """Resume every unfinished order from the cache; safe to call repeatedly."""
        records = await self._store.list_order_records(states=ACTIVE_STATES, limit=self._settings.recovery_limit)
        resumed = 0
        for record in records:
            if record.order_id in self._claimed or self._stop_event.is_set():
                continue
            if record.state is LifecycleState.FULFILLING and record.fulfillment is None:
                holder = await self._store.get_payment_guard(order_id=record.order_id)
                if holder is not None:
                    await self._fail(record, "interrupted during payment submission; payment outcome unknown")
                    continue
                record.transition(LifecycleState.OPEN, reason="recovered before payment")
                await self._store.save_order_record(record)

            self._spawn(record)
            resumed += 1
            log_event(
                self._logger,
                level="info",
                event="order_recovered",
                message="Resuming order from the order cache",
                order_id=record.order_id,
                state=record.state.value,
                has_fulfillment=record.fulfillment is not None,
            )
        return resumed

    async def resume_failed(self, order_id: str) -> OrderRecord:
        """Operator resume of a failed order that has a fulfillment; never pays again."""
        record = await self._store.get_order_record(order_id)
        if record is None:
            raise KeyError(order_id)
        if record.state is not LifecycleState.FAILED or record.fulfillment is None:
            raise TerminalRejectionError(
                f"Order {order_id} is {record.state.value} and cannot be resumed without a fulfillment."
            )
        if order_id in self._claimed:
            raise TerminalRejectionError(f"Order {order_id} already has a running pipeline.")

        if not record.fulfillment.confirmed:
            status = await self._destination.transaction_status(record.fulfillment.tx_hash)
            if status is not True:
                raise TerminalRejectionError(
                    f"Fulfillment {record.fulfillment.tx_hash} is not confirmed (status={status})."
                )
            await self._fulfillment.mark_confirmed(record)

        record.transition(LifecycleState.AWAITING_ATTESTATION, reason="operator resume")
        await self._store.save_order_record(record)
        self._spawn(record)
        await self._tasks[order_id]
        return record

    # pipeline

    async def _run(self, record: OrderRecord) -> None:
        try:
            while not self._stop_event.is_set():
                if record.state is LifecycleState.OPEN:
                    proceed = await self._evaluate_until_accepted(record)
                elif record.state is LifecycleState.FULFILLING:
                    proceed = await self._fulfill(record)
                elif record.state is LifecycleState.AWAITING_ATTESTATION:
                    proceed = await self._attest_and_settle(record)
                else:
                    proceed = False
                if not proceed:
                    return
        except asyncio.CancelledError:
            log_event(
                self._logger,
                level="warning",
                event="order_task_cancelled",
                message="Order pipeline cancelled",
                order_id=record.order_id,
                state=record.state.value,
            )
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="exception",
                event="order_pipeline_error",
                message="Unexpected order pipeline error",
                order_id=record.order_id,
                state=record.state.value,
                error=str(error),
            )
            if record.state in ACTIVE_STATES:
                await self._fail(record, f"unexpected error: {error}")

    def evaluate(self, record: OrderRecord) -> GateDecision:
        required = self._pricer.current(record.order)
        return self._gate.evaluate(
            order=record.order,
            required_amount=required,
            snapshot=self._prices.snapshot(),
            runtime_config=self.runtime_config,
        )

    async def _evaluate_until_accepted(self, record: OrderRecord) -> bool:
        order = record.order
        last_reason = ""
        next_open_check = self._monotonic() + self._settings.open_check_interval_seconds

        while not self._stop_event.is_set():
            runtime_config = self.runtime_config
            decision = self.evaluate(record)
            if decision.should_execute:
                record.accepted_amount = decision.required_amount
                record.transition(LifecycleState.FULFILLING, reason=decision.reason)
                await self._store.save_order_record(record)
                await self._publish("INFO", "order_accepted", "Order accepted for fulfillment", decision.to_dict())
                return True

            if decision.reason != last_reason:
                last_reason = decision.reason
                log_event(
                    self._logger,
                    level="info",
                    event="order_not_accepted",
                    message="Order not accepted yet",
                    **decision.to_dict(),
                )

            if (
                self._pricer.is_at_floor(order)
                and self._pricer.seconds_past_end(order) >= runtime_config.expiry_grace_seconds
            ):
                await self._expire(record, "auction ended without a profitable fill")
                return False

            if self._monotonic() >= next_open_check:
                next_open_check = self._monotonic() + self._settings.open_check_interval_seconds
                still_open = await guarded_call(
                    lambda: self._source.open_order_ids([order]),
                    logger=self._logger,
                    event="open_check_failed",
                    message="Could not check whether the order is still open",
                    order_id=order.order_id,
                )
                if still_open is not None and order.order_id not in still_open:
                    await self._expire(record, "order is no longer open on the source ledger")
                    return False

            await wait_with_stop(self._stop_event, runtime_config.reevaluate_interval_seconds)
        return False

    async def _fulfill(self, record: OrderRecord) -> bool:
        if record.fulfillment is not None:
            return await self._confirm_existing(record)

        try:
            fulfillment = await self._fulfillment.fulfill(record)
        except EconomicRejection as rejection:
            record.transition(LifecycleState.OPEN, reason=rejection.reason)
            await self._store.save_order_record(record)
            await self._publish(
                "WARNING",
                "order_rejected",
                "Order rejected before payment",
                {"order_id": record.order_id, "reason": rejection.reason, **rejection.details},
            )
            await wait_with_stop(self._stop_event, self.runtime_config.reevaluate_interval_seconds)
            return True
        except TerminalRejectionError as error:
            await self._fail(record, error.reason)
            return False
        except TransactionPendingConfirmationError as error:
            await self._fail(record, f"fulfillment not confirmed in time: {error}")
            return False
        except TransientError as error:
            if record.fulfillment is None:
                holder = await self._store.get_payment_guard(order_id=record.order_id)
                if holder is None:
                    record.transition(LifecycleState.OPEN, reason=f"fulfillment deferred: {error}")
                    await self._store.save_order_record(record)
                    await wait_with_stop(self._stop_event, self.runtime_config.reevaluate_interval_seconds)
                    return True
            await self._fail(record, f"payment outcome unknown: {error}")
            return False

        if fulfillment is None:
            record.transition(LifecycleState.OPEN, reason="dry run")
            await self._store.save_order_record(record)
            return False

        record.transition(LifecycleState.AWAITING_ATTESTATION, reason="fulfillment confirmed")
        await self._store.save_order_record(record)
        await self._publish(
            "INFO",
            "order_fulfilled",
            "Fulfillment confirmed on the destination ledger",
            {
                "order_id": record.order_id,
                "tx_hash": fulfillment.tx_hash,
                "amount_paid": str(fulfillment.amount_paid),
            },
        )
        return True

    async def _confirm_existing(self, record: OrderRecord) -> bool:
        fulfillment = record.fulfillment
        if fulfillment is None:
            raise ValueError(f"Order {record.order_id} has no fulfillment to confirm.")
        if not fulfillment.confirmed:
            try:
                await self._destination.wait_for_confirmation(
                    fulfillment.tx_hash,
                    timeout_seconds=self._settings.confirm_timeout_seconds,
                )
            except (TerminalRejectionError, TransactionPendingConfirmationError) as error:
                await self._fail(record, f"fulfillment {fulfillment.tx_hash} not confirmed: {error}")
                return False
            await self._fulfillment.mark_confirmed(record)

        record.transition(LifecycleState.AWAITING_ATTESTATION, reason="fulfillment confirmed")
        await self._store.save_order_record(record)
        return True

    async def _attest_and_settle(self, record: OrderRecord) -> bool:
        fulfillment = record.fulfillment
        if fulfillment is None or not fulfillment.confirmed:
            await self._fail(record, "awaiting attestation without a confirmed fulfillment")
            return False

        async def on_handle(handle: AttestationHandle) -> None:
            record.handle = handle
            await self._store.save_order_record(record)

        async def on_retry(stage: str) -> None:
            record.bump_retry(stage)
            await self._store.save_order_record(record)

        try:
            result = await self._fetcher.fetch(
                order_id=record.order_id,
                tx_hash=fulfillment.tx_hash,
                handle=record.handle,
                on_handle=on_handle,
                on_retry=on_retry,
            )
        except (MessageParseError, AttestationTimeoutError) as error:
            await self._fail(record, str(error))
            return False

        if record.handle is None:
            await on_handle(result.handle)
        if self._stop_event.is_set():
            return False

        try:
            tx_hash = await self._settlement.settle(record=record, vaa=result.vaa, on_retry=on_retry)
        except TerminalRejectionError as error:
            await self._fail(record, error.reason)
            return False
        except TransientError as error:
            await self._fail(record, f"settlement retries exhausted: {error}")
            return False

        await self._settled(record, tx_hash=tx_hash)
        return False

    # terminal writes

    async def _settled(self, record: OrderRecord, *, tx_hash: str) -> None:
        record.settlement_tx = tx_hash
        record.transition(LifecycleState.SETTLED)
        await self._store.save_order_record(record)
        await self._publish("INFO", "order_settled", "Order settled on the source ledger", record.summary())
        await self._record_outcome(record)

    async def _expire(self, record: OrderRecord, reason: str) -> None:
        record.transition(LifecycleState.EXPIRED, reason=reason)
        await self._store.save_order_record(record)
        await self._publish("INFO", "order_expired", "Order expired without fulfillment", record.summary())
        await self._record_outcome(record)

    async def _fail(self, record: OrderRecord, reason: str) -> None:
        record.transition(LifecycleState.FAILED, reason=reason)
        await self._store.save_order_record(record)
        await self._publish("ERROR", "order_failed", "Order failed and needs operator attention", record.summary())
        await self._record_outcome(record)

    async def _record_outcome(self, record: OrderRecord) -> None:
        await guarded_call(
            lambda: self._events.record_order_outcome(record.summary()),
            logger=self._logger,
            event="order_outcome_record_failed",
            message="Failed to record order outcome",
            order_id=record.order_id,
        )

    async def _publish(self, level: str, event: str, message: str, details: dict[str, Any]) -> None:
        log_event(self._logger, level=level.lower(), event=event, message=message, **details)
        await guarded_call(
            lambda: self._events.publish_event(level=level, event=event, message=message, details=details),
            logger=self._logger,
            event="publish_event_failed",
            message="Failed to publish operator event",
            source_event=event,
        )
