from __future__ import annotations

import logging

from bridge_solver.auction import AuctionPricer
from bridge_solver.common import guarded_call, log_event
from bridge_solver.common.errors import EconomicRejection, TerminalRejectionError
from bridge_solver.ledgers.types import DestinationLedger, SourceLedger
from bridge_solver.orders.store import OrderStore
from bridge_solver.orders.types import FulfillmentRecord, OrderRecord, now_iso


class PaymentGuardHeldError(TerminalRejectionError):
    pass


class FulfillmentExecutor:
    """Pays the recipient on the destination ledger, at most once per order."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        destination: DestinationLedger,
        store: OrderStore,
        pricer: AuctionPricer,
        solver_identity: bytes,
        owner: str,
        confirm_timeout_seconds: float,
        dry_run: bool,
        source: SourceLedger | None = None,
    ) -> None:
        self._logger = logger
        self._destination = destination
        self._store = store
        self._pricer = pricer
        self._solver_identity = solver_identity
        self._owner = owner
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._dry_run = dry_run
        self._source = source

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def payment_amount(self, record: OrderRecord, *, onchain_required: int | None = None) -> int:
        recomputed = self._pricer.current(record.order)
        accepted = record.accepted_amount if record.accepted_amount is not None else recomputed
        if onchain_required is None:
            return max(accepted, recomputed)
        return max(accepted, recomputed, onchain_required)

    async def onchain_required_amount(self, record: OrderRecord) -> int | None:
        """The source contract's own quote, or None when it has none or cannot be reached."""
        if self._source is None:
            return None
        amount = await guarded_call(
            lambda: self._source.current_required_amount(record.order_id),
            logger=self._logger,
            event="onchain_quote_failed",
            message="On-chain required amount unavailable, using the local auction price",
            order_id=record.order_id,
        )
        if not isinstance(amount, int):
            return None
        local = self._pricer.current(record.order)
        if amount > local:
            log_event(
                self._logger,
                level="warning",
                event="onchain_quote_above_local",
                message="Source contract requires more than the local auction price",
                order_id=record.order_id,
                onchain=str(amount),
                local=str(local),
            )
        return amount

    async def check_balance(self, amount: int) -> None:
        balance = await self._destination.native_balance()
        overhead = await self._destination.fulfillment_overhead()
        if balance < amount + overhead:
            raise EconomicRejection(
                "insufficient destination balance",
                balance=str(balance),
                amount=str(amount),
                overhead=str(overhead),
            )

    async def fulfill(self, record: OrderRecord) -> FulfillmentRecord | None:
        """Submit and confirm the payment for ``record``.

        Returns None in dry-run mode. The fulfillment record is persisted with
        its tx hash before the confirmation wait starts.
        """
        order = record.order
        onchain_required = await self.onchain_required_amount(record)
        amount = self.payment_amount(record, onchain_required=onchain_required)
        await self.check_balance(amount)

        if self._dry_run:
            log_event(
                self._logger,
                level="info",
                event="fulfillment_dry_run",
                message="Dry run: fulfillment not submitted",
                order_id=order.order_id,
                amount=str(amount),
                recipient=order.recipient,
            )
            return None

        acquired = await self._store.acquire_payment_guard(order_id=order.order_id, owner=self._owner)
        if not acquired:
            holder = await self._store.get_payment_guard(order_id=order.order_id)
            raise PaymentGuardHeldError(f"payment guard for {order.order_id} is held by {holder or 'unknown'}")

        try:
            tx_hash = await self._destination.submit_fulfillment(
                order=order,
                amount=amount,
                solver_identity=self._solver_identity,
            )
        except TerminalRejectionError as error:
            if error.tx_hash is None:
                # rejected before broadcast; nothing was paid
                await self._store.release_payment_guard(order_id=order.order_id, owner=self._owner)
            raise

        fulfillment = FulfillmentRecord(
            order_id=order.order_id,
            tx_hash=tx_hash,
            amount_paid=amount,
            submitted_at=now_iso(),
        )
        record.fulfillment = fulfillment
        await self._store.save_order_record(record)
        log_event(
            self._logger,
            level="info",
            event="fulfillment_submitted",
            message="Fulfillment submitted",
            order_id=order.order_id,
            tx_hash=tx_hash,
            amount=str(amount),
        )

        await self._destination.wait_for_confirmation(tx_hash, timeout_seconds=self._confirm_timeout_seconds)
        return await self.mark_confirmed(record)

    async def mark_confirmed(self, record: OrderRecord) -> FulfillmentRecord:
        if record.fulfillment is None:
            raise ValueError(f"Order {record.order_id} has no fulfillment to confirm.")
        record.fulfillment = record.fulfillment.mark_confirmed()
        await self._store.save_order_record(record)
        log_event(
            self._logger,
            level="info",
            event="fulfillment_confirmed",
            message="Fulfillment confirmed",
            order_id=record.order_id,
            tx_hash=record.fulfillment.tx_hash,
        )
        return record.fulfillment
