from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from bridge_solver.attestation.codec import CodecError, Vaa, decode_fulfillment_payload, decode_vaa
from bridge_solver.auction import AuctionPricer
from bridge_solver.common import RetryPolicy, log_event
from bridge_solver.common.errors import AttestationMismatchError, TerminalRejectionError, TransientError
from bridge_solver.ledgers.types import SourceLedger
from bridge_solver.orders.types import OrderRecord, normalize_hex


class SettlementExecutor:
    """Submits the attestation to the source ledger to release the collateral."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        source: SourceLedger,
        pricer: AuctionPricer,
        solver_identity: bytes,
        retry_policy: RetryPolicy,
        confirm_timeout_seconds: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._source = source
        self._pricer = pricer
        self._solver_identity = solver_identity.rjust(32, b"\x00")
        self._retry_policy = retry_policy
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._sleep = sleep

    def preflight(self, *, record: OrderRecord, vaa: bytes) -> Vaa:
        """Local checks before spending gas; mismatches are terminal."""
        order = record.order
        handle = record.handle
        if handle is None:
            raise AttestationMismatchError(f"Order {order.order_id} has no attestation handle.")

        try:
            decoded = decode_vaa(vaa)
            payload = decode_fulfillment_payload(decoded.payload)
        except CodecError as error:
            raise AttestationMismatchError(f"Malformed attestation: {error}") from error

        if decoded.emitter_chain != handle.emitter_chain:
            raise AttestationMismatchError(
                f"emitter mismatch: chain {decoded.emitter_chain} != {handle.emitter_chain}"
            )
        if decoded.emitter_hex != normalize_hex(handle.emitter_address):
            raise AttestationMismatchError(
                f"emitter mismatch: {decoded.emitter_hex} != {handle.emitter_address}"
            )
        if decoded.sequence != handle.sequence:
            raise AttestationMismatchError(f"sequence mismatch: {decoded.sequence} != {handle.sequence}")
        if payload.order_id_hex != normalize_hex(order.order_id):
            raise AttestationMismatchError(
                f"attestation is for order {payload.order_id_hex}, not {order.order_id}"
            )
        if payload.solver != self._solver_identity:
            raise AttestationMismatchError(f"attestation names solver 0x{payload.solver.hex()}")

        if payload.amount is not None:
            required = self._pricer.price_at_attestation(order, decoded.timestamp)
            if payload.amount < required:
                raise TerminalRejectionError(
                    f"insufficient bid: paid {payload.amount}, required {required} at {decoded.timestamp}"
                )
        return decoded

    async def settle(
        self,
        *,
        record: OrderRecord,
        vaa: bytes,
        on_retry: Callable[[str], Awaitable[None]] | None = None,
    ) -> str:
        if not record.has_confirmed_fulfillment:
            raise TerminalRejectionError(f"Order {record.order_id} has no confirmed fulfillment.")
        decoded = self.preflight(record=record, vaa=vaa)

        attempt = 0
        while True:
            attempt += 1
            try:
                tx_hash = await self._source.settle(
                    order=record.order,
                    vaa=vaa,
                    timeout_seconds=self._confirm_timeout_seconds,
                )
            except TransientError as error:
                if not self._retry_policy.allows_another(attempt):
                    raise
                delay = error.retry_after_seconds or self._retry_policy.delay_for(attempt)
                log_event(
                    self._logger,
                    level="warning",
                    event="settlement_retry",
                    message="Settlement attempt failed, retrying",
                    order_id=record.order_id,
                    attempt=attempt,
                    retry_in_seconds=round(delay, 3),
                    error=str(error),
                )
                if on_retry is not None:
                    await on_retry("settlement")
                await self._sleep(delay)
                continue

            log_event(
                self._logger,
                level="info",
                event="settlement_confirmed",
                message="Settlement confirmed",
                order_id=record.order_id,
                tx_hash=tx_hash,
                vaa_digest=decoded.digest,
                attempts=attempt,
            )
            return tx_hash
