from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol

from bridge_solver.common import RetryPolicy, log_event
from bridge_solver.common.errors import AttestationTimeoutError, MessageParseError, TransientError
from bridge_solver.orders.types import AttestationHandle

RetryHook = Callable[[str], Awaitable[None]]
HandleHook = Callable[[AttestationHandle], Awaitable[None]]


class AttestationStage(str, Enum):
    CONFIRMED = "confirmed"
    PARSING_MESSAGE = "parsing_message"
    AWAITING_ATTESTATION = "awaiting_attestation"
    FETCHED = "fetched"
    TIMED_OUT = "timed_out"


class EmittedMessageParser(Protocol):
    async def parse_emitted_message(self, tx_hash: str) -> AttestationHandle | None:
        ...


class SignedVaaProvider(Protocol):
    async def fetch_signed_vaa(self, handle: AttestationHandle) -> bytes | None:
        ...


@dataclass(slots=True, frozen=True)
class AttestationResult:
    handle: AttestationHandle
    vaa: bytes
    polls: int
    elapsed_seconds: float


class AttestationFetcher:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        parser: EmittedMessageParser,
        guardian: SignedVaaProvider,
        parse_policy: RetryPolicy,
        poll_policy: RetryPolicy,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._parser = parser
        self._guardian = guardian
        self._parse_policy = parse_policy
        self._poll_policy = poll_policy
        self._monotonic = monotonic
        self._sleep = sleep

    async def fetch(
        self,
        *,
        order_id: str,
        tx_hash: str,
        handle: AttestationHandle | None = None,
        on_handle: HandleHook | None = None,
        on_retry: RetryHook | None = None,
    ) -> AttestationResult:
        """Drive Confirmed -> ParsingMessage -> AwaitingAttestation -> Fetched.

        A known ``handle`` skips parsing. Raises ``MessageParseError`` when the
        message cannot be located and ``AttestationTimeoutError`` at the poll
        deadline.
        """
        self._log_stage(AttestationStage.CONFIRMED, order_id=order_id, tx_hash=tx_hash)
        if handle is None:
            self._log_stage(AttestationStage.PARSING_MESSAGE, order_id=order_id, tx_hash=tx_hash)
            handle = await self.resolve_handle(order_id=order_id, tx_hash=tx_hash, on_retry=on_retry)
            if on_handle is not None:
                await on_handle(handle)

        self._log_stage(
            AttestationStage.AWAITING_ATTESTATION,
            order_id=order_id,
            emitter_chain=handle.emitter_chain,
            emitter_address=handle.emitter_address,
            sequence=handle.sequence,
        )
        try:
            result = await self.await_attestation(order_id=order_id, handle=handle, on_retry=on_retry)
        except AttestationTimeoutError as error:
            self._log_stage(
                AttestationStage.TIMED_OUT,
                order_id=order_id,
                level="warning",
                elapsed_seconds=round(error.elapsed_seconds, 3),
            )
            raise

        self._log_stage(
            AttestationStage.FETCHED,
            order_id=order_id,
            polls=result.polls,
            elapsed_seconds=round(result.elapsed_seconds, 3),
        )
        return result

    async def resolve_handle(
        self,
        *,
        order_id: str,
        tx_hash: str,
        on_retry: RetryHook | None = None,
    ) -> AttestationHandle:
        attempt = 0
        while True:
            attempt += 1
            last_error: Exception | None = None
            try:
                handle = await self._parser.parse_emitted_message(tx_hash)
            except (MessageParseError, TransientError) as error:
                handle = None
                last_error = error

            if handle is not None:
                return handle

            if not self._parse_policy.allows_another(attempt):
                raise MessageParseError(
                    f"Could not parse emitted message from {tx_hash} after {attempt} attempts: "
                    f"{last_error or 'transaction not found'}"
                )

            log_event(
                self._logger,
                level="info",
                event="message_parse_retry",
                message="Emitted message not parsed yet, retrying",
                order_id=order_id,
                tx_hash=tx_hash,
                attempt=attempt,
                error=str(last_error) if last_error else None,
            )
            if on_retry is not None:
                await on_retry("parse")
            await self._sleep(self._parse_policy.delay_for(attempt))

    async def await_attestation(
        self,
        *,
        order_id: str,
        handle: AttestationHandle,
        on_retry: RetryHook | None = None,
    ) -> AttestationResult:
        started = self._monotonic()
        timeout_seconds = self._poll_policy.timeout_seconds
        deadline = started + timeout_seconds if timeout_seconds is not None else None

        attempt = 0
        while True:
            attempt += 1
            try:
                vaa = await self._guardian.fetch_signed_vaa(handle)
            except TransientError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="attestation_poll_failed",
                    message="Attestation poll failed, treating as not yet available",
                    order_id=order_id,
                    attempt=attempt,
                    error=str(error),
                )
                vaa = None

            now = self._monotonic()
            if vaa is not None:
                return AttestationResult(handle=handle, vaa=vaa, polls=attempt, elapsed_seconds=now - started)

            if deadline is not None and now >= deadline:
                raise AttestationTimeoutError(
                    f"Attestation for sequence {handle.sequence} not available after {now - started:.0f}s",
                    elapsed_seconds=now - started,
                )
            if deadline is None and not self._poll_policy.allows_another(attempt):
                raise AttestationTimeoutError(
                    f"Attestation for sequence {handle.sequence} not available after {attempt} polls",
                    elapsed_seconds=now - started,
                )

            if on_retry is not None:
                await on_retry("attestation")
            delay = self._poll_policy.delay_for(attempt)
            if deadline is not None:
                # the last sleep ends exactly on the deadline
                delay = min(delay, deadline - now)
            await self._sleep(delay)

    def _log_stage(self, stage: AttestationStage, *, order_id: str, level: str = "info", **fields: object) -> None:
        log_event(
            self._logger,
            level=level,
            event=f"attestation_{stage.value}",
            message=f"Attestation stage {stage.value}",
            order_id=order_id,
            stage=stage.value,
            **fields,
        )
