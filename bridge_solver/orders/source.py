from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from bridge_solver.common import RetryPolicy, log_event, wait_with_stop
from bridge_solver.ledgers.types import OrderEventPage, SourceLedger

from .store import OrderStore
from .types import Order


@dataclass(slots=True, frozen=True)
class OrderSourceSettings:
    cursor_name: str
    poll_interval_seconds: float
    poll_retry: RetryPolicy
    page_limit: int
    subscribe: bool
    subscription_idle_timeout_seconds: float
    subscription_retry_seconds: float


class OrderSource:
    """Yields newly created orders from the source ledger.

    Polling advances a persisted cursor; the live subscription only delivers
    and every subscription drop is followed by a catch-up poll from that
    cursor, so re-delivery is possible and handled downstream.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        ledger: SourceLedger,
        store: OrderStore,
        settings: OrderSourceSettings,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._ledger = ledger
        self._store = store
        self._settings = settings
        self._monotonic = monotonic
        self._cursor: str | None = None
        self._cursor_loaded = False
        self._consecutive_poll_failures = 0
        self.mode = "polling"

    @property
    def cursor(self) -> str | None:
        return self._cursor

    async def _load_cursor(self) -> str | None:
        if not self._cursor_loaded:
            self._cursor = await self._store.load_cursor(self._settings.cursor_name)
            self._cursor_loaded = True
        return self._cursor

    async def _advance_cursor(self, cursor: str | None) -> None:
        if not cursor or cursor == self._cursor:
            return
        await self._store.save_cursor(self._settings.cursor_name, cursor)
        self._cursor = cursor

    async def backlog(self, stop_event: asyncio.Event) -> AsyncIterator[Order]:
        """Scan creation events from the checkpoint and yield orders still open on-chain."""
        cursor = await self._load_cursor()
        scanned = 0
        yielded = 0
        while not stop_event.is_set():
            page = await self._fetch_page_with_retry(cursor, stop_event)
            if page is None:
                return

            orders = [event.order for event in page.events]
            open_ids = await self._ledger.open_order_ids(orders) if orders else set()
            for event in page.events:
                scanned += 1
                if event.order.order_id in open_ids:
                    yielded += 1
                    yield event.order

            await self._advance_cursor(page.next_cursor)
            cursor = self._cursor
            if not page.has_more:
                break

        log_event(
            self._logger,
            level="info",
            event="backlog_scan_completed",
            message="Backlog scan completed",
            scanned=scanned,
            open_orders=yielded,
            cursor=self._cursor,
        )

    async def stream(self, stop_event: asyncio.Event) -> AsyncIterator[Order]:
        await self._load_cursor()
        next_subscribe_at = 0.0

        while not stop_event.is_set():
            if self._settings.subscribe and self._monotonic() >= next_subscribe_at:
                self.mode = "subscription"
                try:
                    async for event in self._ledger.subscribe_order_events(
                        idle_timeout_seconds=self._settings.subscription_idle_timeout_seconds,
                    ):
                        yield event.order
                        if stop_event.is_set():
                            return
                except asyncio.CancelledError:
                    raise
                except Exception as error:
                    log_event(
                        self._logger,
                        level="warning",
                        event="subscription_fallback",
                        message="Order subscription ended, falling back to polling",
                        error=str(error),
                        error_type=type(error).__name__,
                        resubscribe_in_seconds=self._settings.subscription_retry_seconds,
                    )
                self.mode = "polling"
                next_subscribe_at = self._monotonic() + self._settings.subscription_retry_seconds

            async for order in self._poll_pass(stop_event):
                yield order
            await wait_with_stop(stop_event, self._settings.poll_interval_seconds)

    async def _poll_pass(self, stop_event: asyncio.Event) -> AsyncIterator[Order]:
        while not stop_event.is_set():
            page = await self._fetch_page(self._cursor)
            if page is None:
                await wait_with_stop(
                    stop_event,
                    self._settings.poll_retry.delay_for(self._consecutive_poll_failures),
                )
                return

            for event in page.events:
                yield event.order
                await self._advance_cursor(event.cursor)
            await self._advance_cursor(page.next_cursor)
            if not page.has_more:
                return

    async def _fetch_page(self, cursor: str | None) -> OrderEventPage | None:
        try:
            page = await self._ledger.fetch_order_events(cursor=cursor, limit=self._settings.page_limit)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            self._consecutive_poll_failures += 1
            log_event(
                self._logger,
                level="warning",
                event="order_poll_failed",
                message="Order poll failed, backing off",
                ledger=self._ledger.name,
                cursor=cursor,
                consecutive_failures=self._consecutive_poll_failures,
                error=str(error),
            )
            return None

        if self._consecutive_poll_failures:
            log_event(
                self._logger,
                level="info",
                event="order_poll_recovered",
                message="Order polling recovered",
                ledger=self._ledger.name,
                failures=self._consecutive_poll_failures,
            )
        self._consecutive_poll_failures = 0
        return page

    async def _fetch_page_with_retry(
        self,
        cursor: str | None,
        stop_event: asyncio.Event,
    ) -> OrderEventPage | None:
        attempt = 0
        while not stop_event.is_set():
            attempt += 1
            page = await self._fetch_page(cursor)
            if page is not None:
                return page
            if not self._settings.poll_retry.allows_another(attempt):
                raise RuntimeError(f"Backlog scan failed after {attempt} attempts at cursor {cursor}")
            await wait_with_stop(stop_event, self._settings.poll_retry.delay_for(attempt))
        return None
