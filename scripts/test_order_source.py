from __future__ import annotations

import asyncio
import logging
import unittest
from typing import AsyncIterator

from bridge_solver.common import RetryPolicy
from bridge_solver.ledgers.types import OrderEvent, OrderEventPage
from bridge_solver.orders import OrderSource, OrderSourceSettings
from bridge_solver.orders.types import Order
from bridge_solver.storage import InMemoryStorage


def _make_order(tag: str, position: int = 0) -> Order:
    return Order(
        order_id="0x" + tag * 32,
        depositor="0x" + "11" * 20,
        recipient="0x" + "22" * 32,
        input_amount=1_000_000,
        start_price=500,
        floor_price=400,
        start_time=0,
        duration=600,
        source_position=position,
    )


class FakeSourceLedger:
    name = "evm"

    def __init__(
        self,
        *,
        pages: list[OrderEventPage | Exception],
        open_ids: set[str] | None = None,
        subscription: list[OrderEvent] | None = None,
        subscription_error: Exception | None = None,
    ) -> None:
        self.pages = list(pages)
        self.open_ids = open_ids
        self.subscription = list(subscription or [])
        self.subscription_error = subscription_error
        self.fetch_cursors: list[str | None] = []
        self.subscribe_calls = 0

    async def fetch_order_events(self, *, cursor: str | None, limit: int) -> OrderEventPage:
        self.fetch_cursors.append(cursor)
        if not self.pages:
            return OrderEventPage(events=[], next_cursor=cursor)
        item = self.pages.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def open_order_ids(self, orders: list[Order]) -> set[str]:
        ids = {order.order_id for order in orders}
        return ids if self.open_ids is None else ids & self.open_ids

    async def subscribe_order_events(self, *, idle_timeout_seconds: float) -> AsyncIterator[OrderEvent]:
        self.subscribe_calls += 1
        for event in self.subscription:
            yield event
        if self.subscription_error is not None:
            raise self.subscription_error


async def _take(source: AsyncIterator[Order], count: int, stop_event: asyncio.Event) -> list[Order]:
    taken: list[Order] = []
    async for order in source:
        taken.append(order)
        if len(taken) >= count:
            stop_event.set()
            break
    await source.aclose()  # type: ignore[attr-defined]
    return taken


class OrderSourceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.source")
        self.store = InMemoryStorage(self.logger)
        self.stop_event = asyncio.Event()

    def _source(self, ledger: FakeSourceLedger, *, subscribe: bool = False) -> OrderSource:
        return OrderSource(
            logger=self.logger,
            ledger=ledger,
            store=self.store,
            settings=OrderSourceSettings(
                cursor_name="evm_to_sui",
                poll_interval_seconds=0.0,
                poll_retry=RetryPolicy.fixed(delay_seconds=0.0, max_attempts=3),
                page_limit=50,
                subscribe=subscribe,
                subscription_idle_timeout_seconds=30.0,
                subscription_retry_seconds=60.0,
            ),
        )

    async def test_backlog_yields_open_orders_and_persists_cursor(self) -> None:
        first, closed, third = _make_order("a1", 10), _make_order("b2", 11), _make_order("c3", 20)
        ledger = FakeSourceLedger(
            pages=[
                OrderEventPage(
                    events=[OrderEvent(first, "10"), OrderEvent(closed, "11")],
                    next_cursor="12",
                    has_more=True,
                ),
                OrderEventPage(events=[OrderEvent(third, "20")], next_cursor="21"),
            ],
            open_ids={first.order_id, third.order_id},
        )
        source = self._source(ledger)

        orders = [order async for order in source.backlog(self.stop_event)]

        self.assertEqual(orders, [first, third])
        self.assertEqual(ledger.fetch_cursors, [None, "12"])
        self.assertEqual(await self.store.load_cursor("evm_to_sui"), "21")
        self.assertEqual(source.cursor, "21")

    async def test_backlog_resumes_from_persisted_cursor(self) -> None:
        await self.store.save_cursor("evm_to_sui", "900")
        ledger = FakeSourceLedger(pages=[OrderEventPage(events=[], next_cursor="900")])

        orders = [order async for order in self._source(ledger).backlog(self.stop_event)]

        self.assertEqual(orders, [])
        self.assertEqual(ledger.fetch_cursors, ["900"])

    async def test_backlog_retries_failed_polls(self) -> None:
        order = _make_order("a1")
        ledger = FakeSourceLedger(
            pages=[
                ConnectionError("rpc down"),
                OrderEventPage(events=[OrderEvent(order, "1")], next_cursor="2"),
            ],
        )

        orders = [item async for item in self._source(ledger).backlog(self.stop_event)]

        self.assertEqual(orders, [order])
        self.assertEqual(ledger.fetch_cursors, [None, None])

    async def test_backlog_gives_up_after_policy_attempts(self) -> None:
        ledger = FakeSourceLedger(pages=[ConnectionError("rpc down")] * 3)

        with self.assertRaises(RuntimeError):
            _ = [item async for item in self._source(ledger).backlog(self.stop_event)]

        self.assertEqual(len(ledger.fetch_cursors), 3)
        self.assertIsNone(await self.store.load_cursor("evm_to_sui"))

    async def test_subscription_failure_falls_back_to_polling(self) -> None:
        live, missed = _make_order("a1", 30), _make_order("b2", 31)
        ledger = FakeSourceLedger(
            pages=[OrderEventPage(events=[OrderEvent(live, "30"), OrderEvent(missed, "31")], next_cursor="32")],
            subscription=[OrderEvent(live, "30")],
            subscription_error=ConnectionError("websocket closed"),
        )
        source = self._source(ledger, subscribe=True)

        orders = await _take(source.stream(self.stop_event), 3, self.stop_event)

        # the live order is delivered again by the catch-up poll
        self.assertEqual(orders, [live, live, missed])
        self.assertEqual(ledger.subscribe_calls, 1)
        self.assertEqual(source.mode, "polling")

    async def test_subscription_does_not_move_the_cursor(self) -> None:
        live = _make_order("a1", 30)
        ledger = FakeSourceLedger(pages=[], subscription=[OrderEvent(live, "30")])
        source = self._source(ledger, subscribe=True)

        orders = await _take(source.stream(self.stop_event), 1, self.stop_event)

        self.assertEqual(orders, [live])
        self.assertIsNone(await self.store.load_cursor("evm_to_sui"))

    async def test_polling_recovers_after_errors(self) -> None:
        order = _make_order("a1", 5)
        ledger = FakeSourceLedger(
            pages=[
                ConnectionError("rpc down"),
                OrderEventPage(events=[OrderEvent(order, "5")], next_cursor="6"),
            ],
        )
        source = self._source(ledger)

        orders = await _take(source.stream(self.stop_event), 1, self.stop_event)

        self.assertEqual(orders, [order])
        self.assertEqual(ledger.fetch_cursors, [None, None])


if __name__ == "__main__":
    unittest.main()
