from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

from bridge_solver.attestation import AttestationFetcher
from bridge_solver.common import RetryPolicy
from bridge_solver.common.errors import AttestationNotReady, AttestationTimeoutError, MessageParseError
from bridge_solver.orders.types import AttestationHandle

HANDLE = AttestationHandle(
    emitter_chain=21,
    emitter_address="0xf6a696471cc053ede2007c1624405f7b0aa8e860f780589e358776e0b88ce2f1",
    sequence=3,
)


class FakeTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class AttestationFetcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.time = FakeTime()
        self.parser = AsyncMock()
        self.guardian = AsyncMock()
        self.fetcher = AttestationFetcher(
            logger=logging.getLogger("test.fetcher"),
            parser=self.parser,
            guardian=self.guardian,
            parse_policy=RetryPolicy.fixed(delay_seconds=3.0, max_attempts=3),
            poll_policy=RetryPolicy.fixed(delay_seconds=10.0, timeout_seconds=600.0),
            monotonic=self.time.monotonic,
            sleep=self.time.sleep,
        )

    async def test_parse_retries_then_fetches(self) -> None:
        self.parser.parse_emitted_message.side_effect = [None, None, HANDLE]
        self.guardian.fetch_signed_vaa.side_effect = [None, b"signed-vaa"]
        on_handle = AsyncMock()
        on_retry = AsyncMock()

        result = await self.fetcher.fetch(
            order_id="0x01",
            tx_hash="0xfeed",
            on_handle=on_handle,
            on_retry=on_retry,
        )

        self.assertEqual(result.vaa, b"signed-vaa")
        self.assertEqual(result.handle, HANDLE)
        self.assertEqual(result.polls, 2)
        self.assertEqual(result.elapsed_seconds, 10.0)
        self.assertEqual(self.parser.parse_emitted_message.await_count, 3)
        on_handle.assert_awaited_once_with(HANDLE)
        self.assertEqual([call.args[0] for call in on_retry.await_args_list], ["parse", "parse", "attestation"])
        self.assertEqual(self.time.sleeps, [3.0, 3.0, 10.0])

    async def test_parse_failure_after_max_attempts(self) -> None:
        self.parser.parse_emitted_message.return_value = None

        with self.assertRaises(MessageParseError) as ctx:
            await self.fetcher.fetch(order_id="0x01", tx_hash="0xfeed")

        self.assertIn("after 3 attempts", str(ctx.exception))
        self.assertEqual(self.parser.parse_emitted_message.await_count, 3)
        self.assertEqual(self.time.sleeps, [3.0, 3.0])
        self.guardian.fetch_signed_vaa.assert_not_awaited()

    async def test_parse_errors_count_as_attempts(self) -> None:
        self.parser.parse_emitted_message.side_effect = [MessageParseError("no event"), HANDLE]
        self.guardian.fetch_signed_vaa.return_value = b"vaa"

        result = await self.fetcher.fetch(order_id="0x01", tx_hash="0xfeed")

        self.assertEqual(result.polls, 1)
        self.assertEqual(self.time.sleeps, [3.0])

    async def test_times_out_exactly_at_deadline(self) -> None:
        self.guardian.fetch_signed_vaa.return_value = None

        with self.assertRaises(AttestationTimeoutError) as ctx:
            await self.fetcher.fetch(order_id="0x01", tx_hash="0xfeed", handle=HANDLE)

        self.assertEqual(ctx.exception.elapsed_seconds, 600.0)
        self.assertEqual(self.time.now, 600.0)
        # polls at t = 0, 10, ..., 600
        self.assertEqual(self.guardian.fetch_signed_vaa.await_count, 61)
        self.parser.parse_emitted_message.assert_not_awaited()

    async def test_attestation_on_the_deadline_poll_is_accepted(self) -> None:
        self.guardian.fetch_signed_vaa.side_effect = [None] * 60 + [b"late-vaa"]

        result = await self.fetcher.fetch(order_id="0x01", tx_hash="0xfeed", handle=HANDLE)

        self.assertEqual(result.vaa, b"late-vaa")
        self.assertEqual(result.elapsed_seconds, 600.0)
        self.assertEqual(result.polls, 61)

    async def test_last_sleep_is_clamped_to_deadline(self) -> None:
        fetcher = AttestationFetcher(
            logger=logging.getLogger("test.fetcher"),
            parser=self.parser,
            guardian=self.guardian,
            parse_policy=RetryPolicy.fixed(delay_seconds=3.0, max_attempts=3),
            poll_policy=RetryPolicy.fixed(delay_seconds=7.0, timeout_seconds=20.0),
            monotonic=self.time.monotonic,
            sleep=self.time.sleep,
        )
        self.guardian.fetch_signed_vaa.return_value = None

        with self.assertRaises(AttestationTimeoutError):
            await fetcher.fetch(order_id="0x01", tx_hash="0xfeed", handle=HANDLE)

        self.assertEqual(self.time.sleeps, [7.0, 7.0, 6.0])
        self.assertEqual(self.time.now, 20.0)

    async def test_transient_guardian_errors_keep_polling(self) -> None:
        self.guardian.fetch_signed_vaa.side_effect = [AttestationNotReady("503"), b"vaa"]

        result = await self.fetcher.fetch(order_id="0x01", tx_hash="0xfeed", handle=HANDLE)

        self.assertEqual(result.vaa, b"vaa")
        self.assertEqual(result.polls, 2)


if __name__ == "__main__":
    unittest.main()
