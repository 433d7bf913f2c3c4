from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Protocol

import aiohttp

from bridge_solver.common import log_event

from .types import PriceSnapshot


def parse_price_table(raw: str) -> dict[str, Decimal]:
    """Parse ``"SUI=1.0,USDC=1,ETH=2000"`` into a symbol -> quote price table."""
    prices: dict[str, Decimal] = {}
    for item in (raw or "").split(","):
        symbol, separator, value = item.partition("=")
        if not separator:
            continue
        try:
            price = Decimal(value.strip())
        except InvalidOperation:
            continue
        if symbol.strip() and price.is_finite() and price > 0:
            prices[symbol.strip().upper()] = price
    return prices


def _extract_prices(body: Any) -> dict[str, Decimal]:
    table = body.get("prices", body) if isinstance(body, dict) else {}
    prices: dict[str, Decimal] = {}
    if not isinstance(table, dict):
        return prices
    for symbol, value in table.items():
        if isinstance(value, dict):
            value = value.get("price") or value.get("usd")
        try:
            price = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError):
            continue
        if price.is_finite() and price > 0:
            prices[str(symbol).upper()] = price
    return prices


class PriceReference(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def refresh(self) -> None:
        ...

    def snapshot(self) -> PriceSnapshot:
        ...


class StaticPriceReference:
    def __init__(self, prices: dict[str, Decimal], *, clock: Callable[[], float] = time.time) -> None:
        self._prices = {symbol.upper(): price for symbol, price in prices.items()}
        self._clock = clock

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def refresh(self) -> None:
        return None

    def snapshot(self) -> PriceSnapshot:
        return PriceSnapshot(prices=dict(self._prices), source="static", fetched_at=self._clock())


class HttpPriceFeed:
    """Polls a JSON price endpoint and overlays it on the static table.

    Accepts ``{"SUI": 1.02}``, ``{"prices": {...}}`` or ``{"SUI": {"price": ...}}``.
    Stale or failed fetches fall back to the static table.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        url: str,
        fallback: StaticPriceReference,
        ttl_seconds: float = 30.0,
        request_timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._logger = logger
        self._url = url
        self._fallback = fallback
        self._ttl_seconds = ttl_seconds
        self._request_timeout_seconds = request_timeout_seconds
        self._clock = clock
        self._session: aiohttp.ClientSession | None = None
        self._prices: dict[str, Decimal] = {}
        self._fetched_at = 0.0

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def refresh(self) -> None:
        if self._session is None:
            raise RuntimeError("Price feed HTTP session is not initialized.")
        if self._prices and self._clock() - self._fetched_at < self._ttl_seconds:
            return

        try:
            async with self._session.get(self._url) as response:
                if response.status >= 400:
                    raise RuntimeError(f"Price feed returned HTTP {response.status}")
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, RuntimeError) as error:
            log_event(
                self._logger,
                level="warning",
                event="price_feed_refresh_failed",
                message="Price feed refresh failed, keeping previous prices",
                url=self._url,
                error=str(error),
            )
            return

        prices = _extract_prices(body)
        if not prices:
            log_event(
                self._logger,
                level="warning",
                event="price_feed_empty",
                message="Price feed returned no usable prices",
                url=self._url,
            )
            return
        self._prices = prices
        self._fetched_at = self._clock()

    def snapshot(self) -> PriceSnapshot:
        static = self._fallback.snapshot()
        if not self._prices or self._clock() - self._fetched_at > self._ttl_seconds * 4:
            return static
        merged = dict(static.prices)
        merged.update(self._prices)
        return PriceSnapshot(prices=merged, source="http", fetched_at=self._fetched_at)
