from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .clock import Clock, TimeUnit, seconds_to_ticks

if TYPE_CHECKING:
    from bridge_solver.orders.types import Order


def required_amount(
    *,
    start_price: int,
    floor_price: int,
    start_time: int,
    duration: int,
    now: int,
) -> int:
    """Linear Dutch-auction decay from ``start_price`` to ``floor_price``.

    Integer arithmetic only; the division floors so the result matches the
    on-chain settlement check exactly.
    """
    if duration <= 0:
        raise ValueError("Auction duration must be positive.")
    if floor_price > start_price:
        raise ValueError("Auction floor price must not exceed the start price.")

    if now <= start_time:
        return start_price

    elapsed = now - start_time
    if elapsed >= duration:
        return floor_price

    return start_price - ((start_price - floor_price) * elapsed) // duration


@dataclass(slots=True, frozen=True)
class AuctionPricer:
    clock: Clock
    unit: TimeUnit

    def now(self) -> int:
        return self.clock.now()

    def price_at(self, order: Order, now: int) -> int:
        return required_amount(
            start_price=order.start_price,
            floor_price=order.floor_price,
            start_time=order.start_time,
            duration=order.duration,
            now=now,
        )

    def current(self, order: Order) -> int:
        return self.price_at(order, self.clock.now())

    def price_at_attestation(self, order: Order, timestamp_seconds: int) -> int:
        """Required amount at a guardian timestamp, which is always in seconds."""
        return self.price_at(order, seconds_to_ticks(timestamp_seconds, self.unit))

    def is_at_floor(self, order: Order, now: int | None = None) -> bool:
        moment = self.clock.now() if now is None else now
        return moment - order.start_time >= order.duration

    def seconds_past_end(self, order: Order) -> float:
        ticks = self.clock.now() - (order.start_time + order.duration)
        return ticks / self.unit.ticks_per_second
