from .clock import Clock, EpochClock, FixedClock, TimeUnit
from .pricing import AuctionPricer, required_amount

__all__ = [
    "AuctionPricer",
    "Clock",
    "EpochClock",
    "FixedClock",
    "TimeUnit",
    "required_amount",
]
