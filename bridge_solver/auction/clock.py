from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class TimeUnit(str, Enum):
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"

    @property
    def ticks_per_second(self) -> int:
        return 1000 if self is TimeUnit.MILLISECONDS else 1

    @classmethod
    def parse(cls, raw: str) -> "TimeUnit":
        normalized = (raw or "").strip().lower()
        aliases = {
            "s": cls.SECONDS,
            "sec": cls.SECONDS,
            "seconds": cls.SECONDS,
            "ms": cls.MILLISECONDS,
            "millis": cls.MILLISECONDS,
            "milliseconds": cls.MILLISECONDS,
        }
        if normalized not in aliases:
            raise ValueError(f"Unsupported auction time unit: {raw!r}")
        return aliases[normalized]


class Clock(Protocol):
    def now(self) -> int:
        ...


@dataclass(slots=True, frozen=True)
class EpochClock:
    unit: TimeUnit

    def now(self) -> int:
        return int(time.time() * self.unit.ticks_per_second)


@dataclass(slots=True)
class FixedClock:
    value: int

    def now(self) -> int:
        return self.value

    def advance(self, delta: int) -> None:
        self.value += delta


def seconds_to_ticks(seconds: float, unit: TimeUnit) -> int:
    return int(seconds * unit.ticks_per_second)
