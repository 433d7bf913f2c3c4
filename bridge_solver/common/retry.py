from __future__ import annotations

import os
import random
from dataclasses import dataclass
from typing import Any


def _env_number(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    try:
        if raw is None or raw.strip() == "":
            return default
        return float(raw.strip())
    except ValueError:
        return default


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded retry schedule shared by polling, parsing and submission loops.

    ``max_attempts <= 0`` means the loop is bounded only by ``timeout_seconds``.
    ``backoff_multiplier == 1`` gives a fixed interval.
    """

    max_attempts: int = 1
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 1.0
    timeout_seconds: float | None = None
    jitter_ratio: float = 0.0

    @classmethod
    def fixed(
        cls,
        *,
        delay_seconds: float,
        max_attempts: int = 0,
        timeout_seconds: float | None = None,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            initial_delay_seconds=delay_seconds,
            max_delay_seconds=delay_seconds,
            backoff_multiplier=1.0,
            timeout_seconds=timeout_seconds,
        )

    @classmethod
    def from_env(cls, prefix: str, *, defaults: "RetryPolicy") -> "RetryPolicy":
        max_attempts = _env_number(f"{prefix}_MAX_ATTEMPTS", float(defaults.max_attempts))
        initial_delay = _env_number(f"{prefix}_DELAY_SECONDS", defaults.initial_delay_seconds)
        max_delay = _env_number(f"{prefix}_MAX_DELAY_SECONDS", defaults.max_delay_seconds)
        multiplier = _env_number(f"{prefix}_BACKOFF_MULTIPLIER", defaults.backoff_multiplier)
        timeout = _env_number(f"{prefix}_TIMEOUT_SECONDS", defaults.timeout_seconds)
        jitter = _env_number(f"{prefix}_JITTER_RATIO", defaults.jitter_ratio)

        initial_delay = max(0.0, initial_delay or 0.0)
        return cls(
            max_attempts=int(max_attempts or 0),
            initial_delay_seconds=initial_delay,
            max_delay_seconds=max(initial_delay, max_delay or 0.0),
            backoff_multiplier=max(1.0, multiplier or 1.0),
            timeout_seconds=timeout if timeout is None or timeout > 0 else None,
            jitter_ratio=min(1.0, max(0.0, jitter or 0.0)),
        )

    def allows_another(self, attempt: int) -> bool:
        """Whether a retry may follow the given 1-based attempt."""
        return self.max_attempts <= 0 or attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        base_seconds = min(
            self.max_delay_seconds,
            self.initial_delay_seconds * (self.backoff_multiplier**exponent),
        )
        if self.jitter_ratio <= 0 or base_seconds <= 0:
            return base_seconds
        jitter_seconds = random.uniform(0.0, base_seconds * self.jitter_ratio)
        return min(self.max_delay_seconds, base_seconds + jitter_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay_seconds": self.initial_delay_seconds,
            "max_delay_seconds": self.max_delay_seconds,
            "backoff_multiplier": self.backoff_multiplier,
            "timeout_seconds": self.timeout_seconds,
            "jitter_ratio": self.jitter_ratio,
        }
