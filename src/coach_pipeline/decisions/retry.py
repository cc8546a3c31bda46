"""Retry policy for inference calls made by the task executor."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded attempts with linear backoff: delay before retry N is N * base delay."""

    max_retries: int = 2
    base_delay_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""

        return attempt * self.base_delay_seconds

    @classmethod
    def zero_delay(cls, max_retries: int = 2) -> RetryPolicy:
        return cls(max_retries=max_retries, base_delay_seconds=0.0)
