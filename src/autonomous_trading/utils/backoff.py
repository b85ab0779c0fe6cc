"""Shared backoff policy for the cycle loop and startup retries."""

from __future__ import annotations

from dataclasses import dataclass

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Exponential sleep scaling after consecutive cycle failures.

    The remaining interval is multiplied by ``min(max_multiplier, base ** failures)``
    and the result never exceeds ``max_multiplier`` times the base interval.
    """

    base: float = 1.5
    max_multiplier: float = 4.0

    def multiplier(self, failures: int) -> float:
        if failures <= 0:
            return 1.0
        return min(self.max_multiplier, self.base**failures)

    def sleep_for(self, interval_sec: float, elapsed_sec: float, failures: int) -> float:
        remaining = max(0.0, interval_sec - elapsed_sec)
        if failures <= 0:
            return remaining
        return min(remaining * self.multiplier(failures), interval_sec * self.max_multiplier)


def startup_retrying(attempts: int, *, reraise: bool = True) -> AsyncRetrying:
    """Retry controller for startup fetches: waits 1s, 2s, 4s between attempts."""
    return AsyncRetrying(
        wait=wait_exponential(multiplier=1, min=1, max=4),
        stop=stop_after_attempt(attempts),
        reraise=reraise,
    )
