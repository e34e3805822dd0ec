"""Backoff schedule for failed resubmissions."""

from __future__ import annotations

import asyncio
import random


class RetryPolicy:
    """Backoff schedule for retrying a failed operation.

    ``max_attempts=None`` means retry forever (the reprocessor's default: a
    dead-letter entry is never dropped because resubmission keeps failing).
    """

    def __init__(
        self,
        *,
        max_attempts: int | None = None,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        jitter: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_attempts: Maximum number of attempts (including first), or None.
            base_delay: Initial delay in seconds before first retry.
            max_delay: Cap on delay in seconds.
            jitter: If True, multiply delays by a random factor in [0.5, 1.5].
            rng: Random source for jitter (seed it for reproducible runs).
        """
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()  # noqa: S311

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt is allowed (attempt is 1-based)."""
        if attempt < 1:
            return False
        return self.max_attempts is None or attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> float:
        """Return delay in seconds for the given 1-based attempt.

        Uses exponential backoff: base_delay * 2^(attempt-1), capped by max_delay.
        """
        if attempt < 1:
            return 0.0
        delay = min(
            self.base_delay * (2 ** min(attempt - 1, 32)),
            self.max_delay,
        )
        if self.jitter:
            delay = delay * (0.5 + self._rng.random())
        return float(max(0.0, delay))

    async def wait_before_retry(self, attempt: int) -> None:
        # sleep(0) still yields, so a zero-delay retry loop cannot starve the loop
        await asyncio.sleep(self.delay_for_attempt(attempt))
