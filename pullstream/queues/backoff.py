"""
Exponential backoff for the consumer service's reconnect loop.

While Redis is unreachable the periodic procedures are skipped and the
service waits an increasing, jittered delay before probing again.
"""

import random


class ExponentialBackoff:
    """
    Jittered exponential delay: min(base * multiplier^attempt, max_delay) +/- jitter.

    Usage:
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=60.0)
        while not await store.ping():
            await asyncio.sleep(backoff.next_delay())
        backoff.reset()
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter_range: float = 0.5,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_range = jitter_range
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Consecutive failures since the last reset()."""
        return self._attempt

    def next_delay(self) -> float:
        """Return the delay for the current attempt and advance the counter."""
        delay = min(self.base_delay * (self.multiplier ** self._attempt), self.max_delay)
        jitter = delay * random.uniform(-self.jitter_range, self.jitter_range)
        self._attempt += 1
        return max(0.0, delay + jitter)

    def reset(self) -> None:
        self._attempt = 0
