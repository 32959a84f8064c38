"""Backoff schedule for retrying transient request failures"""

import dataclasses
import random
from collections.abc import Callable


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """
    How hard to retry a request that failed for a transient reason.

    The delay before retry n (counting from 1) is base_delay * multiplier**(n-1), capped at
    max_delay, then scaled by a random factor in [1-jitter, 1+jitter] so that many clients
    failing at once do not all come back at the same moment.
    """

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the delay
    max_delay: float = 60.0  # seconds

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays cannot be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    def delay(self, retry: int, rand: Callable[[], float] = random.random) -> float:
        """Seconds to wait before the given retry (1 is the first retry, after the first attempt)"""
        delay = min(self.base_delay * self.multiplier ** (retry - 1), self.max_delay)
        factor = 1 - self.jitter + 2 * self.jitter * rand()
        return delay * factor


# Used for interactions that are not safe to repeat (like a plain create)
NO_RETRY = RetryPolicy(max_attempts=1)
