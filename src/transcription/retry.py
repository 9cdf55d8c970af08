"""Job-level retry bookkeeping with exponential backoff.

RetryPolicy is pure: it only answers "how long before attempt n" and "is
attempt n allowed". RetryController keeps the per-job attempt counters and
does the waiting through an injected sleep, so tests never wait for real.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Retry settings
MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0
BACKOFF_MULTIPLIER = 2.0


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base_delay * multiplier ** attempt, optionally capped."""

    max_attempts: int = MAX_RETRIES
    base_delay: float = BASE_DELAY_SECONDS
    multiplier: float = BACKOFF_MULTIPLIER
    max_delay: Optional[float] = None

    def allows(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def delay_for(self, attempts_made: int) -> float:
        """Delay before the next attempt, given how many were already made (1s, 2s, 4s)."""
        delay = self.base_delay * (self.multiplier ** attempts_made)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class RetryController:
    """Per-job retry counters sharing one ceiling."""

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: Optional[Sleep] = None):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep
        self._attempts: dict[str, int] = {}

    def count(self, job_id: str) -> int:
        return self._attempts.get(job_id, 0)

    def attempt(self, job_id: str) -> bool:
        """True if another retry is allowed for this job."""
        return self.policy.allows(self.count(job_id))

    def increment(self, job_id: str) -> int:
        """Record a retry. Returns the number of retries made before this one."""
        previous = self.count(job_id)
        self._attempts[job_id] = previous + 1
        return previous

    def reset(self, job_id: str) -> None:
        self._attempts.pop(job_id, None)

    async def backoff(self, job_id: str, attempts_made: Optional[int] = None) -> float:
        """Sleep for the backoff delay of this job's next attempt. Returns the delay."""
        if attempts_made is None:
            attempts_made = max(self.count(job_id) - 1, 0)
        delay = self.policy.delay_for(attempts_made)
        logger.info(f"[{job_id}] Retry backoff {delay:.1f}s (retry {attempts_made + 1}/{self.policy.max_attempts})")
        await self._sleep(delay)
        return delay
