"""
Bounded retry policy: attempts counter plus next-eligible time.

Pure.  Shared by event-application retries and alert delivery so both follow
the same backoff curve (base delay, doubling per attempt).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0

    def delay_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt, given attempts already made (>= 1)."""
        exponent = max(attempts - 1, 0)
        return timedelta(seconds=self.base_delay_seconds * (2 ** exponent))

    def next_attempt_at(self, now: datetime, attempts: int) -> datetime:
        return now + self.delay_for(attempts)

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
