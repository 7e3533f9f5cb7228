from __future__ import annotations

import asyncio
from dataclasses import dataclass

from .llm.errors import LLMRequestError


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Retry policy for retryable provider errors.

    The default retries forever with no delay. `max_attempts` caps consecutive retries;
    `backoff_s` and `backoff_factor` add an exponential delay capped at `max_backoff_s`.
    """

    max_attempts: int | None = None
    backoff_s: float = 0.0
    backoff_factor: float = 2.0
    max_backoff_s: float = 60.0

    def should_retry(self, error: LLMRequestError, attempt: int) -> bool:
        if not error.retryable:
            return False
        return self.max_attempts is None or attempt <= self.max_attempts

    def delay_s(self, attempt: int) -> float:
        if self.backoff_s <= 0:
            return 0.0
        return min(self.max_backoff_s, self.backoff_s * (self.backoff_factor ** max(0, attempt - 1)))

    async def wait(self, attempt: int) -> None:
        delay = self.delay_s(attempt)
        if delay > 0:
            await asyncio.sleep(delay)
