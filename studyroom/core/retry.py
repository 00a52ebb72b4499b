"""
Retry policy shared by the conversion pipeline and the page URL fallback.
Exponential backoff with an optional jitter, capped at max_delay.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.conversion_max_retries),
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter and delay > 0:
            delay = random.uniform(delay / 2, delay)
        return delay

    async def run(
        self,
        fn: Callable[[int], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        give_up_on: tuple[type[BaseException], ...] = (),
        on_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
    ) -> T:
        """
        Call fn(attempt) until it succeeds or attempts run out.

        Exceptions in give_up_on (or not in retry_on) propagate immediately.
        The last exception is re-raised once max_attempts is reached.
        """
        attempt = 1
        while True:
            try:
                return await fn(attempt)
            except give_up_on:
                raise
            except retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Attempt %d/%d failed (%s), retrying in %.2fs",
                    attempt, self.max_attempts, e, delay,
                )
                if on_retry is not None:
                    await on_retry(attempt, e)
                await asyncio.sleep(delay)
                attempt += 1
