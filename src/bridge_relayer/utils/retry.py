"""
Bounded exponential backoff for RPC calls.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from ..errors import TransientRpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff: base_delay * 2**(attempt-1), capped at max_delay, plus jitter."""
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.1  # fraction of the delay
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter and delay:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str,
        retry_on: tuple[type[BaseException], ...] = (TransientRpcError,),
    ) -> T:
        """
        Await `operation` until it succeeds or attempts run out.

        Exceptions outside `retry_on` propagate immediately. After the last
        attempt the last retryable exception is re-raised.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1
