"""
Retry policy: exponential backoff with full jitter.

delay(attempt) = uniform(0, min(max_delay, base_delay * 2**attempt))

One utility shared by RPC reads, market metadata loads and execution retry
scheduling.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from core.exceptions import TransientRpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base_delay: float, max_delay: float,
                    jitter: bool = True, rng: Optional[random.Random] = None) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    if attempt < 0:
        attempt = 0
    ceiling = min(max_delay, base_delay * (2 ** attempt))
    if not jitter:
        return ceiling
    return (rng or random).uniform(0, ceiling)


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    max_attempts: int = 3
    jitter: bool = True

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        return compute_backoff(attempt, self.base_delay_seconds, self.max_delay_seconds,
                               jitter=self.jitter, rng=rng)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (TransientRpcError,),
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await ``operation()`` up to ``policy.max_attempts`` times.

    Only exceptions in ``retry_on`` are retried; anything else propagates
    immediately. The last retryable exception is re-raised once attempts are
    exhausted.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= attempts - 1:
                logger.warning(f"{label}: all {attempts} attempts failed: {exc}")
                raise
            delay = policy.delay_for(attempt)
            logger.info(f"{label}: attempt {attempt + 1}/{attempts} failed ({exc}), retrying in {delay:.2f}s")
            await sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover


__all__ = ["RetryPolicy", "compute_backoff", "retry_async"]
