"""
Retry policy with exponential backoff.
One policy object shared by the quote fetcher and any transport call.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration.

    ``max_retries`` counts retries after the first call, so a policy with
    ``max_retries=3`` makes at most 4 calls and waits base, base*m, base*m^2
    between them.
    """
    max_retries: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = False
    retry_on: Tuple[Type[BaseException], ...] = field(default=(Exception,))

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.multiplier < 1:
            raise ValueError("base_delay must be >= 0 and multiplier >= 1")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-based)."""
        delay = min(self.base_delay * (self.multiplier ** retry_index), self.max_delay)
        if self.jitter and delay > 0:
            delay = delay * (0.75 + random.random() * 0.5)
        return delay

    def delays(self) -> list[float]:
        return [self.delay_for(i) for i in range(self.max_retries)]

    def with_retry_on(self, *exceptions: Type[BaseException]) -> "RetryPolicy":
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            multiplier=self.multiplier,
            max_delay=self.max_delay,
            jitter=self.jitter,
            retry_on=tuple(exceptions),
        )

    async def run(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        sleep: SleepFunc = asyncio.sleep,
        on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
        label: str = "call",
        **kwargs,
    ) -> T:
        """Execute ``func`` and retry on ``retry_on`` exceptions.

        Raises:
            The last exception once retries are exhausted. Exceptions outside
            ``retry_on`` propagate immediately.
        """
        for attempt in range(self.max_attempts):
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_retries:
                    logger.warning(f"[RETRY] {label}: all {self.max_attempts} attempts failed: {e}")
                    raise

                delay = self.delay_for(attempt)
                logger.debug(
                    f"[RETRY] {label}: attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                if on_retry:
                    on_retry(attempt + 1, delay, e)
                await sleep(delay)

        raise RuntimeError("unreachable")


def with_retry(policy: RetryPolicy):
    """Decorator form of ``RetryPolicy.run``."""
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await policy.run(func, *args, label=func.__name__, **kwargs)
        return wrapper
    return decorator
