"""Retry policy and a small async retry combinator."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 5
    delay: float = 1.0
    backoff: str = "fixed"
    max_delay: float = 30.0
    jitter: float = 0.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    give_up_on: Tuple[Type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if self.backoff not in {"fixed", "exponential"}:
            raise ValueError(f"unknown backoff strategy {self.backoff!r}")

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retry number ``attempt`` (1-based)."""
        if self.backoff == "exponential":
            base = self.delay * (2 ** max(0, attempt - 1))
        else:
            base = self.delay
        base = min(base, self.max_delay)
        if self.jitter:
            base *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, base)

    def should_retry(self, exc: BaseException) -> bool:
        if self.give_up_on and isinstance(exc, self.give_up_on):
            return False
        # errors classified at the transport seam carry their own verdict
        if getattr(exc, "retryable", None) is False:
            return False
        return isinstance(exc, self.retry_on)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` until it succeeds or ``policy`` is exhausted.

    The last exception is re-raised unchanged.  ``on_retry`` is invoked with
    the attempt number and the error before each sleep.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.should_retry(exc):
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            await sleep(policy.delay_for(attempt))


__all__ = ["RetryPolicy", "retry_async"]
