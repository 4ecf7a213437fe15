from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from pool_watch_engine.errors import RetryExhausted, TransportError

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Backoff:
    base: float = 0.5
    factor: float = 2.0
    cap: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped."""
        return min(self.base * self.factor ** max(0, attempt - 1), self.cap)


@dataclass
class RetryPolicy:
    """Bounded retries around gateway-dependent calls.

    Only ``TransportError`` is retried; everything else propagates on the
    first attempt. When the budget is spent ``RetryExhausted`` is raised with
    the last transport error chained.
    """

    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    sleep: Sleep = asyncio.sleep

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        last: TransportError | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except TransportError as e:
                last = e
                if attempt >= self.attempts:
                    break
                delay = self.backoff.delay(attempt)
                logger.warning(
                    "Retrying (attempt {}/{}) after {:.2f}s: {}", attempt, self.attempts, delay, e
                )
                await self.sleep(delay)
        raise RetryExhausted(
            f"gave up after {self.attempts} attempt(s): {last}",
            attempts=self.attempts,
            last_error=last,
        ) from last
