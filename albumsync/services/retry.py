"""Bounded exponential backoff with full jitter for collaborator calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry an async operation with capped, jittered exponential backoff.

    Attempt ``n`` (0-based) that fails is followed by a sleep drawn uniformly
    from ``[0, min(base_delay * 2**n, max_delay)]`` (or exactly the cap value
    when ``jitter`` is off). At most ``max_retries + 1`` attempts are made.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: bool = True
    sleep: Callable[[float], Awaitable[None]] = field(
        default=asyncio.sleep, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            msg = f"max_retries must be >= 0, got {self.max_retries}"
            raise ValueError(msg)
        if self.base_delay < 0 or self.max_delay < 0:
            msg = "delays must be >= 0"
            raise ValueError(msg)

    def compute_delay(self, attempt: int) -> float:
        """Backoff before the retry that follows failed attempt ``attempt``."""
        ceiling = min(self.base_delay * (2**attempt), self.max_delay)
        if not self.jitter:
            return ceiling
        return random.uniform(0, ceiling)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        description: str = "operation",
    ) -> T:
        """Await ``operation`` until it succeeds or the retry budget is spent.

        Only exceptions matching ``retry_on`` are retried; the last one is
        re-raised unchanged once attempts are exhausted.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except retry_on as exc:
                if attempt >= self.max_retries:
                    logger.error(
                        "%s failed after %d attempt(s): %s", description, attempt + 1, exc
                    )
                    raise
                delay = self.compute_delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    description,
                    attempt + 1,
                    self.max_retries + 1,
                    delay,
                    exc,
                )
                await self.sleep(delay)
                attempt += 1
