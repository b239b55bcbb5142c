"""Per-source request pacing with minimum intervals and exponential backoff."""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class RateLimiter:
    """Minimum-interval limiter keyed by source name."""

    def __init__(self, clock: Clock = time.monotonic, sleep: Sleep = asyncio.sleep):
        self.clock = clock
        self.sleep = sleep
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.last_request: dict[str, float] = {}

    async def acquire_with_interval(self, source: str, min_interval: float) -> float:
        """
        Wait until at least ``min_interval`` seconds have passed since the last request.

        Args:
            source: Source to rate limit
            min_interval: Minimum seconds between requests

        Returns:
            Seconds waited
        """
        async with self.locks[source]:
            last_time = self.last_request.get(source)
            wait_needed = 0.0
            if last_time is not None:
                wait_needed = max(0.0, min_interval - (self.clock() - last_time))
            if wait_needed > 0:
                logger.debug(f"Rate limit for {source}: waiting {wait_needed:.2f}s")
                await self.sleep(wait_needed)

            self.last_request[source] = self.clock()
            return wait_needed

    def backoff_seconds(self, attempt: int, multiplier: float = 2.0, max_seconds: float = 60.0) -> float:
        """Exponential backoff for the given 1-based failure count."""
        if attempt <= 0:
            return 0.0
        return min(multiplier ** (attempt - 1), max_seconds)

    async def wait_for_backoff(
        self,
        source: str,
        attempt: int,
        multiplier: float = 2.0,
        max_seconds: float = 60.0,
    ) -> float:
        """
        Wait with exponential backoff after failed requests.

        Args:
            source: Source name
            attempt: Consecutive failures so far
            multiplier: Backoff multiplier
            max_seconds: Maximum backoff time in seconds
        """
        wait_time = self.backoff_seconds(attempt, multiplier, max_seconds)
        if wait_time > 0:
            logger.debug(f"Backing off {source} for {wait_time:.1f}s after {attempt} failures")
            await self.sleep(wait_time)
        return wait_time


