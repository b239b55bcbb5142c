"""Base class for external identity adapters.

Adapters resolve a title to a canonical id on an authoritative catalog and
report the newest version published there. Every network call goes through
``IdentityAdapter._guarded`` which serializes calls per adapter, enforces the
minimum interval and backoff, applies the timeout and maintains the cooldown.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from patchwatch import metrics
from patchwatch.config import Settings, settings as default_settings
from patchwatch.ingest.rate_limiter import RateLimiter
from patchwatch.ingest.source_health import SourceHealthTracker
from patchwatch.normalize.version import VersionToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdapterUnavailableError(RuntimeError):
    """Raised when an adapter is cooling down or its call failed."""

    def __init__(self, adapter: str, message: str, retry_after: Optional[float] = None):
        super().__init__(f"{adapter}: {message}")
        self.adapter = adapter
        self.retry_after = retry_after


class AdapterResponseError(RuntimeError):
    """Raised by adapters when a response cannot be parsed."""

    pass


@dataclass(frozen=True)
class CanonicalCandidate:
    """A catalog entry an adapter matched a title to."""

    adapter: str
    canonical_id: str
    title: str
    url: Optional[str] = None


@dataclass(frozen=True)
class AdapterPolicy:
    """Pacing and failure handling for one adapter."""

    min_interval: float = 2.0
    timeout: float = 8.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 60.0
    failure_threshold: int = 3
    cooldown_seconds: float = 900.0

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "AdapterPolicy":
        return cls(
            min_interval=config.adapter_min_interval_seconds,
            timeout=config.adapter_timeout_seconds,
            backoff_multiplier=config.adapter_backoff_multiplier,
            max_backoff=config.adapter_max_backoff_seconds,
            failure_threshold=config.adapter_failure_threshold,
            cooldown_seconds=config.adapter_cooldown_seconds,
        )


# Failures that count toward cooldown
FAILURE_EXC = (
    asyncio.TimeoutError,
    httpx.HTTPError,
    AdapterResponseError,
    ValueError,
)


class IdentityAdapter(ABC):
    """Abstract base class for identity adapters."""

    name = "base"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[AdapterPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        health: Optional[SourceHealthTracker] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        user_agent: str = default_settings.adapter_user_agent,
    ):
        self.policy = policy or AdapterPolicy.from_settings()
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock, sleep=sleep)
        self.health = health or SourceHealthTracker(
            failure_threshold=self.policy.failure_threshold,
            cooldown_seconds=self.policy.cooldown_seconds,
            clock=clock,
        )
        self.clock = clock
        self._client = client
        self._owns_client = client is None
        self._user_agent = user_agent
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.policy.timeout,
                follow_redirects=True,
                headers={"User-Agent": self._user_agent},
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def is_available(self) -> bool:
        return not self.health.in_cooldown(self.name)

    async def _guarded(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run one adapter call under the adapter's pacing and failure policy.

        Raises:
            AdapterUnavailableError: The adapter is cooling down, or the call failed
        """
        if self.health.in_cooldown(self.name):
            metrics.record_adapter_call(self.name, operation, "cooldown")
            raise AdapterUnavailableError(
                self.name, "cooling down", retry_after=self.health.cooldown_remaining(self.name)
            )

        async with self._lock:
            # Re-check: the previous holder may have tripped the cooldown
            if self.health.in_cooldown(self.name):
                metrics.record_adapter_call(self.name, operation, "cooldown")
                raise AdapterUnavailableError(
                    self.name, "cooling down", retry_after=self.health.cooldown_remaining(self.name)
                )

            failures = self.health.get(self.name).consecutive_failures
            await self.rate_limiter.wait_for_backoff(
                self.name, failures, self.policy.backoff_multiplier, self.policy.max_backoff
            )
            await self.rate_limiter.acquire_with_interval(self.name, self.policy.min_interval)

            started = self.clock()
            try:
                result = await asyncio.wait_for(call(), timeout=self.policy.timeout)
            except FAILURE_EXC as e:
                duration = self.clock() - started
                status_code = e.response.status_code if isinstance(e, httpx.HTTPStatusError) else None
                error = type(e).__name__ if isinstance(e, asyncio.TimeoutError) else str(e)
                self.health.record_failure(self.name, duration * 1000, status_code, error)
                metrics.record_adapter_call(self.name, operation, "error", duration)
                logger.warning(f"Adapter {self.name} {operation} failed: {error}", extra={"adapter": self.name})
                raise AdapterUnavailableError(self.name, f"{operation} failed: {error}") from e

            duration = self.clock() - started
            self.health.record_success(self.name, duration * 1000)
            metrics.record_adapter_call(self.name, operation, "ok", duration)
            return result

    @abstractmethod
    async def search(self, title: str) -> list[CanonicalCandidate]:
        """
        Resolve a title to canonical catalog entries, best match first.

        Raises:
            AdapterUnavailableError: The adapter cannot be reached right now
        """
        pass

    @abstractmethod
    async def latest_version(self, canonical_id: str) -> Optional[VersionToken]:
        """
        Newest version published for a canonical id, or None when unknown.

        Raises:
            AdapterUnavailableError: The adapter cannot be reached right now
        """
        pass
