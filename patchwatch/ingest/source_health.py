"""Health tracking and cooldowns for external identity sources.

Tracks request outcomes per source. After ``failure_threshold`` consecutive
failures a source enters cooldown; callers check ``in_cooldown`` before any
network call and fail fast while it lasts.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Optional

from patchwatch import metrics
from patchwatch.ingest.rate_limiter import Clock

logger = logging.getLogger(__name__)


@dataclass
class RequestResult:
    """Result of a single request."""
    timestamp: float
    success: bool
    duration_ms: float
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class SourceHealthMetrics:
    """Health metrics for a single source."""
    source: str
    consecutive_failures: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    error_rate: float = 0.0
    last_429_at: Optional[float] = None
    cooldown_until: Optional[float] = None

    # Rolling window of recent requests
    recent_requests: deque = field(default_factory=lambda: deque(maxlen=50))

    def update_from_recent(self):
        if not self.recent_requests:
            return
        successes = sum(1 for r in self.recent_requests if r.success)
        self.error_rate = 1.0 - (successes / len(self.recent_requests))


class SourceHealthTracker:
    """Per-source failure counting and cooldown state."""

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_seconds: float = 900.0,
        clock: Clock = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self._metrics: Dict[str, SourceHealthMetrics] = {}

    def _get_or_create_metrics(self, source: str) -> SourceHealthMetrics:
        if source not in self._metrics:
            self._metrics[source] = SourceHealthMetrics(source=source)
        return self._metrics[source]

    def get(self, source: str) -> SourceHealthMetrics:
        return self._get_or_create_metrics(source)

    def record_success(self, source: str, duration_ms: float, status_code: Optional[int] = None) -> None:
        source_metrics = self._get_or_create_metrics(source)
        source_metrics.recent_requests.append(
            RequestResult(self.clock(), True, duration_ms, status_code)
        )
        source_metrics.total_requests += 1
        source_metrics.successful_requests += 1
        source_metrics.consecutive_failures = 0
        source_metrics.update_from_recent()

    def record_failure(
        self,
        source: str,
        duration_ms: float,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Record a failed request.

        Returns:
            True if this failure put the source into cooldown
        """
        now = self.clock()
        source_metrics = self._get_or_create_metrics(source)
        source_metrics.recent_requests.append(
            RequestResult(now, False, duration_ms, status_code, error)
        )
        source_metrics.total_requests += 1
        source_metrics.consecutive_failures += 1
        source_metrics.update_from_recent()

        if status_code == 429:
            source_metrics.last_429_at = now
            logger.warning(f"Source {source} received 429 rate limit response")

        if source_metrics.consecutive_failures >= self.failure_threshold:
            source_metrics.cooldown_until = now + self.cooldown_seconds
            metrics.set_adapter_cooldown(source, True)
            logger.warning(
                f"Source {source} entering cooldown for {self.cooldown_seconds:.0f}s "
                f"after {source_metrics.consecutive_failures} consecutive failures"
            )
            return True
        return False

    def in_cooldown(self, source: str) -> bool:
        source_metrics = self._metrics.get(source)
        if source_metrics is None or source_metrics.cooldown_until is None:
            return False
        if self.clock() < source_metrics.cooldown_until:
            return True

        # Cooldown over: allow one trial call, a single further failure re-enters cooldown
        source_metrics.cooldown_until = None
        source_metrics.consecutive_failures = self.failure_threshold - 1
        metrics.set_adapter_cooldown(source, False)
        logger.info(f"Source {source} cooldown ended")
        return False

    def cooldown_remaining(self, source: str) -> float:
        source_metrics = self._metrics.get(source)
        if source_metrics is None or source_metrics.cooldown_until is None:
            return 0.0
        return max(0.0, source_metrics.cooldown_until - self.clock())

    def get_stats(self, source: str) -> dict:
        source_metrics = self._get_or_create_metrics(source)
        return {
            "source": source,
            "consecutive_failures": source_metrics.consecutive_failures,
            "total_requests": source_metrics.total_requests,
            "error_rate": source_metrics.error_rate,
            "cooldown_remaining": self.cooldown_remaining(source),
        }
