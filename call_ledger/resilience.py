"""Health and performance tracking for the call ledger monitor."""
from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .const import PROCESSING_TIME_HISTORY, SLOW_PROCESSING_THRESHOLD_MS

_LOGGER = logging.getLogger(__name__)

# Error timestamps kept per context for rate calculation
ERROR_HISTORY_SIZE = 50


@dataclass
class ResilienceStats:
    """Statistics for engine health monitoring."""
    observations: int = 0
    events_processed: int = 0
    events_ignored: int = 0
    parse_failures: int = 0
    processing_errors: int = 0
    deliveries_sent: int = 0
    delivery_failures: int = 0
    stale_responses_discarded: int = 0
    evictions: int = 0
    storage_failures: int = 0
    last_error_time: datetime | None = None
    last_sweep_time: datetime | None = None


class MonitorResilience:
    """Collect error counts, processing times and a coarse health verdict."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        """Initialize resilience tracker."""
        self._clock = clock
        self.started_at = clock()
        self.stats = ResilienceStats()

        # Error tracking
        self._error_counts: dict[str, int] = {}
        self._error_timestamps: dict[str, deque[datetime]] = {}

        self._processing_times: deque[float] = deque(maxlen=PROCESSING_TIME_HISTORY)

    def record_error(self, context: str, error: BaseException | str) -> None:
        """Count an error caught at a component boundary."""
        now = self._clock()
        self._error_counts[context] = self._error_counts.get(context, 0) + 1
        self._error_timestamps.setdefault(
            context, deque(maxlen=ERROR_HISTORY_SIZE)
        ).append(now)
        self.stats.last_error_time = now
        _LOGGER.debug("Error in %s: %s", context, error)

    def record_processing_time(self, elapsed_ms: float) -> None:
        """Remember how long one observation pass took."""
        self._processing_times.append(elapsed_ms)
        if elapsed_ms > SLOW_PROCESSING_THRESHOLD_MS:
            _LOGGER.warning("Slow observation processing: %.2fms", elapsed_ms)

    @property
    def average_processing_time(self) -> float:
        if not self._processing_times:
            return 0.0
        return sum(self._processing_times) / len(self._processing_times)

    @property
    def total_errors(self) -> int:
        return sum(self._error_counts.values())

    def get_error_rate(self, context: str, window_minutes: int = 15) -> float:
        """Get errors per minute for *context* over the trailing window."""
        timestamps = self._error_timestamps.get(context)
        if not timestamps:
            return 0.0

        cutoff = self._clock() - timedelta(minutes=window_minutes)
        recent_errors = sum(1 for timestamp in timestamps if timestamp > cutoff)
        return recent_errors / window_minutes

    def is_healthy(self) -> tuple[bool, list[str]]:
        """Check overall engine health and return issues."""
        issues = []

        high_error_types = [
            context for context in self._error_counts if self.get_error_rate(context) > 2
        ]
        if high_error_types:
            issues.append(f"High error rate for: {', '.join(high_error_types)}")

        if self.stats.deliveries_sent >= 5 and (
            self.stats.delivery_failures * 2 > self.stats.deliveries_sent
        ):
            issues.append(
                f"Most deliveries failing: {self.stats.delivery_failures}"
                f"/{self.stats.deliveries_sent}"
            )

        if self.stats.storage_failures > 3:
            issues.append(f"Repeated storage failures: {self.stats.storage_failures}")

        return len(issues) == 0, issues

    def get_resilience_stats(self) -> dict[str, Any]:
        """Get resilience statistics."""
        is_healthy, issues = self.is_healthy()
        uptime = (self._clock() - self.started_at).total_seconds()

        return {
            "healthy": is_healthy,
            "issues": issues,
            "uptime_seconds": round(uptime),
            "avg_processing_time_ms": round(self.average_processing_time, 2),
            "total_errors": self.total_errors,
            "stats": {
                "observations": self.stats.observations,
                "events_processed": self.stats.events_processed,
                "events_ignored": self.stats.events_ignored,
                "parse_failures": self.stats.parse_failures,
                "processing_errors": self.stats.processing_errors,
                "deliveries_sent": self.stats.deliveries_sent,
                "delivery_failures": self.stats.delivery_failures,
                "stale_responses_discarded": self.stats.stale_responses_discarded,
                "evictions": self.stats.evictions,
                "storage_failures": self.stats.storage_failures,
                "last_error_time": self.stats.last_error_time.isoformat() if self.stats.last_error_time else None,
                "last_sweep_time": self.stats.last_sweep_time.isoformat() if self.stats.last_sweep_time else None,
            },
            "error_counts": self._error_counts.copy(),
            "error_rates": {
                context: self.get_error_rate(context) for context in self._error_counts
            },
        }
