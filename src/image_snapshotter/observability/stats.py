"""Snapshot request statistics.

Tracks how still-image requests were resolved:
- Outcome counts (success, timeout, busy, invalid_timeout, unavailable)
- Latency statistics for successful requests (min, max, avg, p95)
- Stale frame/timer events that arrived after resolution
- Rolling window so latency reflects recent behaviour

Thread-safe: the broker records from the event loop while the dashboard
thread reads summaries.

Example:
    stats = SnapshotStats()
    stats.record_request(Outcome.SUCCESS, duration_ms=42.0)
    stats.record_request(Outcome.TIMEOUT, duration_ms=2000.0)
    stats.record_stale("frame")

    summary = stats.get_summary()
    print(f"Success rate: {summary.success_rate:.1%}")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

#: Number of request records kept for latency percentiles.
DEFAULT_STATS_WINDOW_SIZE: int = 1000


class Outcome(Enum):
    """How a still request ended."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    BUSY = "busy"
    INVALID_TIMEOUT = "invalid_timeout"
    UNAVAILABLE = "unavailable"


def _utc_now() -> datetime:
    """Return the current time in UTC."""
    return datetime.now(UTC)


@dataclass
class StatsSummary:
    """Point-in-time view of snapshot statistics.

    Attributes:
        total_requests: Every request that received a response.
        outcome_counts: Count per ``Outcome`` value string.
        success_rate: successes / total_requests (0.0 when empty).
        min_latency_ms: Fastest successful request in the window.
        max_latency_ms: Slowest successful request in the window.
        avg_latency_ms: Mean successful latency in the window.
        p95_latency_ms: 95th percentile successful latency.
        stale_events: Count per stale event kind (``frame``, ``timer``).
        last_request_time: UTC time of the most recent response.
        uptime_seconds: Seconds since creation or last reset.
    """

    total_requests: int = 0
    outcome_counts: dict[str, int] = field(default_factory=dict)
    success_rate: float = 0.0
    min_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    stale_events: dict[str, int] = field(default_factory=dict)
    last_request_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dict for MCP and HTTP responses."""
        return {
            "total_requests": self.total_requests,
            "outcome_counts": self.outcome_counts.copy(),
            "success_rate": self.success_rate,
            "min_latency_ms": self.min_latency_ms,
            "max_latency_ms": self.max_latency_ms,
            "avg_latency_ms": self.avg_latency_ms,
            "p95_latency_ms": self.p95_latency_ms,
            "stale_events": self.stale_events.copy(),
            "last_request_time": (
                self.last_request_time.isoformat() if self.last_request_time else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass
class RequestRecord:
    """Single resolved request."""

    timestamp: float  # monotonic time
    outcome: Outcome
    duration_ms: float


class SnapshotStats:
    """Collector for still request outcomes.

    Keeps cumulative counters for the lifetime of the collector and a
    bounded window of records for latency statistics.
    """

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        """Create an empty collector.

        Args:
            window_size: Maximum records kept for latency statistics.
                Older records are discarded; counters are unaffected.
        """
        self._window_size = window_size
        self._records: deque[RequestRecord] = deque(maxlen=window_size)
        self._outcome_counts: dict[str, int] = {}
        self._stale_events: dict[str, int] = {}
        self._total_requests = 0
        self._start_time = time.monotonic()
        self._last_request_time: datetime | None = None
        self._lock = threading.Lock()

    def record_request(self, outcome: Outcome, duration_ms: float = 0.0) -> None:
        """Record one response sent to a caller.

        Args:
            outcome: How the request ended.
            duration_ms: Time from admission to response. Rejections that
                never became pending pass 0.
        """
        record = RequestRecord(
            timestamp=time.monotonic(),
            outcome=outcome,
            duration_ms=duration_ms,
        )
        with self._lock:
            self._records.append(record)
            self._total_requests += 1
            key = outcome.value
            self._outcome_counts[key] = self._outcome_counts.get(key, 0) + 1
            self._last_request_time = _utc_now()

    def record_stale(self, kind: str) -> None:
        """Count a frame or timer event that arrived after resolution."""
        with self._lock:
            self._stale_events[kind] = self._stale_events.get(kind, 0) + 1

    def get_summary(self) -> StatsSummary:
        """Compute a summary snapshot.

        Counters are copied under the lock; sorting for the percentile
        happens outside it so the broker is never held up by a reader.

        Returns:
            StatsSummary with latency figures drawn from successful
            requests in the rolling window.
        """
        with self._lock:
            total = self._total_requests
            outcome_counts = self._outcome_counts.copy()
            stale_events = self._stale_events.copy()
            last_request_time = self._last_request_time
            start_time = self._start_time
            latencies = [
                r.duration_ms for r in self._records if r.outcome is Outcome.SUCCESS
            ]

        successes = outcome_counts.get(Outcome.SUCCESS.value, 0)

        if latencies:
            min_lat = min(latencies)
            max_lat = max(latencies)
            avg_lat = sum(latencies) / len(latencies)
            p95_lat = _percentile(sorted(latencies), 95)
        else:
            min_lat = max_lat = avg_lat = p95_lat = 0.0

        return StatsSummary(
            total_requests=total,
            outcome_counts=outcome_counts,
            success_rate=successes / total if total > 0 else 0.0,
            min_latency_ms=min_lat,
            max_latency_ms=max_lat,
            avg_latency_ms=avg_lat,
            p95_latency_ms=p95_lat,
            stale_events=stale_events,
            last_request_time=last_request_time,
            uptime_seconds=time.monotonic() - start_time,
        )

    def reset(self) -> None:
        """Clear all records and counters and restart the uptime clock."""
        with self._lock:
            self._records.clear()
            self._outcome_counts.clear()
            self._stale_events.clear()
            self._total_requests = 0
            self._start_time = time.monotonic()
            self._last_request_time = None

    def to_dict(self) -> dict[str, Any]:
        """Export the current summary as a dict."""
        return self.get_summary().to_dict()


def _percentile(sorted_data: list[float], p: float) -> float:
    """Linear-interpolated percentile of pre-sorted data.

    Args:
        sorted_data: Values in ascending order. Empty returns 0.0.
        p: Percentile in [0, 100].

    Returns:
        Interpolated percentile value.

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([10.0, 20.0, 30.0, 40.0], 50)
        25.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")

    if not sorted_data:
        return 0.0
    if len(sorted_data) == 1:
        return sorted_data[0]

    k = (len(sorted_data) - 1) * (p / 100)
    f = int(k)
    c = min(f + 1, len(sorted_data) - 1)
    return sorted_data[f] + (k - f) * (sorted_data[c] - sorted_data[f])
