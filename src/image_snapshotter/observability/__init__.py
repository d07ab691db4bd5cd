"""Observability module for image-snapshotter.

Provides structured logging and still request statistics.

Example:
    from image_snapshotter.observability import LogContext, get_logger

    logger = get_logger(__name__)

    with LogContext(request_id=1):
        logger.info("Request admitted", timeout_s=2.0)

Statistics Example:
    from image_snapshotter.observability import Outcome, SnapshotStats

    stats = SnapshotStats()
    stats.record_request(Outcome.SUCCESS, duration_ms=35.0)
    print(stats.get_summary().success_rate)
"""

from image_snapshotter.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from image_snapshotter.observability.stats import (
    Outcome,
    SnapshotStats,
    StatsSummary,
)

__all__ = [
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "Outcome",
    "SnapshotStats",
    "StatsSummary",
]
