"""Tests for snapshot request statistics."""

import threading

import pytest

from image_snapshotter.observability.stats import (
    Outcome,
    SnapshotStats,
    StatsSummary,
    _percentile,
)


class TestSnapshotStats:
    def test_empty_summary(self):
        summary = SnapshotStats().get_summary()

        assert summary.total_requests == 0
        assert summary.success_rate == 0.0
        assert summary.p95_latency_ms == 0.0
        assert summary.last_request_time is None

    def test_outcomes_counted_by_value(self):
        stats = SnapshotStats()
        stats.record_request(Outcome.SUCCESS, duration_ms=10.0)
        stats.record_request(Outcome.SUCCESS, duration_ms=30.0)
        stats.record_request(Outcome.TIMEOUT, duration_ms=2000.0)
        stats.record_request(Outcome.BUSY)

        summary = stats.get_summary()

        assert summary.total_requests == 4
        assert summary.outcome_counts == {"success": 2, "timeout": 1, "busy": 1}
        assert summary.success_rate == pytest.approx(0.5)
        assert summary.last_request_time is not None

    def test_latency_only_from_successes(self):
        """Timeouts would swamp the latency figures, so they are excluded."""
        stats = SnapshotStats()
        stats.record_request(Outcome.SUCCESS, duration_ms=10.0)
        stats.record_request(Outcome.SUCCESS, duration_ms=20.0)
        stats.record_request(Outcome.TIMEOUT, duration_ms=2000.0)

        summary = stats.get_summary()

        assert summary.min_latency_ms == 10.0
        assert summary.max_latency_ms == 20.0
        assert summary.avg_latency_ms == pytest.approx(15.0)

    def test_window_bounds_latency_not_counters(self):
        stats = SnapshotStats(window_size=2)
        for ms in (100.0, 1.0, 2.0):
            stats.record_request(Outcome.SUCCESS, duration_ms=ms)

        summary = stats.get_summary()

        assert summary.total_requests == 3
        assert summary.max_latency_ms == 2.0

    def test_stale_events(self):
        stats = SnapshotStats()
        stats.record_stale("frame")
        stats.record_stale("frame")
        stats.record_stale("timer")

        assert stats.get_summary().stale_events == {"frame": 2, "timer": 1}

    def test_reset(self):
        stats = SnapshotStats()
        stats.record_request(Outcome.SUCCESS, duration_ms=5.0)
        stats.record_stale("timer")

        stats.reset()

        summary = stats.get_summary()
        assert summary.total_requests == 0
        assert summary.stale_events == {}
        assert summary.last_request_time is None

    def test_to_dict_is_json_ready(self):
        stats = SnapshotStats()
        stats.record_request(Outcome.INVALID_TIMEOUT)

        data = stats.to_dict()

        assert set(data) == {
            "total_requests",
            "outcome_counts",
            "success_rate",
            "min_latency_ms",
            "max_latency_ms",
            "avg_latency_ms",
            "p95_latency_ms",
            "stale_events",
            "last_request_time",
            "uptime_seconds",
        }
        assert data["outcome_counts"] == {"invalid_timeout": 1}
        assert isinstance(data["last_request_time"], str)

    def test_summary_dict_copies_counts(self):
        summary = StatsSummary(outcome_counts={"success": 1})
        data = summary.to_dict()
        data["outcome_counts"]["success"] = 99
        assert summary.outcome_counts == {"success": 1}

    def test_concurrent_recording(self):
        stats = SnapshotStats()

        def worker():
            for _ in range(500):
                stats.record_request(Outcome.SUCCESS, duration_ms=1.0)
                stats.get_summary()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert stats.get_summary().total_requests == 2000


class TestPercentile:
    def test_interpolates(self):
        assert _percentile([10.0, 20.0, 30.0, 40.0], 50) == pytest.approx(25.0)

    def test_edges(self):
        assert _percentile([], 95) == 0.0
        assert _percentile([7.0], 95) == 7.0
        assert _percentile([1.0, 2.0, 3.0], 100) == 3.0

    @pytest.mark.parametrize("p", [-1, 101])
    def test_out_of_range(self, p):
        with pytest.raises(ValueError, match="between 0 and 100"):
            _percentile([1.0], p)
