"""Tests for the dashboard API.

Uses FastAPI's TestClient for synchronous HTTP testing without running a
server. Most tests serve a mocked Snapshotter; the integration test lets
the app own a real runtime with the digital twin producer.
"""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from image_snapshotter.devices.messages import (
    REASON_BUSY,
    REASON_INVALID_TIMEOUT,
    REASON_STREAM_UNAVAILABLE,
    REASON_TIMEOUT,
    StillResponse,
)
from image_snapshotter.devices.service import ServiceNotRunningError
from image_snapshotter.drivers import config as driver_config
from image_snapshotter.drivers.config import SnapshotterConfig
from image_snapshotter.observability import SnapshotStats
from image_snapshotter.web.app import create_app, status_code_for
from tests.helpers import make_frame


@pytest.fixture
def snapshotter():
    mock = MagicMock()
    mock.request_still = AsyncMock(
        return_value=StillResponse.ok(make_frame(sequence=12, data=b"\xff\xd8img"))
    )
    mock.stats = SnapshotStats()
    mock.status.return_value = {"ready": True, "state": "idle"}
    return mock


@pytest.fixture
def client(snapshotter):
    return TestClient(create_app(snapshotter))


class TestStatusCodes:
    @pytest.mark.parametrize(
        ("reason", "code"),
        [
            (REASON_TIMEOUT, 504),
            (REASON_BUSY, 409),
            (REASON_INVALID_TIMEOUT, 422),
            (REASON_STREAM_UNAVAILABLE, 503),
            ("something new", 500),
        ],
    )
    def test_failure_mapping(self, reason, code):
        assert status_code_for(StillResponse.failure(reason)) == code

    def test_success(self, frame):
        assert status_code_for(StillResponse.ok(frame)) == 200


class TestStillJson:
    def test_success(self, client, snapshotter):
        response = client.get("/api/still", params={"timeout": 1.5})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["still"]["header"]["sequence"] == 12
        snapshotter.request_still.assert_awaited_once_with(1.5)

    def test_default_timeout_is_zero(self, client, snapshotter):
        client.get("/api/still")
        snapshotter.request_still.assert_awaited_once_with(0.0)

    @pytest.mark.parametrize(
        ("reason", "code"),
        [(REASON_TIMEOUT, 504), (REASON_BUSY, 409), (REASON_INVALID_TIMEOUT, 422)],
    )
    def test_failure_keeps_reason(self, client, snapshotter, reason, code):
        snapshotter.request_still.return_value = StillResponse.failure(reason)

        response = client.get("/api/still")

        assert response.status_code == code
        assert response.json() == {"success": False, "reason": reason}

    def test_non_numeric_timeout_rejected_by_validation(self, client, snapshotter):
        response = client.get("/api/still", params={"timeout": "soon"})

        assert response.status_code == 422
        snapshotter.request_still.assert_not_awaited()

    def test_service_not_running(self, client, snapshotter):
        snapshotter.request_still.side_effect = ServiceNotRunningError("stopped")

        response = client.get("/api/still")

        assert response.status_code == 503
        assert response.json()["reason"] == REASON_STREAM_UNAVAILABLE

    def test_unexpected_error(self, client, snapshotter):
        snapshotter.request_still.side_effect = KeyError("boom")

        response = client.get("/api/still")

        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_no_runtime(self):
        response = TestClient(create_app()).get("/api/still")

        assert response.status_code == 503
        assert response.json()["reason"] == REASON_STREAM_UNAVAILABLE


class TestStillImage:
    def test_raw_bytes_with_frame_headers(self, client):
        response = client.get("/api/still.jpg")

        assert response.status_code == 200
        assert response.content == b"\xff\xd8img"
        assert response.headers["content-type"] == "image/jpeg"
        assert response.headers["x-frame-id"] == "camera_optical_frame"
        assert response.headers["x-frame-sequence"] == "12"
        assert response.headers["x-frame-stamp"].startswith("2026-01-01T12:00:00")
        assert response.headers["cache-control"] == "no-store"

    def test_failure_is_json(self, client, snapshotter):
        snapshotter.request_still.return_value = StillResponse.failure(REASON_TIMEOUT)

        response = client.get("/api/still.jpg", params={"timeout": 0.1})

        assert response.status_code == 504
        assert response.json()["reason"] == REASON_TIMEOUT


class TestStatusAndStats:
    def test_status(self, client):
        response = client.get("/api/status")
        assert response.status_code == 200
        assert response.json() == {"ready": True, "state": "idle"}

    def test_status_without_runtime(self):
        response = TestClient(create_app()).get("/api/status")

        assert response.status_code == 503
        assert response.json()["ready"] is False

    def test_stats(self, client):
        response = client.get("/api/stats")
        assert response.status_code == 200
        assert response.json()["total_requests"] == 0

    def test_stats_without_runtime(self):
        assert TestClient(create_app()).get("/api/stats").status_code == 503


@pytest.mark.integration
def test_standalone_app_serves_stills():
    """App-owned runtime: wait for ready, then fetch a real JPEG.

    Arrangement:
    1. Global config with a fast digital twin.
    2. App created with manage_runtime=True and entered as a context
       manager so the lifespan runs.

    Assertion Strategy:
    - /api/status reports ready within a few seconds.
    - /api/still.jpg returns JPEG bytes with a frame sequence header.
    """
    driver_config.configure(SnapshotterConfig(fps=50.0, producer_poll_interval_s=0.05))

    with TestClient(create_app(manage_runtime=True)) as client:
        deadline = time.monotonic() + 5.0
        while not client.get("/api/status").json().get("ready"):
            assert time.monotonic() < deadline, "runtime never became ready"
            time.sleep(0.02)

        response = client.get("/api/still.jpg", params={"timeout": 2})

        assert response.status_code == 200
        assert response.content[:2] == b"\xff\xd8"
        assert int(response.headers["x-frame-sequence"]) >= 0
