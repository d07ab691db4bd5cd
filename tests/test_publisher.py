"""Tests for CameraPublisher.

A FakeClock makes rate limiting instant and observable: every sleep the
publisher asks for is recorded instead of waited out.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from image_snapshotter.devices.topic import FrameTopic
from image_snapshotter.drivers.publisher import CameraPublisher, SystemClock


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.fixture
def camera() -> MagicMock:
    camera = MagicMock()
    camera.frame_id = "mock_optical_frame"
    camera.capture.return_value = b"\xff\xd8jpeg\xff\xd9"
    return camera


class TestConstruction:
    @pytest.mark.parametrize("fps", [0, -1.0])
    def test_fps_must_be_positive(self, camera, fps):
        with pytest.raises(ValueError, match="fps"):
            CameraPublisher(camera, FrameTopic(), fps=fps)

    def test_delay_must_be_non_negative(self, camera):
        with pytest.raises(ValueError, match="startup_delay_s"):
            CameraPublisher(camera, FrameTopic(), startup_delay_s=-0.1)

    def test_initial_state(self, camera):
        publisher = CameraPublisher(camera, FrameTopic(), fps=4.0)

        assert publisher.running is False
        assert publisher.frames_published == 0
        assert publisher.fps == 4.0
        assert "fps=4.0" in repr(publisher)


class TestPublishing:
    @pytest.mark.asyncio
    async def test_frames_stamped_and_sequenced(self, camera, fake_clock):
        topic = FrameTopic()
        received = []
        topic.subscribe(received.append, queue_depth=16)
        publisher = CameraPublisher(camera, topic, fps=10.0, clock=fake_clock)

        publisher.start()
        await _until(lambda: len(received) >= 3)
        await publisher.stop()

        first = received[0]
        assert [f.header.sequence for f in received[:3]] == [0, 1, 2]
        assert first.header.frame_id == "mock_optical_frame"
        assert first.header.stamp.tzinfo is not None
        assert first.format == "jpeg"
        assert first.data == b"\xff\xd8jpeg\xff\xd9"
        camera.capture.assert_called_with(20_000)

    @pytest.mark.asyncio
    async def test_frame_id_and_exposure_override(self, camera, fake_clock):
        topic = FrameTopic()
        received = []
        topic.subscribe(received.append)
        publisher = CameraPublisher(
            camera, topic, frame_id="bench", exposure_us=500, clock=fake_clock
        )

        publisher.start()
        await _until(lambda: received)
        await publisher.stop()

        assert received[0].header.frame_id == "bench"
        camera.capture.assert_called_with(500)

    @pytest.mark.asyncio
    async def test_rate_limited_by_fps(self, camera, fake_clock):
        publisher = CameraPublisher(camera, FrameTopic(), fps=4.0, clock=fake_clock)

        publisher.start()
        await _until(lambda: publisher.frames_published >= 3)
        await publisher.stop()

        assert fake_clock.sleeps[:3] == [0.25, 0.25, 0.25]

    @pytest.mark.asyncio
    async def test_startup_delay_before_advertise(self, camera, fake_clock, log_stream):
        topic = FrameTopic()
        publisher = CameraPublisher(
            camera, topic, startup_delay_s=2.5, clock=fake_clock
        )

        publisher.start()
        await _until(lambda: publisher.frames_published >= 1)
        await publisher.stop()

        assert fake_clock.sleeps[0] == 2.5
        assert "Delaying publisher startup" in log_stream.getvalue()

    @pytest.mark.asyncio
    async def test_capture_errors_skip_frame(self, camera, fake_clock, log_stream):
        """A failing capture is logged and the stream continues."""
        outcomes = iter(
            [b"one", RuntimeError("sensor glitch"), OSError("usb reset"), b"two"]
        )

        def capture(exposure_us):
            outcome = next(outcomes, b"more")
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        camera.capture.side_effect = capture
        topic = FrameTopic()
        received = []
        topic.subscribe(received.append, queue_depth=16)
        publisher = CameraPublisher(camera, topic, clock=fake_clock)

        publisher.start()
        await _until(lambda: len(received) >= 2)
        await publisher.stop()

        assert publisher.capture_errors == 2
        assert [f.data for f in received[:2]] == [b"one", b"two"]
        assert [f.header.sequence for f in received[:2]] == [0, 1]
        assert "Capture failed, skipping frame" in log_stream.getvalue()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_advertises_while_running(self, camera, fake_clock):
        topic = FrameTopic()
        publisher = CameraPublisher(camera, topic, clock=fake_clock)

        publisher.start()
        await _until(lambda: topic.publisher_count == 1)
        assert publisher.running

        await publisher.stop()

        assert topic.publisher_count == 0
        assert publisher.running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, camera, fake_clock):
        publisher = CameraPublisher(camera, FrameTopic(), clock=fake_clock)

        task = publisher.start()
        assert publisher.start() is task

        await publisher.stop()
        assert task.done()

    @pytest.mark.asyncio
    async def test_unexpected_capture_error_ends_task(self, camera, fake_clock, log_stream):
        """An error outside the skip list ends the loop; stop still returns."""
        topic = FrameTopic()
        camera.capture.side_effect = TypeError("driver bug")
        publisher = CameraPublisher(camera, topic, clock=fake_clock)

        task = publisher.start()
        await _until(task.done)
        await publisher.stop()

        assert isinstance(task.exception(), TypeError)
        assert topic.publisher_count == 0
        assert publisher.running is False
        assert "Camera publisher crashed" in log_stream.getvalue()
        assert "driver bug" in log_stream.getvalue()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, camera):
        await CameraPublisher(camera, FrameTopic()).stop()

    @pytest.mark.asyncio
    async def test_system_clock_sleep_clamps_negative(self):
        clock = SystemClock()
        before = clock.monotonic()
        await clock.sleep(-1.0)
        assert clock.monotonic() >= before
