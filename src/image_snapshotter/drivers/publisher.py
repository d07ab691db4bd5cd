"""Camera publisher: streams camera frames onto a frame topic.

Captures from a CameraInstance at a fixed maximum rate and publishes each
frame as a CompressedFrame. This is the producer the snapshotter waits for
at startup and takes its stills from.

Capture is blocking (exposure, JPEG encoding) and runs in a worker thread
via ``asyncio.to_thread``; publishing happens back on the event loop so the
topic is only ever touched from its own loop.

Example:
    camera = DigitalTwinCameraDriver().open(0)
    publisher = CameraPublisher(camera, topic, fps=10.0)
    task = publisher.start()
    ...
    await publisher.stop()
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from image_snapshotter.devices.messages import CompressedFrame, FrameHeader
from image_snapshotter.observability import get_logger

if TYPE_CHECKING:
    from image_snapshotter.devices.topic import FrameTopic, Publisher
    from image_snapshotter.drivers.cameras import CameraInstance

logger = get_logger(__name__)

# --- Constants ---

DEFAULT_PUBLISH_FPS: float = 10.0
"""Default maximum frames per second published on the topic."""

DEFAULT_EXPOSURE_US: int = 20_000
"""Default exposure passed to the camera for each capture."""


# --- Protocols (Injectable Dependencies) ---


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Protocol for time functions (injectable for testing).

    Example:
        class FakeClock:
            def __init__(self):
                self._time = 0.0

            def monotonic(self) -> float:
                return self._time

            async def sleep(self, seconds: float) -> None:
                self._time += seconds
                await asyncio.sleep(0)

        publisher = CameraPublisher(camera, topic, clock=FakeClock())
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds for frame interval timing."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the publishing task without blocking the loop.

        Zero or negative values should still yield to the loop once.
        """
        ...


class SystemClock:
    """Default clock: ``time.monotonic`` and ``asyncio.sleep``."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


class CameraPublisher:
    """Publishes frames from one camera onto one topic.

    Injectable Dependencies:
        - camera: Frame source (required)
        - topic: Destination topic (required)
        - clock: Rate limiting time source (default: SystemClock)

    Capture failures are logged and the stream carries on with the next
    frame; a camera that keeps failing produces a warning per frame rather
    than killing the producer.
    """

    def __init__(
        self,
        camera: CameraInstance,
        topic: FrameTopic,
        *,
        fps: float = DEFAULT_PUBLISH_FPS,
        frame_id: str | None = None,
        exposure_us: int = DEFAULT_EXPOSURE_US,
        startup_delay_s: float = 0.0,
        clock: Clock | None = None,
        format: str = "jpeg",
    ) -> None:
        """Create a publisher. Nothing is advertised until ``run``.

        Args:
            camera: Opened camera to capture from.
            topic: Topic to publish on.
            fps: Maximum publish rate. Must be positive.
            frame_id: Header frame id; defaults to the camera's own.
            exposure_us: Exposure passed to every capture.
            startup_delay_s: Wait before advertising. Simulates a producer
                that comes up after the snapshotter.
            clock: Time source for rate limiting.
            format: Encoding tag stamped on published frames.

        Raises:
            ValueError: If fps is not positive or startup_delay_s is negative.
        """
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")
        if startup_delay_s < 0:
            raise ValueError(
                f"startup_delay_s must be non-negative, got {startup_delay_s}"
            )
        self._camera = camera
        self._topic = topic
        self._fps = fps
        self._frame_id = frame_id if frame_id is not None else camera.frame_id
        self._exposure_us = exposure_us
        self._startup_delay_s = startup_delay_s
        self._clock: Clock = clock or SystemClock()
        self._format = format
        self._publisher: Publisher | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._frames_published = 0
        self._capture_errors = 0

    # --- Properties ---

    @property
    def running(self) -> bool:
        """True while the publish loop is active."""
        return self._running

    @property
    def frames_published(self) -> int:
        """Frames published since ``run`` started."""
        return self._frames_published

    @property
    def capture_errors(self) -> int:
        """Captures that raised since ``run`` started."""
        return self._capture_errors

    @property
    def fps(self) -> float:
        """Maximum publish rate."""
        return self._fps

    # --- Lifecycle ---

    async def run(self) -> None:
        """Advertise on the topic and publish until cancelled or stopped.

        The publisher handle is closed on exit, which drops the topic's
        publisher count back down.
        """
        if self._startup_delay_s > 0:
            logger.info(
                "Delaying publisher startup",
                topic=self._topic.name,
                delay_s=self._startup_delay_s,
            )
            await self._clock.sleep(self._startup_delay_s)

        self._publisher = self._topic.advertise()
        self._running = True
        self._frames_published = 0
        min_interval = 1.0 / self._fps
        sequence = 0

        logger.info(
            "Camera publisher started",
            topic=self._topic.name,
            frame_id=self._frame_id,
            fps=self._fps,
        )

        try:
            while self._running:
                start = self._clock.monotonic()

                try:
                    data = await asyncio.to_thread(
                        self._camera.capture, self._exposure_us
                    )
                except (RuntimeError, OSError, ValueError) as e:
                    self._capture_errors += 1
                    logger.warning(
                        "Capture failed, skipping frame",
                        topic=self._topic.name,
                        error=str(e),
                        capture_errors=self._capture_errors,
                    )
                else:
                    frame = CompressedFrame(
                        header=FrameHeader(
                            stamp=datetime.now(UTC),
                            frame_id=self._frame_id,
                            sequence=sequence,
                        ),
                        format=self._format,
                        data=data,
                    )
                    self._publisher.publish(frame)
                    self._frames_published += 1
                    sequence += 1

                # Rate limiting using injected clock
                elapsed = self._clock.monotonic() - start
                await self._clock.sleep(min_interval - elapsed)
        finally:
            self._running = False
            self._publisher.close()
            logger.info(
                "Camera publisher stopped",
                topic=self._topic.name,
                frames_published=self._frames_published,
            )

    def start(self) -> asyncio.Task[None]:
        """Run the publisher as a background task on the running loop."""
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.get_running_loop().create_task(
            self.run(), name=f"publisher:{self._topic.name}"
        )
        self._task.add_done_callback(self._log_crash)
        return self._task

    async def stop(self) -> None:
        """Stop the background task and wait for it to finish."""
        self._running = False
        task = self._task
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            # Crashes are reported by _log_crash when the task ends
            await asyncio.wait({task})
        finally:
            self._task = None

    def _log_crash(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or task.exception() is None:
            return
        logger.error(
            "Camera publisher crashed",
            topic=self._topic.name,
            frames_published=self._frames_published,
            exc_info=task.exception(),
        )

    def __repr__(self) -> str:
        return (
            f"CameraPublisher(topic={self._topic.name!r}, fps={self._fps}, "
            f"running={self._running})"
        )
