"""Snapshotter runtime: wires topic, producer, broker and service together.

One Snapshotter per process serves the MCP tools and the dashboard API.
Startup order matters: the producer (if any) is launched first, then the
runtime waits for a publisher on the topic, and only then does the still
service start admitting requests.

Example:
    snapshotter = init_snapshotter(SnapshotterConfig(fps=5.0))
    if await snapshotter.start(shutdown=stop_event):
        response = await snapshotter.request_still(1.0)
    await shutdown_snapshotter()
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from image_snapshotter.devices.service import StillService
from image_snapshotter.devices.topic import FrameTopic, wait_for_producer
from image_snapshotter.drivers.config import (
    DriverFactory,
    SnapshotterConfig,
    get_config,
)
from image_snapshotter.observability import SnapshotStats, get_logger

if TYPE_CHECKING:
    from image_snapshotter.devices.broker import Scheduler, SnapshotBroker
    from image_snapshotter.devices.messages import StillResponse
    from image_snapshotter.drivers.publisher import CameraPublisher, Clock

logger = get_logger(__name__)


class Snapshotter:
    """Owns every moving part of a running snapshotter.

    Injectable Dependencies:
        - config: Settings (default: SnapshotterConfig())
        - stats: Outcome statistics (default: new SnapshotStats)
        - topic: Frame topic (default: new FrameTopic named config.topic)
        - scheduler: Broker timer source (default: the running loop)
        - clock: Publisher time source (default: SystemClock)
    """

    def __init__(
        self,
        config: SnapshotterConfig | None = None,
        *,
        stats: SnapshotStats | None = None,
        topic: FrameTopic | None = None,
        scheduler: Scheduler | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Build the runtime. Nothing runs until ``start``.

        Raises:
            ValueError: If the configuration is invalid.
        """
        self._config = config or SnapshotterConfig()
        self._config.validate()
        self._stats = stats or SnapshotStats()
        self._topic = topic or FrameTopic(self._config.topic)
        self._service = StillService(
            self._topic,
            scheduler=scheduler,
            default_timeout_s=self._config.default_timeout_s,
            stats=self._stats,
        )
        self._clock = clock
        self._publisher: CameraPublisher | None = None
        self._started = False

    # --- Properties ---

    @property
    def config(self) -> SnapshotterConfig:
        return self._config

    @property
    def stats(self) -> SnapshotStats:
        return self._stats

    @property
    def topic(self) -> FrameTopic:
        return self._topic

    @property
    def service(self) -> StillService:
        return self._service

    @property
    def broker(self) -> SnapshotBroker:
        return self._service.broker

    @property
    def publisher(self) -> CameraPublisher | None:
        """In-process producer, None in ProducerMode.NONE or before start."""
        return self._publisher

    @property
    def ready(self) -> bool:
        """True once requests are being admitted."""
        return self._service.ready

    # --- Lifecycle ---

    async def start(self, shutdown: asyncio.Event | None = None) -> bool:
        """Launch the producer and wait until the topic has a publisher.

        Args:
            shutdown: Set to abandon the wait (Ctrl+C, server exit).

        Returns:
            True when the service is ready, False when shutdown came first.
        """
        if self._started:
            return self._service.ready
        self._started = True

        loop = asyncio.get_running_loop()
        self._service.bind_loop(loop)

        self._publisher = DriverFactory(self._config).create_publisher(
            self._topic, clock=self._clock
        )
        if self._publisher is not None:
            self._publisher.start().add_done_callback(self._on_producer_exit)

        logger.info(
            "Snapshotter starting",
            topic=self._topic.name,
            producer=self._config.producer.value,
        )

        ready = await wait_for_producer(
            self._topic,
            poll_interval=self._config.producer_poll_interval_s,
            shutdown=shutdown,
        )
        if ready:
            self._service.mark_ready()
        return ready

    async def stop(self) -> None:
        """Fail any in-flight request, stop the producer, close the topic."""
        self._service.mark_unavailable()
        try:
            if self._publisher is not None:
                await self._publisher.stop()
        finally:
            self._topic.close()
            self._started = False
            logger.info("Snapshotter stopped", topic=self._topic.name)

    def _on_producer_exit(self, task: asyncio.Task[None]) -> None:
        # A crashed in-process producer leaves the topic without a publisher
        if task.cancelled() or task.exception() is None:
            return
        if self._service.ready:
            logger.error("Producer exited, stills unavailable", topic=self._topic.name)
            self._service.mark_unavailable()

    async def request_still(self, timeout_s: float = 0.0) -> StillResponse:
        """Request one still; callable from any loop or thread."""
        return await self._service.request_still(timeout_s)

    def status(self) -> dict[str, Any]:
        """Runtime state as a JSON-compatible dict."""
        pending = self.broker.pending
        publisher = self._publisher
        return {
            "ready": self._service.ready,
            "state": self.broker.state.value,
            "pending_request_id": pending.request_id if pending else None,
            "default_timeout_s": self.broker.default_timeout_s,
            "producer": {
                "mode": self._config.producer.value,
                "running": publisher.running if publisher else False,
                "frames_published": publisher.frames_published if publisher else 0,
                "fps": self._config.fps,
            },
            "topic": self._topic.snapshot(),
        }

    def __repr__(self) -> str:
        return (
            f"Snapshotter(topic={self._topic.name!r}, ready={self._service.ready}, "
            f"state={self.broker.state.value})"
        )


# Module-level singleton for the process-wide runtime
_default_snapshotter: Snapshotter | None = None


def init_snapshotter(
    config: SnapshotterConfig | None = None,
    *,
    stats: SnapshotStats | None = None,
    clock: Clock | None = None,
) -> Snapshotter:
    """Create the process-wide Snapshotter.

    Args:
        config: Settings; None uses the global configuration.
        stats: Optional shared statistics collector.
        clock: Optional publisher time source.

    Returns:
        The new Snapshotter, also returned by ``get_snapshotter()``.
    """
    global _default_snapshotter
    _default_snapshotter = Snapshotter(config or get_config(), stats=stats, clock=clock)
    return _default_snapshotter


def get_snapshotter() -> Snapshotter:
    """Return the process-wide Snapshotter.

    Raises:
        RuntimeError: If ``init_snapshotter()`` has not been called.
    """
    if _default_snapshotter is None:
        raise RuntimeError("Snapshotter not initialized. Call init_snapshotter() first.")
    return _default_snapshotter


async def shutdown_snapshotter() -> None:
    """Stop and forget the process-wide Snapshotter. No-op if none exists."""
    global _default_snapshotter
    if _default_snapshotter is not None:
        snapshotter = _default_snapshotter
        _default_snapshotter = None
        await snapshotter.stop()
