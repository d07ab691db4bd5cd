"""Snapshotter configuration and driver factory.

Holds the settings for the frame topic, the broker's default timeout and
the producer, and builds the camera driver and publisher from them. The
digital twin is the only shipped producer; ``ProducerMode.NONE`` leaves the
topic to an external publisher.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from image_snapshotter.devices.messages import DEFAULT_TIMEOUT_S
from image_snapshotter.devices.topic import (
    DEFAULT_PRODUCER_POLL_INTERVAL_S,
    DEFAULT_TOPIC,
)
from image_snapshotter.drivers.cameras import (
    CameraDriver,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    ImageSource,
)
from image_snapshotter.drivers.publisher import (
    DEFAULT_EXPOSURE_US,
    DEFAULT_PUBLISH_FPS,
    CameraPublisher,
    Clock,
)
from image_snapshotter.observability import get_logger

if TYPE_CHECKING:
    from image_snapshotter.devices.topic import FrameTopic

logger = get_logger(__name__)


class ProducerMode(Enum):
    """Where frames on the topic come from."""

    DIGITAL_TWIN = "digital_twin"  # In-process simulated camera
    NONE = "none"  # External publisher advertises on the topic


@dataclass
class SnapshotterConfig:
    """Configuration for the snapshotter runtime.

    Attributes:
        topic: Name of the frame topic stills are taken from.
        default_timeout_s: Timeout applied to requests asking for 0 seconds.
        producer: Which producer the runtime starts, if any.
        fps: Maximum publish rate of the digital twin producer.
        frame_id: Header frame id; None uses the camera's own.
        image_source: Digital twin image source.
        image_path: File or directory for FILE/DIRECTORY sources.
        camera_id: Digital twin camera to open.
        exposure_us: Exposure passed to every capture.
        startup_delay_s: Delay before the producer advertises.
        producer_poll_interval_s: Interval between "waiting for publisher"
            warnings at startup.
    """

    topic: str = DEFAULT_TOPIC
    default_timeout_s: float = DEFAULT_TIMEOUT_S

    # Producer settings
    producer: ProducerMode = ProducerMode.DIGITAL_TWIN
    fps: float = DEFAULT_PUBLISH_FPS
    frame_id: str | None = None
    exposure_us: int = DEFAULT_EXPOSURE_US
    startup_delay_s: float = 0.0
    producer_poll_interval_s: float = DEFAULT_PRODUCER_POLL_INTERVAL_S

    # Digital twin settings
    image_source: ImageSource = ImageSource.SYNTHETIC
    image_path: Path | None = None
    camera_id: int = 0

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: Naming the first offending field.
        """
        if not self.topic:
            raise ValueError("topic must not be empty")
        if not (math.isfinite(self.default_timeout_s) and self.default_timeout_s > 0):
            raise ValueError(
                f"default_timeout_s must be positive and finite, "
                f"got {self.default_timeout_s}"
            )
        if not (math.isfinite(self.fps) and self.fps > 0):
            raise ValueError(f"fps must be positive, got {self.fps}")
        if self.startup_delay_s < 0:
            raise ValueError(
                f"startup_delay_s must be non-negative, got {self.startup_delay_s}"
            )
        if self.producer_poll_interval_s <= 0:
            raise ValueError(
                f"producer_poll_interval_s must be positive, "
                f"got {self.producer_poll_interval_s}"
            )
        if self.exposure_us < 0:
            raise ValueError(f"exposure_us must be non-negative, got {self.exposure_us}")
        if self.image_source != ImageSource.SYNTHETIC and self.image_path is None:
            raise ValueError(
                f"image_path is required for image_source={self.image_source.value}"
            )


class DriverFactory:
    """Builds the producer pieces described by a SnapshotterConfig.

    Business context: One place decides how frames are produced, so the
    runtime and tests get a consistent camera and publisher from the same
    configuration without knowing about image sources.
    """

    def __init__(self, config: SnapshotterConfig | None = None):
        self.config = config or SnapshotterConfig()

    def create_camera_driver(self) -> CameraDriver:
        """Create the digital twin driver for the configured image source."""
        twin_config = DigitalTwinConfig(
            image_source=self.config.image_source,
            image_path=self.config.image_path,
        )
        return DigitalTwinCameraDriver(twin_config)

    def create_publisher(
        self, topic: FrameTopic, clock: Clock | None = None
    ) -> CameraPublisher | None:
        """Open the configured camera and wrap it in a publisher.

        Args:
            topic: Topic the publisher will advertise on.
            clock: Optional time source for the publisher.

        Returns:
            A publisher that has not been started, or None when the
            producer mode is NONE.

        Raises:
            ValueError: If the configured camera does not exist.
        """
        if self.config.producer == ProducerMode.NONE:
            logger.info("No in-process producer configured", topic=topic.name)
            return None

        camera = self.create_camera_driver().open(self.config.camera_id)
        return CameraPublisher(
            camera,
            topic,
            fps=self.config.fps,
            frame_id=self.config.frame_id,
            exposure_us=self.config.exposure_us,
            startup_delay_s=self.config.startup_delay_s,
            clock=clock,
        )


# =============================================================================
# Global Singletons
# =============================================================================
# Not thread-safe. Configure once at startup before the dashboard thread
# starts.

_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Return the global factory, creating it with defaults on first use."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def get_config() -> SnapshotterConfig:
    """Return the active global configuration."""
    return get_factory().config


def configure(config: SnapshotterConfig) -> None:
    """Validate ``config`` and make it the global configuration.

    Raises:
        ValueError: If the configuration is invalid. The previous
            configuration stays active.
    """
    global _factory
    config.validate()
    _factory = DriverFactory(config)
    logger.info(
        "Snapshotter configured",
        topic=config.topic,
        producer=config.producer.value,
        default_timeout_s=config.default_timeout_s,
    )


def reset_config() -> None:
    """Drop the global configuration; the next access uses defaults."""
    global _factory
    _factory = None


def set_image_source(source: ImageSource, image_path: Path | str | None = None) -> None:
    """Switch the digital twin image source in the global configuration.

    Takes effect for producers created afterwards.

    Example:
        >>> set_image_source(ImageSource.DIRECTORY, "/data/frames")
    """
    path = Path(image_path) if image_path is not None else None
    configure(replace(get_config(), image_source=source, image_path=path))
