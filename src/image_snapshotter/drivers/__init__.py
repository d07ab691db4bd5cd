"""Frame producers for the snapshotter.

Supports two modes:
- DIGITAL_TWIN: Simulated camera published in-process
- NONE: Frames come from an external publisher on the topic

Use drivers.config to select the producer:
    from image_snapshotter.drivers import config
    config.set_image_source(ImageSource.DIRECTORY, "/data/frames")
"""

from image_snapshotter.drivers import config
from image_snapshotter.drivers.cameras import ImageSource
from image_snapshotter.drivers.config import (
    DriverFactory,
    ProducerMode,
    SnapshotterConfig,
    configure,
    get_config,
    get_factory,
    reset_config,
    set_image_source,
)
from image_snapshotter.drivers.publisher import CameraPublisher, Clock, SystemClock

__all__ = [
    # Submodules
    "config",
    # Configuration
    "DriverFactory",
    "ImageSource",
    "ProducerMode",
    "SnapshotterConfig",
    "configure",
    "get_config",
    "get_factory",
    "reset_config",
    "set_image_source",
    # Producer
    "CameraPublisher",
    "Clock",
    "SystemClock",
]
