"""Camera driver module.

Provides the frame source behind the publisher. Only the digital twin is
shipped; a hardware driver plugs in by satisfying the same protocols.

Protocols:
    CameraDriver: Interface for camera discovery and connection
    CameraInstance: Interface for capture

Implementations:
    DigitalTwinCameraDriver/DigitalTwinCameraInstance: Simulated cameras
"""

from __future__ import annotations

from collections.abc import Mapping
from types import TracebackType
from typing import Any, Protocol, runtime_checkable

from image_snapshotter.drivers.cameras.twin import (
    DEFAULT_CAMERAS,
    DigitalTwinCameraDriver,
    DigitalTwinCameraInstance,
    DigitalTwinConfig,
    ImageSource,
    TwinCameraInfo,
    create_directory_camera,
    create_file_camera,
)


@runtime_checkable
class CameraInstance(Protocol):  # pragma: no cover
    """Protocol for an opened camera.

    Business context: The publisher codes against this protocol, so the
    stream can come from the digital twin in tests and demos or from a
    real camera in deployment without touching the snapshot path.
    """

    @property
    def frame_id(self) -> str:
        """Name stamped into the header of every frame from this camera."""
        ...

    def get_info(self) -> dict[str, Any]:
        """Return camera properties (name, resolution, colour)."""
        ...

    def capture(self, exposure_us: int) -> bytes:
        """Capture one frame and return it JPEG-encoded.

        Blocking. Callers on the event loop run it in a worker thread.

        Raises:
            RuntimeError: If the camera is closed or the capture fails.
        """
        ...

    def close(self) -> None:
        """Release the camera. Safe to call more than once."""
        ...

    def __enter__(self) -> CameraInstance:
        """Enter context manager."""
        ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager, closing the camera."""
        ...


@runtime_checkable
class CameraDriver(Protocol):  # pragma: no cover
    """Protocol for camera discovery and connection."""

    def get_connected_cameras(self) -> Mapping[int, Any]:
        """Return available cameras keyed by camera id."""
        ...

    def open(self, camera_id: int) -> CameraInstance:
        """Open a camera by id.

        Raises:
            ValueError: If no camera has that id.
        """
        ...


__all__ = [
    # Protocols
    "CameraDriver",
    "CameraInstance",
    # Digital twin
    "DEFAULT_CAMERAS",
    "DigitalTwinCameraDriver",
    "DigitalTwinCameraInstance",
    "DigitalTwinConfig",
    "ImageSource",
    "TwinCameraInfo",
    "create_directory_camera",
    "create_file_camera",
]
