"""Digital twin camera: simulated frame source for the snapshotter.

Produces JPEG frames without any camera hardware, so the frame topic has a
real producer in development, CI and demos.

Image Sources:
    Synthetic: Generated test pattern stamped with the frame counter
    Directory: Cycle through images in a folder
    File: Return the same image every time

Classes:
    DigitalTwinConfig: Image source settings
    DigitalTwinCameraDriver: Discovers and opens simulated cameras
    DigitalTwinCameraInstance: Opened camera used by the publisher

Factory Functions:
    create_file_camera: Twin that always returns one image
    create_directory_camera: Twin that cycles through a directory

Example:
    driver = DigitalTwinCameraDriver()
    with driver.open(0) as camera:
        jpeg_data = camera.capture(20_000)
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType, TracebackType
from typing import TYPE_CHECKING, Any, TypedDict, final

import cv2
import numpy as np

from image_snapshotter.observability import get_logger

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_CAMERAS",
    "DigitalTwinCameraDriver",
    "DigitalTwinCameraInstance",
    "DigitalTwinConfig",
    "ImageSource",
    "TwinCameraInfo",
    "create_directory_camera",
    "create_file_camera",
]


class ImageSource(Enum):
    """Image source for digital twin camera."""

    SYNTHETIC = "synthetic"  # Generate test patterns
    DIRECTORY = "directory"  # Cycle through images in a folder
    FILE = "file"  # Return same image repeatedly


class TwinCameraInfo(TypedDict, total=False):
    """Simulated camera properties."""

    Name: str
    MaxWidth: int
    MaxHeight: int
    IsColorCam: bool
    FrameId: str


@dataclass
class DigitalTwinConfig:
    """Configuration for digital twin camera behavior."""

    image_source: ImageSource = ImageSource.SYNTHETIC
    image_path: Path | None = None  # Directory or file path
    cycle_images: bool = True  # Loop through directory images
    jpeg_quality: int = 90


# =============================================================================
# Constants
# =============================================================================

_SYNTHETIC_GRID_SPACING = 40
_MARKER_RADIUS = 60
_SUPPORTED_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff"})

DEFAULT_CAMERAS: Mapping[int, TwinCameraInfo] = MappingProxyType(
    {
        0: TwinCameraInfo(
            Name="Snapshot Twin VGA",
            MaxWidth=640,
            MaxHeight=480,
            IsColorCam=True,
            FrameId="camera_optical_frame",
        ),
        1: TwinCameraInfo(
            Name="Snapshot Twin HD",
            MaxWidth=1280,
            MaxHeight=720,
            IsColorCam=True,
            FrameId="camera_hd_optical_frame",
        ),
    }
)


@final
class DigitalTwinCameraDriver:
    """Digital twin camera driver for running without hardware.

    Example:
        config = DigitalTwinConfig(
            image_source=ImageSource.DIRECTORY,
            image_path=Path("/data/frames"),
        )
        driver = DigitalTwinCameraDriver(config=config)
    """

    __slots__ = ("config", "_cameras")

    def __init__(
        self,
        config: DigitalTwinConfig | None = None,
        cameras: Mapping[int, TwinCameraInfo] | None = None,
    ) -> None:
        """Initialize the driver.

        Args:
            config: Image source behaviour. Defaults to synthetic frames.
            cameras: Camera definitions keyed by camera id. Defaults to
                DEFAULT_CAMERAS.
        """
        self.config = config or DigitalTwinConfig()
        self._cameras: dict[int, TwinCameraInfo] = (
            dict(cameras) if cameras else dict(DEFAULT_CAMERAS)
        )
        logger.info(
            "Digital twin camera driver initialized",
            image_source=self.config.image_source.value,
            num_cameras=len(self._cameras),
        )

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCameraDriver("
            f"source={self.config.image_source.value}, "
            f"cameras={list(self._cameras.keys())})"
        )

    def get_connected_cameras(self) -> dict[int, TwinCameraInfo]:
        """Return the simulated cameras keyed by camera id."""
        return self._cameras.copy()

    def open(self, camera_id: int) -> DigitalTwinCameraInstance:
        """Open a simulated camera.

        Args:
            camera_id: Key into the configured cameras.

        Returns:
            Instance ready to capture.

        Raises:
            ValueError: If camera_id is not configured.
        """
        if camera_id not in self._cameras:
            logger.error("Camera not found", camera_id=camera_id)
            raise ValueError(f"Camera {camera_id} not found")
        logger.info("Opening simulated camera", camera_id=camera_id)
        return DigitalTwinCameraInstance(
            camera_id,
            self._cameras[camera_id],
            self.config,
        )


@final
class DigitalTwinCameraInstance:
    """Opened simulated camera.

    Supports the context manager protocol:
        with driver.open(0) as camera:
            data = camera.capture(20_000)
    """

    __slots__ = (
        "_camera_id",
        "_info",
        "_config",
        "_image_files",
        "_image_index",
        "_capture_count",
        "_closed",
    )

    def __init__(
        self,
        camera_id: int,
        info: TwinCameraInfo,
        config: DigitalTwinConfig,
    ) -> None:
        self._camera_id = camera_id
        self._info = info
        self._config = config
        self._image_files: list[Path] = []
        self._image_index = 0
        self._capture_count = 0
        self._closed = False
        self._load_image_files()

    def __enter__(self) -> DigitalTwinCameraInstance:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCameraInstance(camera_id={self._camera_id}, "
            f"source={self._config.image_source.value})"
        )

    @property
    def frame_id(self) -> str:
        """Frame id stamped on frames from this camera."""
        return self._info.get("FrameId", f"camera_{self._camera_id}")

    @property
    def capture_count(self) -> int:
        """Number of frames captured so far."""
        return self._capture_count

    def _load_image_files(self) -> None:
        """Collect image files for DIRECTORY mode.

        Leaves the list empty when not in DIRECTORY mode or the path is
        not a directory; capture then falls back to synthetic frames.
        """
        if self._config.image_source != ImageSource.DIRECTORY:
            return
        if self._config.image_path is None:
            return

        path = Path(self._config.image_path)
        if not path.is_dir():
            logger.warning("Image directory not found", path=str(path))
            return

        self._image_files = sorted(
            f for f in path.iterdir() if f.suffix.lower() in _SUPPORTED_EXTENSIONS
        )
        logger.info(
            "Loaded images for directory camera",
            path=str(path),
            count=len(self._image_files),
        )

    def get_info(self) -> dict[str, Any]:
        """Return the simulated camera properties plus its id."""
        return {"camera_id": self._camera_id, **self._info}

    def capture(self, exposure_us: int) -> bytes:
        """Produce one JPEG frame from the configured image source.

        Blocking (image encoding); the publisher runs it in a worker
        thread.

        Args:
            exposure_us: Exposure shown on synthetic frames; ignored for
                file and directory sources.

        Returns:
            JPEG-encoded bytes at the camera resolution.

        Raises:
            RuntimeError: If the camera is closed or encoding fails.
        """
        if self._closed:
            raise RuntimeError(f"Camera {self._camera_id} is closed")

        source = self._config.image_source
        capture_start = time.monotonic()

        if source == ImageSource.FILE:
            img = self._read_file()
        elif source == ImageSource.DIRECTORY:
            img = self._read_next_from_directory()
        else:
            img = None

        if img is None:
            img = self._render_synthetic(exposure_us)

        data = self._encode_jpeg(img)
        self._capture_count += 1

        logger.debug(
            "Capture complete",
            camera_id=self._camera_id,
            source=source.value,
            capture_elapsed_ms=round((time.monotonic() - capture_start) * 1000, 1),
            jpeg_size_kb=round(len(data) / 1024, 1),
        )
        return data

    def _read_file(self) -> NDArray[Any] | None:
        if self._config.image_path is None:
            return None
        path = Path(self._config.image_path)
        if not path.is_file():
            return None
        img = cv2.imread(str(path))
        if img is None:
            return None
        return self._resize_to_camera(img)

    def _read_next_from_directory(self) -> NDArray[Any] | None:
        """Read the next directory image and advance the index.

        With ``cycle_images`` the index wraps; otherwise it sticks on the
        last image.
        """
        if not self._image_files:
            return None

        image_path = self._image_files[self._image_index]

        self._image_index += 1
        if self._config.cycle_images:
            self._image_index %= len(self._image_files)
        else:
            self._image_index = min(self._image_index, len(self._image_files) - 1)

        img = cv2.imread(str(image_path))
        if img is None:
            return None
        return self._resize_to_camera(img)

    def _resize_to_camera(self, img: NDArray[Any]) -> NDArray[Any]:
        target_width = self._info["MaxWidth"]
        target_height = self._info["MaxHeight"]
        h, w = img.shape[:2]
        if w != target_width or h != target_height:
            img = cv2.resize(img, (target_width, target_height))
        return img

    def _render_synthetic(self, exposure_us: int) -> NDArray[Any]:
        """Draw a test pattern whose marker moves with the frame counter.

        Consecutive frames differ, which makes it visible in a returned
        still which point of the stream it was taken from.
        """
        width = self._info["MaxWidth"]
        height = self._info["MaxHeight"]
        frame_number = self._capture_count

        img: NDArray[Any] = np.zeros((height, width, 3), dtype=np.uint8)
        img[::_SYNTHETIC_GRID_SPACING, :] = [50, 50, 50]
        img[:, ::_SYNTHETIC_GRID_SPACING] = [50, 50, 50]

        # Marker sweeps left to right, one grid cell per frame
        x = (frame_number * _SYNTHETIC_GRID_SPACING) % width
        cv2.circle(img, (x, height // 2), _MARKER_RADIUS, (0, 200, 0), 2)
        cv2.line(img, (x, 0), (x, height), (0, 255, 0), 1)

        cv2.putText(
            img,
            f"DIGITAL TWIN - Camera {self._camera_id}",
            (20, 40),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.8,
            (255, 255, 255),
            2,
        )
        cv2.putText(
            img,
            f"Frame {frame_number}  Exposure {exposure_us}us",
            (20, 75),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            (200, 200, 200),
            1,
        )
        return img

    def _encode_jpeg(self, img: NDArray[Any]) -> bytes:
        ok, jpeg = cv2.imencode(
            ".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, self._config.jpeg_quality]
        )
        if not ok:
            raise RuntimeError(f"JPEG encoding failed on camera {self._camera_id}")
        return jpeg.tobytes()

    def close(self) -> None:
        """Close the simulated camera. Idempotent."""
        if self._closed:
            return
        self._closed = True
        logger.debug("Simulated camera closed", camera_id=self._camera_id)


def create_file_camera(image_path: Path | str) -> DigitalTwinCameraDriver:
    """Create a twin that returns the same image on every capture.

    Example:
        >>> driver = create_file_camera("/data/test_scene.jpg")
    """
    config = DigitalTwinConfig(
        image_source=ImageSource.FILE,
        image_path=Path(image_path),
    )
    return DigitalTwinCameraDriver(config=config)


def create_directory_camera(
    directory: Path | str,
    cycle: bool = True,
) -> DigitalTwinCameraDriver:
    """Create a twin that steps through the images in ``directory``.

    Args:
        directory: Folder of JPEG/PNG/BMP/TIFF images, read in name order.
        cycle: Wrap to the first image after the last one.
    """
    config = DigitalTwinConfig(
        image_source=ImageSource.DIRECTORY,
        image_path=Path(directory),
        cycle_images=cycle,
    )
    return DigitalTwinCameraDriver(config=config)
