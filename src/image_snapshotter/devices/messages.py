"""Message types exchanged over the frame topic and the still service.

CompressedFrame is what publishers put on the topic. StillRequest and
StillResponse form the single-call request/response contract of the
still service: one request in, exactly one response out.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# --- Constants ---

DEFAULT_TIMEOUT_S: float = 2.0
"""Timeout applied when a request asks for 0 seconds."""

REASON_BUSY = "previous request still being processed"
REASON_TIMEOUT = "timed out waiting for an image"
REASON_INVALID_TIMEOUT = "timeout must be a finite, non-negative number of seconds"
REASON_STREAM_UNAVAILABLE = "image stream is not available"

#: HTTP-style media types for the frame formats the twin camera produces.
MEDIA_TYPES: dict[str, str] = {
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
}

#: Type alias for request handles issued by the still service.
RequestId = int


@dataclass(slots=True, frozen=True)
class FrameHeader:
    """Metadata stamped on each published frame.

    Attributes:
        stamp: Capture time (UTC).
        frame_id: Name of the source (camera frame / optical frame name).
        sequence: Publisher-local frame counter, starting at 0.
    """

    stamp: datetime
    frame_id: str = ""
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict."""
        return {
            "stamp": self.stamp.isoformat(),
            "frame_id": self.frame_id,
            "sequence": self.sequence,
        }


@dataclass(slots=True)
class CompressedFrame:
    """One compressed image from the stream.

    Attributes:
        header: Capture metadata.
        format: Encoding tag such as ``"jpeg"``.
        data: Encoded image bytes.
    """

    header: FrameHeader
    format: str
    data: bytes

    @property
    def media_type(self) -> str:
        """Media type for ``format``, ``application/octet-stream`` if unknown."""
        return MEDIA_TYPES.get(self.format.lower(), "application/octet-stream")

    def to_dict(self, include_data: bool = True) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict.

        Args:
            include_data: Embed ``data`` as base64 when True, otherwise
                only report its size.
        """
        result: dict[str, Any] = {
            "header": self.header.to_dict(),
            "format": self.format,
            "size_bytes": len(self.data),
        }
        if include_data:
            result["data"] = base64.b64encode(self.data).decode("ascii")
        return result


@dataclass(slots=True, frozen=True)
class StillRequest:
    """Request for one still image.

    Attributes:
        timeout_s: Seconds to wait for a frame. 0 selects the default.
    """

    timeout_s: float = 0.0


@dataclass(slots=True)
class StillResponse:
    """Response to a still request.

    ``reason`` is non-empty exactly when ``success`` is False and
    ``still`` is present exactly when ``success`` is True. Build
    instances with ``ok`` and ``failure`` to keep that invariant.
    """

    success: bool
    reason: str = ""
    still: CompressedFrame | None = None
    responded_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def ok(cls, frame: CompressedFrame) -> StillResponse:
        """Successful response carrying ``frame``."""
        return cls(success=True, still=frame)

    @classmethod
    def failure(cls, reason: str) -> StillResponse:
        """Failed response with ``reason``."""
        if not reason:
            raise ValueError("A failed response needs a reason")
        return cls(success=False, reason=reason)

    def to_dict(self, include_data: bool = True) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict.

        Only the fields that are meaningful for the outcome are present:
        ``reason`` for failures, ``still`` for successes.
        """
        result: dict[str, Any] = {"success": self.success}
        if self.success and self.still is not None:
            result["still"] = self.still.to_dict(include_data=include_data)
        else:
            result["reason"] = self.reason
        return result
