"""MCP tools for taking stills from the image stream.

Both tools go through the process-wide Snapshotter, so MCP clients and the
dashboard share one broker and see each other's requests as busy.
"""

import json
import math
from typing import Any

from mcp.server import Server
from mcp.types import TextContent, Tool

from image_snapshotter.devices.messages import REASON_INVALID_TIMEOUT, StillResponse
from image_snapshotter.devices.runtime import Snapshotter, get_snapshotter
from image_snapshotter.devices.service import ServiceError
from image_snapshotter.observability import get_logger

logger = get_logger(__name__)


# Tool definitions
TOOLS = [
    Tool(
        name="get_still",
        description=(
            "Take one still image from the live image stream. Returns the "
            "frame header, format and base64 image data, or a failure reason "
            "(timeout, busy, stream unavailable)."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "timeout": {
                    "type": "number",
                    "description": (
                        "Seconds to wait for a frame. 0 or omitted uses the "
                        "server default (2 seconds)."
                    ),
                    "default": 0,
                    "minimum": 0,
                },
            },
            "required": [],
        },
    ),
    Tool(
        name="get_snapshot_stats",
        description="Get request outcome counts and latency statistics",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
]


def register(server: Server) -> None:
    """Register the still tools with the MCP server.

    Tools registered:
    - get_still: Take one still from the stream
    - get_snapshot_stats: Outcome and latency statistics

    Args:
        server: MCP Server instance, not yet running.
    """

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return available still tools (MCP tool discovery)."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Route tool calls to the still implementations.

        Args:
            name: Tool name from TOOLS.
            arguments: Dict matching the tool's inputSchema.

        Returns:
            List containing a single TextContent with a JSON result, or an
            error message for unknown tools.
        """
        if name == "get_still":
            return await _get_still((arguments or {}).get("timeout", 0))
        elif name == "get_snapshot_stats":
            return await _get_snapshot_stats()
        else:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]


# Tool implementations using the snapshotter runtime


def _parse_timeout(value: Any) -> float | None:
    """Coerce a tool argument to seconds; None when it is not a usable number."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(timeout) or timeout < 0:
        return None
    return timeout


def _response_content(response: StillResponse) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(response.to_dict()))]


async def _get_still(
    timeout: Any = 0, snapshotter: Snapshotter | None = None
) -> list[TextContent]:
    """Take one still and return it as JSON.

    Args:
        timeout: Seconds to wait; 0 selects the default. Values that are not
            finite, non-negative numbers fail with the invalid-timeout reason.
        snapshotter: Runtime to use; defaults to the process-wide one.

    Returns:
        List with a single TextContent containing the response JSON:
        {"success": true, "still": {"header": {...}, "format": "jpeg",
         "size_bytes": int, "data": base64}} or
        {"success": false, "reason": str}.
        Returns error text if the runtime is missing or broken.

    Example:
        >>> result = await _get_still(1.5)
        >>> data = json.loads(result[0].text)
        >>> image = base64.b64decode(data["still"]["data"])
    """
    seconds = _parse_timeout(timeout)
    if seconds is None:
        logger.warning("Rejecting get_still with invalid timeout", timeout=repr(timeout))
        return _response_content(StillResponse.failure(REASON_INVALID_TIMEOUT))

    try:
        runtime = snapshotter or get_snapshotter()
        response = await runtime.request_still(seconds)
        return _response_content(response)
    except (RuntimeError, ServiceError) as e:
        logger.error("Still request failed", error=str(e))
        return [TextContent(type="text", text=f"Error taking still: {e}")]
    except Exception as e:
        logger.exception("Unexpected error taking still")
        return [TextContent(type="text", text=f"Error taking still: {e}")]


async def _get_snapshot_stats(
    snapshotter: Snapshotter | None = None,
) -> list[TextContent]:
    """Return outcome counts, latency statistics and broker state as JSON."""
    try:
        runtime = snapshotter or get_snapshotter()
        result = {
            "stats": runtime.stats.to_dict(),
            "state": runtime.broker.state.value,
            "ready": runtime.ready,
        }
        return [TextContent(type="text", text=json.dumps(result, indent=2))]
    except RuntimeError as e:
        logger.error("Error getting snapshot stats", error=str(e))
        return [TextContent(type="text", text=f"Error getting snapshot stats: {e}")]
