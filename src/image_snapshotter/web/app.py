"""FastAPI web application for the snapshotter dashboard API.

Routes:
    GET /api/still       One still as JSON (base64 image data)
    GET /api/still.jpg   One still as raw image bytes
    GET /api/status      Runtime state (ready, broker state, producer, topic)
    GET /api/stats       Request outcome and latency statistics

Failures keep the broker's reason string and map it onto an HTTP status so
scripts can branch on the status code alone.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse, Response

from image_snapshotter import __version__
from image_snapshotter.devices.messages import (
    REASON_BUSY,
    REASON_INVALID_TIMEOUT,
    REASON_STREAM_UNAVAILABLE,
    REASON_TIMEOUT,
    StillResponse,
)
from image_snapshotter.devices.runtime import (
    Snapshotter,
    get_snapshotter,
    init_snapshotter,
    shutdown_snapshotter,
)
from image_snapshotter.devices.service import ServiceError
from image_snapshotter.observability import configure_logging, get_logger

logger = get_logger(__name__)

# HTTP status per failure reason
REASON_STATUS_CODES: dict[str, int] = {
    REASON_TIMEOUT: 504,
    REASON_BUSY: 409,
    REASON_INVALID_TIMEOUT: 422,
    REASON_STREAM_UNAVAILABLE: 503,
}


def status_code_for(response: StillResponse) -> int:
    """HTTP status for a still response; 500 for an unknown failure reason."""
    if response.success:
        return 200
    return REASON_STATUS_CODES.get(response.reason, 500)


@asynccontextmanager
async def standalone_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Own the process-wide Snapshotter when the app runs on its own.

    Startup does not wait for the producer; requests made before it
    advertises are answered with the stream-unavailable reason.
    """
    logger.info("Starting snapshotter services...")
    snapshotter = init_snapshotter()
    shutdown = asyncio.Event()
    start_task = asyncio.create_task(snapshotter.start(shutdown))
    yield
    logger.info("Shutting down snapshotter services...")
    shutdown.set()
    await start_task
    await shutdown_snapshotter()


def create_app(
    snapshotter: Snapshotter | None = None,
    *,
    manage_runtime: bool = False,
) -> FastAPI:
    """Create the FastAPI snapshotter application.

    Args:
        snapshotter: Runtime to serve. None resolves the process-wide one
            on every request, so the app can be created before it exists.
        manage_runtime: Create, start and stop the process-wide runtime in
            the app lifespan (standalone mode). Leave False when an MCP
            server owns the runtime.

    Returns:
        Configured FastAPI application instance ready for uvicorn.

    Example:
        >>> app = create_app(manage_runtime=True)
        >>> uvicorn.run(app, host="127.0.0.1", port=8080)
    """
    app = FastAPI(
        title="Image Snapshotter",
        description="Take single stills from a live image stream",
        version=__version__,
        lifespan=standalone_lifespan if manage_runtime else None,
    )

    resolve: Callable[[], Snapshotter] = (
        (lambda: snapshotter) if snapshotter is not None else get_snapshotter
    )

    async def take_still(timeout: float) -> StillResponse | JSONResponse:
        """Run one request, or build the error response if that is impossible."""
        try:
            runtime = resolve()
            return await runtime.request_still(timeout)
        except (RuntimeError, ServiceError) as e:
            logger.error("Still request could not be made", error=str(e))
            failure = StillResponse.failure(REASON_STREAM_UNAVAILABLE)
            return JSONResponse(failure.to_dict(), status_code=503)
        except Exception as e:
            logger.exception("Unexpected error taking still")
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)

    @app.get("/api/still")
    async def api_still(
        timeout: float = Query(0.0, description="Seconds to wait; 0 uses the default"),
    ) -> JSONResponse:
        """Take one still and return it as JSON with base64 image data.

        Returns:
            200 with {"success": true, "still": {...}} on success; 504, 409,
            422 or 503 with {"success": false, "reason": str} on failure.
        """
        result = await take_still(timeout)
        if isinstance(result, JSONResponse):
            return result
        return JSONResponse(result.to_dict(), status_code=status_code_for(result))

    @app.get("/api/still.jpg")
    async def api_still_image(
        timeout: float = Query(0.0, description="Seconds to wait; 0 uses the default"),
    ) -> Response:
        """Take one still and return the encoded image bytes.

        Frame metadata travels in X-Frame-Id, X-Frame-Sequence and
        X-Frame-Stamp headers. Failures return the same JSON and status
        codes as /api/still.
        """
        result = await take_still(timeout)
        if isinstance(result, JSONResponse):
            return result
        if not result.success or result.still is None:
            return JSONResponse(result.to_dict(), status_code=status_code_for(result))

        frame = result.still
        return Response(
            content=frame.data,
            media_type=frame.media_type,
            headers={
                "X-Frame-Id": frame.header.frame_id,
                "X-Frame-Sequence": str(frame.header.sequence),
                "X-Frame-Stamp": frame.header.stamp.isoformat(),
                "Cache-Control": "no-store",
            },
        )

    @app.get("/api/status")
    async def api_status() -> JSONResponse:
        """Runtime state for dashboards and health checks."""
        try:
            status: dict[str, Any] = resolve().status()
        except RuntimeError as e:
            return JSONResponse({"ready": False, "error": str(e)}, status_code=503)
        return JSONResponse(status)

    @app.get("/api/stats")
    async def api_stats() -> JSONResponse:
        """Request outcome counts and latency statistics."""
        try:
            stats = resolve().stats.to_dict()
        except RuntimeError as e:
            return JSONResponse({"error": str(e)}, status_code=503)
        return JSONResponse(stats)

    return app


def main() -> None:
    """Run the dashboard API as a standalone service on port 8080.

    Owns its own Snapshotter with the default digital twin producer.

    Example:
        >>> # python -m image_snapshotter.web.app
        >>> main()
    """
    configure_logging(level=logging.INFO, force=True)
    app = create_app(manage_runtime=True)
    uvicorn.run(app, host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
