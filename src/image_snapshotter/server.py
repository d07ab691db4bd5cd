"""MCP Server entry point for the image snapshotter."""

import argparse
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import uvicorn
from mcp.server import Server
from mcp.server.stdio import stdio_server

from image_snapshotter.devices.runtime import init_snapshotter, shutdown_snapshotter
from image_snapshotter.drivers.cameras import ImageSource
from image_snapshotter.drivers.config import (
    ProducerMode,
    SnapshotterConfig,
    configure,
)
from image_snapshotter.observability import configure_logging, get_logger
from image_snapshotter.tools import stills
from image_snapshotter.web.app import create_app

logger = get_logger(__name__)

SERVER_NAME = "image-snapshotter"


@dataclass
class DashboardState:
    """Container for dashboard server state.

    Encapsulates the background thread and uvicorn server instance
    for the dashboard API, avoiding scattered global variables.
    """

    thread: threading.Thread | None = field(default=None)
    server: uvicorn.Server | None = field(default=None)


_dashboard = DashboardState()


def create_server() -> Server:
    """Create the MCP server with the still tools registered.

    The tools resolve the process-wide Snapshotter per call, so the
    runtime can be initialised before or after this.

    Example:
        >>> server = create_server()
        >>> # Server now exposes tools: get_still, get_snapshot_stats
    """
    server = Server(SERVER_NAME)
    stills.register(server)
    return server


def _run_dashboard(host: str, port: int, log_level: str = "warning") -> None:
    """Run the dashboard API in the current (background) thread.

    Uvicorn gets its own event loop here; still requests hop back onto
    the MCP loop through the still service.
    """
    try:
        app = create_app()
        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level=log_level,
        )
        _dashboard.server = uvicorn.Server(config)
        _dashboard.server.run()
    except OSError as e:
        logger.error("Dashboard failed to start", error=str(e), host=host, port=port)
    except Exception:
        logger.exception("Unexpected error in dashboard server")


def start_dashboard(
    host: str = "127.0.0.1", port: int = 8080, log_level: str = "warning"
) -> None:
    """Start the dashboard API in a daemon thread. No-op if already running.

    Args:
        host: Host address to bind to (127.0.0.1 for local only).
        port: Port to listen on.
        log_level: Uvicorn log level.
    """
    if _dashboard.thread is not None and _dashboard.thread.is_alive():
        logger.warning("Dashboard already running")
        return

    _dashboard.thread = threading.Thread(
        target=_run_dashboard,
        args=(host, port, log_level),
        daemon=True,
        name=f"snapshotter-dashboard-{host}:{port}",
    )
    _dashboard.thread.start()
    logger.info("Dashboard started", url=f"http://{host}:{port}")


def stop_dashboard() -> None:
    """Ask the dashboard server to exit. Safe to call when not running."""
    if _dashboard.server is not None:
        logger.info("Stopping dashboard server")
        _dashboard.server.should_exit = True
        _dashboard.server = None


async def run_server(
    config: SnapshotterConfig | None = None,
    dashboard_host: str | None = None,
    dashboard_port: int | None = None,
    dashboard_log_level: str = "warning",
) -> None:
    """Run the MCP server over stdio.

    Starts the snapshotter runtime in the background (it becomes ready once
    a producer advertises on the topic), optionally starts the dashboard,
    then serves MCP until stdin closes. The runtime is always shut down on
    exit, which fails any in-flight request.

    Args:
        config: Runtime settings; None uses the global configuration.
        dashboard_host: Host for the dashboard, or None to disable it.
        dashboard_port: Port for the dashboard, or None to disable it.
        dashboard_log_level: Uvicorn log level for the dashboard.

    Example:
        >>> asyncio.run(run_server(SnapshotterConfig(), "127.0.0.1", 8080))
    """
    snapshotter = init_snapshotter(config)
    server = create_server()

    shutdown = asyncio.Event()
    start_task = asyncio.create_task(snapshotter.start(shutdown))

    if dashboard_host and dashboard_port:
        start_dashboard(dashboard_host, dashboard_port, dashboard_log_level)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        shutdown.set()
        await start_task
        stop_dashboard()
        await shutdown_snapshotter()
        logger.info("Snapshotter shut down")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments for the snapshotter server.

    Args:
        argv: Arguments to parse; None reads sys.argv.

    Returns:
        argparse.Namespace with topic, timeout, producer, fps, frame_id,
        image_source, image_path, camera_id, exposure_us, startup_delay,
        producer_poll_interval, dashboard_host, dashboard_port,
        dashboard_log_level, log_level and json_logs.

    Raises:
        SystemExit: On invalid arguments or --help.
    """
    parser = argparse.ArgumentParser(
        description="Image Snapshotter MCP Server - Single stills from a live stream"
    )
    parser.add_argument(
        "--topic",
        type=str,
        default=SnapshotterConfig.topic,
        help=f"Frame topic to take stills from (default: {SnapshotterConfig.topic})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=SnapshotterConfig.default_timeout_s,
        help=(
            "Seconds to wait for a frame when a request asks for 0 "
            f"(default: {SnapshotterConfig.default_timeout_s})"
        ),
    )
    parser.add_argument(
        "--producer",
        type=str,
        choices=[mode.value for mode in ProducerMode],
        default=ProducerMode.DIGITAL_TWIN.value,
        help=(
            "Frame producer: 'digital_twin' for the simulated camera, "
            "'none' to wait for an external publisher"
        ),
    )
    parser.add_argument(
        "--fps",
        type=float,
        default=SnapshotterConfig.fps,
        help=f"Digital twin publish rate (default: {SnapshotterConfig.fps})",
    )
    parser.add_argument(
        "--frame-id",
        type=str,
        default=None,
        help="Frame id stamped on published frames (default: camera's own)",
    )
    parser.add_argument(
        "--image-source",
        type=str,
        choices=[source.value for source in ImageSource],
        default=ImageSource.SYNTHETIC.value,
        help="Digital twin image source (default: synthetic)",
    )
    parser.add_argument(
        "--image-path",
        type=str,
        default=None,
        help="Image file or directory for the file/directory image sources",
    )
    parser.add_argument(
        "--camera-id",
        type=int,
        default=SnapshotterConfig.camera_id,
        help="Digital twin camera to open (0: 640x480, 1: 1280x720)",
    )
    parser.add_argument(
        "--exposure-us",
        type=int,
        default=SnapshotterConfig.exposure_us,
        help=f"Exposure per capture in microseconds (default: {SnapshotterConfig.exposure_us})",
    )
    parser.add_argument(
        "--startup-delay",
        type=float,
        default=SnapshotterConfig.startup_delay_s,
        help="Seconds before the digital twin starts publishing (default: 0)",
    )
    parser.add_argument(
        "--producer-poll-interval",
        type=float,
        default=SnapshotterConfig.producer_poll_interval_s,
        help="Seconds between 'waiting for publisher' warnings (default: 1.0)",
    )
    parser.add_argument(
        "--dashboard-host",
        type=str,
        default=None,
        help="Host to run the dashboard API on (e.g., 127.0.0.1)",
    )
    parser.add_argument(
        "--dashboard-port",
        type=int,
        default=None,
        help="Port to run the dashboard API on (e.g., 8080)",
    )
    parser.add_argument(
        "--dashboard-log-level",
        type=str,
        choices=["critical", "error", "warning", "info", "debug"],
        default="warning",
        help="Log level for dashboard server (default: warning)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        default="INFO",
        help="Log level for the snapshotter (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines on stderr",
    )
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> SnapshotterConfig:
    """Build a SnapshotterConfig from parsed arguments."""
    return SnapshotterConfig(
        topic=args.topic,
        default_timeout_s=args.timeout,
        producer=ProducerMode(args.producer),
        fps=args.fps,
        frame_id=args.frame_id,
        exposure_us=args.exposure_us,
        startup_delay_s=args.startup_delay,
        producer_poll_interval_s=args.producer_poll_interval,
        image_source=ImageSource(args.image_source),
        image_path=Path(args.image_path) if args.image_path else None,
        camera_id=args.camera_id,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the image-snapshotter server.

    Parses arguments, configures structured logging on stderr (stdout
    carries the MCP protocol) and runs the server until stdin closes.

    Raises:
        ValueError: If the arguments describe an invalid configuration.

    Example:
        >>> # MCP client config:
        >>> # "command": "python", "args": ["-m", "image_snapshotter.server"]
        >>> main(["--fps", "5", "--dashboard-host", "127.0.0.1",
        ...       "--dashboard-port", "8080"])
    """
    args = parse_args(argv)

    configure_logging(
        level=getattr(logging, args.log_level),
        json_format=args.json_logs,
        force=True,
    )

    config = config_from_args(args)
    configure(config)

    logger.info("Starting MCP server", topic=config.topic)
    asyncio.run(
        run_server(
            config,
            args.dashboard_host,
            args.dashboard_port,
            args.dashboard_log_level,
        )
    )


if __name__ == "__main__":  # pragma: no cover
    main()
