"""CLI entry point for image-snapshotter.

Provides the ``image-snapshotter`` console script with subcommands:

- ``install``: Generate ``.vscode/mcp.json`` for a project
- ``server``: Run the MCP server (default if no subcommand)

Usage::

    # Install MCP config in current project
    image-snapshotter install

    # Run MCP server (default, same as python -m image_snapshotter.server)
    image-snapshotter

    # Run MCP server with explicit subcommand
    image-snapshotter server --fps 5 --dashboard-host 127.0.0.1 --dashboard-port 8080
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
from functools import lru_cache
from pathlib import Path

# Constants
SERVER_NAME = "image-snapshotter"
MODULE_NAME = "image_snapshotter.server"
VSCODE_DIR = ".vscode"
CONFIG_FILE = "mcp.json"

DEFAULT_SERVER_ARGS = [
    "--dashboard-host",
    "127.0.0.1",
    "--dashboard-port",
    "8080",
    "--producer",
    "digital_twin",
]


@lru_cache(maxsize=1)
def _get_logger() -> logging.Logger:
    """Get module logger with a message-only format for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    return logging.getLogger(__name__)


def _log(message: str, *, emoji: str = "") -> None:
    """Log message with optional emoji prefix for CLI feedback.

    Example:
        >>> _log("Config created", emoji="✅")
    """
    prefix = f"{emoji} " if emoji else ""
    _get_logger().info(f"{prefix}{message}")


def _strip_jsonc_comments(text: str) -> str:
    """Strip single-line // comments from JSONC text.

    Removes ``//`` comments (standalone and trailing) and the trailing
    commas they leave behind. ``/* */`` block comments are not handled.

    Example:
        >>> _strip_jsonc_comments('{"key": "val"} // comment')
        '{"key": "val"} '
    """
    # Remove // comments (not inside strings; good enough for mcp.json)
    text = re.sub(r"(?<!:)//.*$", "", text, flags=re.MULTILINE)
    # Remove trailing commas before ] or } (invalid in JSON)
    text = re.sub(r",(\s*[}\]])", r"\1", text)
    return text


def _detect_python_path() -> str:
    """Return the interpreter running this script (the install's venv)."""
    return sys.executable


def _generate_mcp_template(python_path: str) -> str:
    """Generate the full JSONC mcp.json with every server option shown.

    Options left at their defaults are commented out so they stay
    discoverable.

    Args:
        python_path: Absolute path to the Python executable.

    Returns:
        JSONC string ready to write to mcp.json.
    """
    # {{PYTHON_PATH}} placeholder avoids f-string clashes with JSON braces
    template = """\
{
  "servers": {
    "image-snapshotter": {
      "command": "{{PYTHON_PATH}}",
      "args": [
        "-m",
        "image_snapshotter.server",
        // Dashboard API settings
        "--dashboard-host", "127.0.0.1",
        "--dashboard-port", "8080",
        // Frame producer: "digital_twin" for the simulated camera,
        // "none" to wait for an external publisher
        "--producer", "digital_twin",
        // Topic stills are taken from
        // "--topic", "image_raw/compressed",
        // Seconds to wait when a request asks for 0
        // "--timeout", "2.0",
        // Digital twin settings
        // "--fps", "10",
        // "--image-source", "synthetic",
        //   ^^ synthetic/file/directory
        // "--image-path", "./frames",
        // "--camera-id", "0",
        // "--startup-delay", "0",
        // Logging
        // "--dashboard-log-level", "warning",
        // "--log-level", "INFO",
        // "--json-logs"
      ]
    }
  }
}
"""
    return template.replace("{{PYTHON_PATH}}", python_path)


def _server_entry(python_path: str) -> dict[str, object]:
    """The image-snapshotter entry merged into an existing mcp.json."""
    return {"command": python_path, "args": ["-m", MODULE_NAME, *DEFAULT_SERVER_ARGS]}


def _merge_server(config_path: Path, existing_text: str, python_path: str) -> None:
    """Add the server entry to an existing config, keeping other servers.

    Unparseable configs are replaced by the template; the backup written
    by the caller keeps the original.
    """
    try:
        config: dict[str, object] = json.loads(_strip_jsonc_comments(existing_text))
    except json.JSONDecodeError:
        _log("Could not parse existing config, writing fresh", emoji="⚠️")
        config_path.write_text(_generate_mcp_template(python_path))
        _log(f"Created {config_path}", emoji="✅")
        return

    servers: dict[str, object] = config.setdefault("servers", {})  # type: ignore[assignment]
    if SERVER_NAME in servers:
        _log(f"{SERVER_NAME} already configured in {CONFIG_FILE}", emoji="✅")
        return

    servers[SERVER_NAME] = _server_entry(python_path)
    config_path.write_text(json.dumps(config, indent=2) + "\n")
    _log(f"Added {SERVER_NAME} to {CONFIG_FILE}", emoji="➕")
    _log("Note: JSONC comments from original were not preserved", emoji="⚠️")


def run_install(cwd: str | None = None) -> Path:
    """Write or update ``.vscode/mcp.json`` under the project root.

    A missing config gets the full JSONC template. An existing one is
    backed up to ``mcp.json.bak`` and the server entry merged in, unless
    it is already present.

    Args:
        cwd: Project root. Defaults to the current directory.

    Returns:
        Path of the config file.
    """
    vscode_dir = (Path(cwd) if cwd else Path.cwd()) / VSCODE_DIR
    config_path = vscode_dir / CONFIG_FILE
    python_path = _detect_python_path()

    if config_path.exists():
        existing_text = config_path.read_text()
        backup_path = config_path.with_suffix(".json.bak")
        backup_path.write_text(existing_text)
        _log(f"Backed up to {backup_path.name}", emoji="💾")
        _merge_server(config_path, existing_text, python_path)
    else:
        vscode_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(_generate_mcp_template(python_path))
        _log(f"Created {config_path}", emoji="✅")

    _log(f"Config: {config_path}")
    _log(f"Python: {python_path}")
    return config_path


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point for image-snapshotter.

    Dispatches to subcommands:
    - ``install``: Generate .vscode/mcp.json configuration
    - ``server`` or no subcommand: Run MCP server (delegates to
      ``server.main()``, which has its own argument parser)

    Returns:
        Exit code 0 for success.

    Raises:
        SystemExit: On --help or argument parsing errors.
    """
    argv = list(sys.argv[1:] if argv is None else argv)

    parser = argparse.ArgumentParser(
        prog=SERVER_NAME,
        description="Image Snapshotter - single stills from a live image stream",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    install_parser = subparsers.add_parser(
        "install",
        help="Create .vscode/mcp.json configuration",
    )
    install_parser.add_argument(
        "--dir",
        dest="project_dir",
        default=None,
        help="Project root to install into (default: current directory)",
    )

    # Server subcommand (pass-through to server.main())
    subparsers.add_parser(
        "server",
        help="Run MCP server (default if no subcommand)",
        add_help=False,
    )

    # Bare server flags (no subcommand) go straight to the server parser
    if not argv or argv[0] not in ("install", "server", "-h", "--help"):
        server_argv = argv
    else:
        # Only parse known args so server flags pass through
        args, server_argv = parser.parse_known_args(argv)
        if args.command == "install":
            run_install(args.project_dir)
            return 0

    from image_snapshotter.server import main as server_main

    server_main(server_argv)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
