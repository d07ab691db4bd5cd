"""Structured logging for image-snapshotter.

Builds on Python's standard logging module with:
- Keyword arguments on log calls become structured key-value data
- Human-readable ``message | key=value`` output for consoles
- NDJSON output for log aggregation
- Context propagation (request ids, topic names) via contextvars

Untrusted values (frame ids, topic names supplied by publishers) should be
passed as keyword arguments rather than interpolated into the message, so a
CRLF in a frame id cannot forge a log line:

    # SAFE
    logger.warning("Stale frame ignored", frame_id=frame.header.frame_id)

    # UNSAFE
    logger.warning(f"Stale frame {frame.header.frame_id} ignored")

Example:
    logger = get_logger(__name__)
    logger.info("Service ready")

    with LogContext(request_id=7):
        logger.info("Request admitted", timeout_s=2.0)
        # ... | request_id=7 timeout_s=2.0

    configure_logging(json_format=True, force=True)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, cast

#: Name of the package root logger. All module loggers hang below it.
ROOT_LOGGER_NAME = "image_snapshotter"

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept structured keyword arguments.

    Usage:
        logger = get_logger("image_snapshotter.devices.broker")
        logger.info("Request resolved", request_id=3, outcome="success")
    """

    def debug(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at DEBUG with optional structured data kwargs."""
        if self.isEnabledFor(logging.DEBUG):
            self._log_structured(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at INFO with optional structured data kwargs."""
        if self.isEnabledFor(logging.INFO):
            self._log_structured(logging.INFO, msg, args, **kwargs)

    def warning(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at WARNING with optional structured data kwargs."""
        if self.isEnabledFor(logging.WARNING):
            self._log_structured(logging.WARNING, msg, args, **kwargs)

    def error(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at ERROR with optional structured data kwargs."""
        if self.isEnabledFor(logging.ERROR):
            self._log_structured(logging.ERROR, msg, args, **kwargs)

    def critical(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at CRITICAL with optional structured data kwargs."""
        if self.isEnabledFor(logging.CRITICAL):
            self._log_structured(logging.CRITICAL, msg, args, **kwargs)

    def exception(
        self, msg: object, *args: Any, exc_info: Any = True, **kwargs: Any
    ) -> None:
        """Log at ERROR with the active exception's traceback attached."""
        self.error(msg, *args, exc_info=exc_info, **kwargs)

    def _log_structured(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any],
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """Emit a record carrying merged context and keyword data.

        The active ``LogContext`` values are merged first and explicit
        keyword arguments win on key collisions, so a handler can
        override the ambient ``request_id`` when it logs about a
        different request (a rejected overlap, for example).

        Args:
            level: Numeric logging level.
            msg: Log message, may contain % placeholders.
            args: Arguments for % formatting.
            exc_info: Exception info as accepted by ``logging``.
            extra: Additional LogRecord attributes. ``structured_data``
                is always overwritten.
            stack_info: Include stack trace when True.
            stacklevel: Frames to skip when locating the caller. Two extra
                frames (level method and this helper) are added here.
            **kwargs: Structured key-value data for the record.
        """
        structured_data = {**_log_context.get(), **kwargs}
        extra = dict(extra) if extra else {}
        extra["structured_data"] = structured_data
        self._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 2,
        )


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter.

    Format: ``timestamp - name - level - message | key=value key=value``
    """

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        """Create the formatter.

        Args:
            fmt: Base format string. Defaults to
                ``'%(asctime)s - %(name)s - %(levelname)s - %(message)s'``.
            datefmt: Date format for ``%(asctime)s``.
            include_structured: Append ``| key=value`` pairs when True.
        """
        if fmt is None:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        """Format the record, appending structured pairs if present.

        Args:
            record: Record to format. A missing ``structured_data``
                attribute (records from foreign loggers) is tolerated.

        Returns:
            The base formatted line, optionally followed by
            ``' | key=value ...'``.
        """
        base = super().format(record)
        if not self.include_structured:
            return base

        structured = getattr(record, "structured_data", {})
        if not structured:
            return base

        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line, structured data merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialise a record as a single NDJSON line.

        Output keys: ``timestamp`` (UTC ISO 8601), ``level``, ``logger``,
        ``message``, every structured key, and ``exception`` when the
        record carries exc_info. Values that are not JSON-serialisable
        fall back to ``str()``.

        Args:
            record: Record to serialise.

        Returns:
            JSON text without a trailing newline.
        """
        log_dict: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_dict.update(getattr(record, "structured_data", {}))

        if record.exc_info:
            log_dict["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_dict, default=str)


def _format_value(value: Any) -> str:
    """Render one structured value for the key=value formatter.

    Rules: None -> ``null``; strings quoted only when they contain
    spaces; dicts and lists as JSON; anything else via ``str()``.
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        if " " in value:
            return f'"{value}"'
        return value
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Context Management
# =============================================================================


@dataclass
class LogContext:
    """Context manager adding key-value pairs to every record in scope.

    Nested contexts merge, inner values winning. Backed by contextvars, so
    each asyncio task sees its own context:

        with LogContext(request_id=4):
            logger.info("Admitted")          # request_id=4
            with LogContext(topic="image_raw/compressed"):
                logger.info("Subscribed")    # request_id=4 topic=...
    """

    _kwargs: dict[str, Any] = field(default_factory=dict, init=False, repr=True)
    _token: contextvars.Token[dict[str, Any]] | None = field(
        default=None, init=False, repr=False
    )

    def __init__(self, **kwargs: Any) -> None:
        """Store the key-value pairs to activate on ``__enter__``."""
        self._kwargs = kwargs
        self._token = None

    def __enter__(self) -> LogContext:
        """Merge this context's values into the active logging context."""
        current = _log_context.get()
        self._token = _log_context.set({**current, **self._kwargs})
        return self

    def __exit__(self, *args: Any) -> None:
        """Restore the logging context that was active before entry."""
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Configure the package root logger.

    Idempotent: only the first call installs a handler unless ``force``
    is True, in which case existing handlers are removed first. Safe to
    call from several threads.

    Args:
        level: Minimum level, int or name (``"DEBUG"``).
        json_format: Use ``JSONFormatter`` instead of ``StructuredFormatter``.
        stream: Destination stream; defaults to ``sys.stderr`` so stdout
            stays free for the MCP stdio transport.
        include_structured: Append key=value pairs in text mode.
        force: Reconfigure even if already configured.

    Example:
        >>> configure_logging(level="DEBUG", force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(level, json_format, stream, include_structured)


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
) -> None:
    """Install handler and formatter (caller holds the lock)."""
    global _configured

    if _configured:
        return

    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StructuredFormatter(include_structured=include_structured)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.addHandler(handler)
    root.propagate = False

    _configured = True


def _reset_logging_impl() -> None:
    """Remove package handlers (caller holds the lock)."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    _configured = False


def reset_logging() -> None:
    """Return logging to the unconfigured state. Intended for tests."""
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Return a ``StructuredLogger`` for ``name``.

    Configures logging with defaults on first use. Loggers created
    before ``configure_logging`` installed the logger class are plain
    ``logging.Logger`` instances; to keep keyword logging working for
    them the class is swapped in place.

    Args:
        name: Logger name, normally ``__name__``.

    Returns:
        Logger accepting ``logger.info("msg", key=value)``.
    """
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    logger = logging.getLogger(name)
    if not isinstance(logger, StructuredLogger):
        logger.__class__ = StructuredLogger
    return cast(StructuredLogger, logger)
