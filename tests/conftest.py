"""Pytest configuration and fixtures for image-snapshotter tests.

Fixtures wrap the doubles in ``tests.helpers`` and keep global state
(logging handlers, the driver configuration, the runtime singleton) from
leaking between tests.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Iterator

import pytest

from image_snapshotter.devices import runtime
from image_snapshotter.devices.messages import CompressedFrame
from image_snapshotter.drivers import config as driver_config
from image_snapshotter.observability import configure_logging, reset_logging
from tests.helpers import (
    FakeClock,
    FakeTopic,
    ManualScheduler,
    ResponseLog,
    make_frame,
)


@pytest.fixture
def frame() -> CompressedFrame:
    """A small JPEG-tagged frame with sequence 0."""
    return make_frame()


@pytest.fixture
def scheduler() -> ManualScheduler:
    """Manual scheduler at t=0 that honours cancellation."""
    return ManualScheduler()


@pytest.fixture
def fake_topic() -> FakeTopic:
    return FakeTopic()


@pytest.fixture
def responses() -> ResponseLog:
    return ResponseLog()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def log_stream() -> Iterator[io.StringIO]:
    """Capture package log output as text at DEBUG level.

    The package root logger does not propagate, so caplog would see
    nothing; tests read this stream instead.
    """
    stream = io.StringIO()
    configure_logging(level=logging.DEBUG, stream=stream, force=True)
    yield stream
    reset_logging()


@pytest.fixture(autouse=True)
def _reset_globals() -> Iterator[None]:
    """Clear the driver configuration, runtime singleton and log handlers."""
    driver_config.reset_config()
    runtime._default_snapshotter = None
    yield
    driver_config.reset_config()
    runtime._default_snapshotter = None
    reset_logging()
