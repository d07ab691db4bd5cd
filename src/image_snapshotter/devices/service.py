"""Request/response transport for still requests.

StillService hands out request ids, parks each caller on a future, and
routes the broker's ``respond`` calls back to the right caller. It owns the
SnapshotBroker and binds it to the service's event loop.

Callers on the service loop await ``call()``. Callers elsewhere (the
dashboard runs uvicorn on its own thread and loop) await
``request_still()``, which hops onto the service loop first so the broker
only ever runs on one loop.

Example:
    service = StillService(topic)
    service.mark_ready()
    response = await service.call(timeout_s=1.0)
    if response.success:
        save(response.still.data)
"""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING

from image_snapshotter.devices.broker import Scheduler, SnapshotBroker
from image_snapshotter.devices.messages import (
    DEFAULT_TIMEOUT_S,
    REASON_STREAM_UNAVAILABLE,
    RequestId,
    StillRequest,
    StillResponse,
)
from image_snapshotter.observability import Outcome, get_logger

if TYPE_CHECKING:
    from image_snapshotter.devices.topic import FrameTopic
    from image_snapshotter.observability import SnapshotStats

logger = get_logger(__name__)

SERVICE_NAME = "get_still"


class ServiceError(Exception):
    """Base exception for still service operations."""

    pass


class ServiceNotRunningError(ServiceError):
    """Raised when the service has no event loop to run requests on."""

    pass


class StillService:
    """Single-call still image service backed by a SnapshotBroker."""

    def __init__(
        self,
        topic: FrameTopic,
        *,
        scheduler: Scheduler | None = None,
        default_timeout_s: float = DEFAULT_TIMEOUT_S,
        stats: SnapshotStats | None = None,
        name: str = SERVICE_NAME,
    ) -> None:
        """Create the service and its broker.

        Args:
            topic: Frame topic the broker subscribes to.
            scheduler: Timer source for the broker (default: service loop).
            default_timeout_s: Timeout for requests asking for 0 seconds.
            stats: Outcome statistics shared with the broker.
            name: Service name used in logs and status.
        """
        self.name = name
        self._stats = stats
        self._broker = SnapshotBroker(
            topic,
            self.respond,
            scheduler=scheduler,
            default_timeout_s=default_timeout_s,
            stats=stats,
        )
        self._ids = itertools.count(1)
        self._waiting: dict[RequestId, asyncio.Future[StillResponse]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready = False

    @property
    def broker(self) -> SnapshotBroker:
        """The broker answering this service's requests."""
        return self._broker

    @property
    def ready(self) -> bool:
        """True once a producer exists and requests are being admitted."""
        return self._ready

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        """Loop the broker runs on, None before the first request."""
        return self._loop

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Pin the service to ``loop`` (default: the running loop)."""
        self._loop = loop or asyncio.get_running_loop()

    def mark_ready(self) -> None:
        """Start admitting requests. Binds to the running loop if unbound."""
        if self._loop is None:
            self.bind_loop()
        self._ready = True
        logger.info("Still service ready", service=self.name)

    def mark_unavailable(self) -> None:
        """Stop admitting requests and fail the one in flight, if any."""
        self._ready = False
        self._broker.close()

    def next_request_id(self) -> RequestId:
        """Allocate a fresh request id."""
        return next(self._ids)

    async def call(self, timeout_s: float = 0.0) -> StillResponse:
        """Request one still image and wait for the response.

        Must run on the service loop.

        Args:
            timeout_s: Seconds to wait for a frame; 0 selects the default.

        Returns:
            The single response for this request: a still, or a failure
            with its reason.

        Raises:
            ServiceError: When awaited from a loop other than the
                service loop.
        """
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
        elif self._loop is not loop:
            raise ServiceError(
                "StillService.call() must run on the service loop; "
                "use request_still() from other loops"
            )

        request_id = self.next_request_id()
        future: asyncio.Future[StillResponse] = loop.create_future()
        self._waiting[request_id] = future

        try:
            if not self._ready:
                logger.warning(
                    "Still service not ready, rejecting", request_id=request_id
                )
                self.respond(
                    request_id, StillResponse.failure(REASON_STREAM_UNAVAILABLE)
                )
                if self._stats is not None:
                    self._stats.record_request(Outcome.UNAVAILABLE)
            else:
                self._broker.admit(request_id, timeout_s)
            return await future
        finally:
            self._waiting.pop(request_id, None)

    async def handle(self, request: StillRequest) -> StillResponse:
        """Typed wrapper around ``call()``."""
        return await self.call(request.timeout_s)

    async def request_still(self, timeout_s: float = 0.0) -> StillResponse:
        """Request a still from any event loop or thread.

        Raises:
            ServiceNotRunningError: If the service loop is not known yet or
                has stopped.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            raise ServiceNotRunningError(f"Service {self.name!r} is not running")

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            return await self.call(timeout_s)

        concurrent_future = asyncio.run_coroutine_threadsafe(
            self.call(timeout_s), loop
        )
        return await asyncio.wrap_future(concurrent_future)

    def respond(self, request_id: RequestId, response: StillResponse) -> None:
        """Deliver ``response`` to the caller waiting on ``request_id``.

        A response for a caller that is gone (cancelled, or never
        registered) is logged and dropped.
        """
        future = self._waiting.pop(request_id, None)
        if future is None:
            logger.warning(
                "No caller waiting for response, dropping",
                request_id=request_id,
                success=response.success,
            )
            return
        if future.done():
            logger.warning(
                "Caller already gone, dropping response",
                request_id=request_id,
                success=response.success,
            )
            return
        future.set_result(response)

    def __repr__(self) -> str:
        return (
            f"StillService(name={self.name!r}, ready={self._ready}, "
            f"waiting={len(self._waiting)})"
        )
