"""Snapshot broker: one still image from a continuous frame stream.

The broker turns a pull-style request ("one still, now") into a short-lived
subscription on a push-style frame topic. It admits at most one request at a
time; the first frame to arrive answers it, or the timeout does.

State machine:

    IDLE --admit--> AWAITING_FRAME --frame--> IDLE   (success response)
                                   --timer--> IDLE   (timeout response)
    AWAITING_FRAME --admit--> AWAITING_FRAME         (new caller rejected)

All handlers are plain synchronous methods invoked one at a time by the
event loop (timer callbacks, topic deliveries, service calls). The only
synchronisation is that every handler checks for a pending request on
entry; a frame or timer that shows up after resolution finds nothing
pending, or a different request pending, and is dropped.

Example:
    broker = SnapshotBroker(topic, respond=service.respond)
    broker.admit(request_id=1, timeout_s=0.0)    # subscribes, arms 2.0s timer
    # ... the next published frame resolves request 1
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from image_snapshotter.devices.messages import (
    DEFAULT_TIMEOUT_S,
    REASON_BUSY,
    REASON_INVALID_TIMEOUT,
    REASON_STREAM_UNAVAILABLE,
    REASON_TIMEOUT,
    CompressedFrame,
    RequestId,
    StillResponse,
)
from image_snapshotter.devices.topic import DEFAULT_QUEUE_DEPTH, TopicError
from image_snapshotter.observability import LogContext, Outcome, get_logger

if TYPE_CHECKING:
    from image_snapshotter.devices.topic import FrameTopic, Subscription
    from image_snapshotter.observability import SnapshotStats

logger = get_logger(__name__)

Responder = Callable[[RequestId, StillResponse], None]


# --- Protocols (Injectable Dependencies) ---


@runtime_checkable
class TimerHandle(Protocol):  # pragma: no cover
    """Cancellable one-shot timer, as returned by ``loop.call_later``."""

    def cancel(self) -> None:
        """Prevent the callback from running if it has not run yet."""
        ...


@runtime_checkable
class Scheduler(Protocol):  # pragma: no cover
    """Timer source for request deadlines.

    ``asyncio.AbstractEventLoop`` satisfies this protocol directly, which
    is the production scheduler. Tests inject a manual scheduler whose
    clock only moves when the test advances it.

    Example:
        class ManualScheduler:
            def time(self) -> float: ...
            def call_later(self, delay, callback, *args): ...

        broker = SnapshotBroker(topic, respond, scheduler=ManualScheduler())
    """

    def time(self) -> float:
        """Return the scheduler's monotonic clock in seconds.

        Deadlines are expressed on this clock. For the event loop this is
        ``loop.time()``, which is what ``call_later`` measures against.
        """
        ...

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any
    ) -> TimerHandle:
        """Run ``callback(*args)`` once after ``delay`` seconds.

        Must not block. Cancellation through the returned handle is
        best-effort; the broker tolerates a callback that still fires.
        """
        ...


class BrokerState(Enum):
    """Observable state, derived from whether a request is pending."""

    IDLE = "idle"
    AWAITING_FRAME = "awaiting_frame"


@dataclass(slots=True)
class PendingRequest:
    """The single admitted, unresolved still request.

    Owns the subscription and the timer for its whole life; both are
    released when the request is resolved.

    Attributes:
        request_id: Handle for delivering the one response.
        deadline: Scheduler time at which the request times out.
        subscription: Transient frame subscription bound to this request.
        timer: Timeout timer bound to this request.
        admitted_at: Scheduler time of admission.
        timeout_s: Effective timeout after defaulting.
    """

    request_id: RequestId
    deadline: float
    subscription: Subscription
    timer: TimerHandle
    admitted_at: float
    timeout_s: float


class SnapshotBroker:
    """Bridges still requests onto a frame topic, one request at a time.

    Injectable Dependencies:
        - topic: Frame source to subscribe to (required)
        - respond: Delivers a response to a request id (required)
        - scheduler: Timer source (default: the running event loop)
        - stats: Outcome statistics (optional)

    Attributes:
        state: IDLE or AWAITING_FRAME.
        pending: The pending request, or None.
    """

    def __init__(
        self,
        topic: FrameTopic,
        respond: Responder,
        *,
        scheduler: Scheduler | None = None,
        default_timeout_s: float = DEFAULT_TIMEOUT_S,
        stats: SnapshotStats | None = None,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
    ) -> None:
        """Create an idle broker.

        Args:
            topic: Topic that frames are taken from.
            respond: Callable delivering exactly one response per call to
                the caller identified by the request id.
            scheduler: Timer source. When None, the event loop running at
                the time of the first ``admit`` is used.
            default_timeout_s: Timeout used when a request asks for 0.
            stats: Collector recording outcomes and stale events.
            queue_depth: Queue depth of the transient subscription.

        Raises:
            ValueError: If default_timeout_s is not a positive finite number.
        """
        if not (math.isfinite(default_timeout_s) and default_timeout_s > 0):
            raise ValueError(
                f"default_timeout_s must be positive and finite, got {default_timeout_s}"
            )
        self._topic = topic
        self._respond = respond
        self._scheduler = scheduler
        self._default_timeout_s = default_timeout_s
        self._stats = stats
        self._queue_depth = queue_depth
        self._pending: PendingRequest | None = None

    # --- Properties ---

    @property
    def pending(self) -> PendingRequest | None:
        """The in-flight request, None when idle."""
        return self._pending

    @property
    def state(self) -> BrokerState:
        """Current state derived from ``pending``."""
        if self._pending is None:
            return BrokerState.IDLE
        return BrokerState.AWAITING_FRAME

    @property
    def default_timeout_s(self) -> float:
        """Timeout applied to requests that ask for 0 seconds."""
        return self._default_timeout_s

    def resolve_timeout(self, timeout_s: float) -> float:
        """Apply the default to a requested timeout.

        Args:
            timeout_s: Requested timeout in seconds.

        Returns:
            ``default_timeout_s`` for 0, otherwise ``timeout_s``.

        Raises:
            ValueError: For negative, NaN or infinite values.
        """
        if not math.isfinite(timeout_s) or timeout_s < 0:
            raise ValueError(REASON_INVALID_TIMEOUT)
        return self._default_timeout_s if timeout_s == 0 else float(timeout_s)

    # --- Event handlers ---

    def admit(self, request_id: RequestId, timeout_s: float = 0.0) -> bool:
        """Handle a new still request.

        Rejects immediately when another request is in flight. Otherwise
        opens a subscription and arms a timer, both bound to
        ``request_id``; the response is sent later by whichever fires
        first.

        Args:
            request_id: Caller handle for the eventual response.
            timeout_s: Seconds to wait for a frame; 0 selects the default.

        Returns:
            True if the request is now pending, False if it was answered
            with a failure straight away.
        """
        with LogContext(request_id=request_id):
            if self._pending is not None:
                logger.warning(
                    "A previous request is still being processed, rejecting",
                    pending_request_id=self._pending.request_id,
                )
                self._reject(request_id, REASON_BUSY, Outcome.BUSY)
                return False

            try:
                effective_timeout = self.resolve_timeout(timeout_s)
            except ValueError:
                logger.warning("Invalid timeout requested", timeout_s=timeout_s)
                self._reject(
                    request_id, REASON_INVALID_TIMEOUT, Outcome.INVALID_TIMEOUT
                )
                return False

            scheduler = self._get_scheduler()

            try:
                subscription = self._topic.subscribe(
                    lambda frame: self.on_frame_received(frame, request_id=request_id),
                    queue_depth=self._queue_depth,
                )
            except TopicError as e:
                logger.error("Cannot subscribe to frame topic", error=str(e))
                self._reject(request_id, REASON_STREAM_UNAVAILABLE, Outcome.UNAVAILABLE)
                return False

            now = scheduler.time()
            timer = scheduler.call_later(
                effective_timeout, self._on_timer_fired, request_id
            )
            self._pending = PendingRequest(
                request_id=request_id,
                deadline=now + effective_timeout,
                subscription=subscription,
                timer=timer,
                admitted_at=now,
                timeout_s=effective_timeout,
            )
            logger.info(
                "Still request admitted",
                timeout_s=effective_timeout,
                topic=self._topic.name,
            )
            return True

    def on_frame_received(
        self, frame: CompressedFrame, *, request_id: RequestId | None = None
    ) -> None:
        """Answer the pending request with ``frame``.

        Args:
            frame: Frame delivered by the topic. Its header, format and
                bytes move into the response; the broker keeps nothing.
            request_id: Request the delivering subscription was opened
                for. A mismatch with the pending request marks the frame
                as stale. None applies the frame to whatever is pending.
        """
        pending = self._pending
        if pending is None or (
            request_id is not None and request_id != pending.request_id
        ):
            logger.error(
                "No pending request for received frame, ignoring",
                request_id=request_id,
                frame_id=frame.header.frame_id,
                sequence=frame.header.sequence,
            )
            self._record_stale("frame")
            return

        with LogContext(request_id=pending.request_id):
            logger.info(
                "Received image, sending response",
                frame_id=frame.header.frame_id,
                sequence=frame.header.sequence,
                size_bytes=len(frame.data),
            )
            self._resolve(pending, StillResponse.ok(frame), Outcome.SUCCESS)

    def on_timeout(self, *, request_id: RequestId | None = None) -> None:
        """Answer the pending request with a timeout failure.

        Args:
            request_id: Request the timer was armed for. A mismatch with
                the pending request marks the timer as stale. None times
                out whatever is pending.
        """
        pending = self._pending
        if pending is None or (
            request_id is not None and request_id != pending.request_id
        ):
            logger.warning(
                "No pending request on timeout, ignoring", request_id=request_id
            )
            self._record_stale("timer")
            return

        with LogContext(request_id=pending.request_id):
            logger.warning("Still request timed out", timeout_s=pending.timeout_s)
            self._resolve(
                pending, StillResponse.failure(REASON_TIMEOUT), Outcome.TIMEOUT
            )

    def close(self) -> None:
        """Fail any pending request and release its resources.

        Used at shutdown so a waiting caller is answered rather than
        left hanging.
        """
        pending = self._pending
        if pending is None:
            return
        with LogContext(request_id=pending.request_id):
            logger.warning("Broker closing with a request in flight")
            self._resolve(
                pending,
                StillResponse.failure(REASON_STREAM_UNAVAILABLE),
                Outcome.UNAVAILABLE,
            )

    # --- Internal ---

    def _on_timer_fired(self, request_id: RequestId) -> None:
        self.on_timeout(request_id=request_id)

    def _resolve(
        self, pending: PendingRequest, response: StillResponse, outcome: Outcome
    ) -> None:
        """Send the one response, then release timer and subscription.

        ``_pending`` is cleared last, after teardown, and even when
        ``respond`` raises.
        """
        scheduler = self._get_scheduler()
        duration_ms = (scheduler.time() - pending.admitted_at) * 1000
        try:
            self._respond(pending.request_id, response)
        finally:
            pending.timer.cancel()
            pending.subscription.close()
            self._pending = None
            if self._stats is not None:
                self._stats.record_request(outcome, duration_ms=duration_ms)

    def _reject(self, request_id: RequestId, reason: str, outcome: Outcome) -> None:
        self._respond(request_id, StillResponse.failure(reason))
        if self._stats is not None:
            self._stats.record_request(outcome)

    def _record_stale(self, kind: str) -> None:
        if self._stats is not None:
            self._stats.record_stale(kind)

    def _get_scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = asyncio.get_running_loop()
        return self._scheduler

    def __repr__(self) -> str:
        pending_id = self._pending.request_id if self._pending else None
        return (
            f"SnapshotBroker(topic={self._topic.name!r}, state={self.state.value}, "
            f"pending_request_id={pending_id})"
        )
