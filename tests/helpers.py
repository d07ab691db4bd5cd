"""Test doubles shared across test modules.

- ManualScheduler: timer source whose clock only moves when a test calls
  ``advance()``; optionally ignores cancellation to simulate a timer that
  fires after its request was resolved.
- FakeTopic: records subscriptions and lets a test deliver a frame to one
  of them synchronously.
- ResponseLog: a ``respond`` callable that records every response.
- FakeClock: publisher clock that advances on sleep.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from image_snapshotter.devices.messages import (
    CompressedFrame,
    FrameHeader,
    StillResponse,
)
from image_snapshotter.devices.topic import TopicClosedError

# =============================================================================
# Scheduler
# =============================================================================


class ManualTimer:
    """Handle returned by ManualScheduler.call_later."""

    def __init__(
        self,
        when: float,
        callback: Callable[..., Any],
        args: tuple[Any, ...],
        honour_cancel: bool,
    ) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False
        self._honour_cancel = honour_cancel

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def live(self) -> bool:
        """Would still fire when its time comes."""
        if self.fired:
            return False
        return not (self.cancelled and self._honour_cancel)


class ManualScheduler:
    """Scheduler whose clock is advanced by the test.

    Args:
        honour_cancel: When False, cancelled timers still fire, which is
            how a cancel that raced with the timer firing looks to the
            broker.
    """

    def __init__(self, honour_cancel: bool = True) -> None:
        self.now = 0.0
        self.timers: list[ManualTimer] = []
        self.honour_cancel = honour_cancel

    def time(self) -> float:
        return self.now

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any
    ) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback, args, self.honour_cancel)
        self.timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in deadline order."""
        target = self.now + seconds
        while True:
            due = [t for t in self.timers if t.live and t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self.now = timer.when
            timer.fired = True
            timer.callback(*timer.args)
        self.now = target

    @property
    def armed_timers(self) -> list[ManualTimer]:
        """Timers neither fired nor cancelled."""
        return [t for t in self.timers if not t.fired and not t.cancelled]


# =============================================================================
# Topic
# =============================================================================


class FakeSubscription:
    def __init__(
        self, topic: FakeTopic, callback: Callable[[CompressedFrame], None]
    ) -> None:
        self.topic = topic
        self.callback = callback
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def deliver(self, frame: CompressedFrame) -> None:
        """Invoke the callback even if closed, like a frame already in flight."""
        self.callback(frame)


class FakeTopic:
    """Topic double that hands frames to subscribers only when told to."""

    def __init__(self, name: str = "image_raw/compressed") -> None:
        self.name = name
        self.subscriptions: list[FakeSubscription] = []
        self.closed = False

    def subscribe(
        self, callback: Callable[[CompressedFrame], None], queue_depth: int = 1
    ) -> FakeSubscription:
        if self.closed:
            raise TopicClosedError(f"Topic {self.name!r} is closed")
        subscription = FakeSubscription(self, callback)
        self.subscriptions.append(subscription)
        return subscription

    @property
    def live_subscriptions(self) -> list[FakeSubscription]:
        return [s for s in self.subscriptions if not s.closed]

    def publish(self, frame: CompressedFrame) -> None:
        """Deliver to every open subscription."""
        for subscription in self.live_subscriptions:
            subscription.deliver(frame)


# =============================================================================
# Responder / frames / clock
# =============================================================================


class ResponseLog:
    """``respond`` callable that records (request_id, response) pairs."""

    def __init__(self) -> None:
        self.calls: list[tuple[int, StillResponse]] = []

    def __call__(self, request_id: int, response: StillResponse) -> None:
        self.calls.append((request_id, response))

    def for_request(self, request_id: int) -> list[StillResponse]:
        return [r for rid, r in self.calls if rid == request_id]


def make_frame(
    sequence: int = 0,
    frame_id: str = "camera_optical_frame",
    data: bytes = b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9",
    format: str = "jpeg",
) -> CompressedFrame:
    """Build a small CompressedFrame."""
    return CompressedFrame(
        header=FrameHeader(
            stamp=datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC),
            frame_id=frame_id,
            sequence=sequence,
        ),
        format=format,
        data=data,
    )


class FakeClock:
    """Publisher clock: sleeping advances time and yields to the loop once."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)
        await asyncio.sleep(0)
