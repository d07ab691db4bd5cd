"""In-process publish/subscribe transport for compressed frames.

A FrameTopic carries frames from publishers (the camera publisher, or any
other producer that calls ``advertise()``) to subscribers. Delivery runs on
the topic's event loop: ``publish`` only queues frames and schedules the
subscriber callbacks with ``loop.call_soon``, so a producer never waits on a
slow subscriber and subscriber callbacks never run concurrently.

Each subscription keeps at most ``queue_depth`` undelivered frames, newest
wins. Closing a subscription drops anything still queued for it.

Example:
    topic = FrameTopic("image_raw/compressed")
    publisher = topic.advertise()

    sub = topic.subscribe(lambda frame: print(frame.header.sequence))
    publisher.publish(frame)   # callback runs on the next loop iteration
    sub.close()
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from collections.abc import Callable
from types import TracebackType
from typing import Any

from image_snapshotter.devices.messages import CompressedFrame
from image_snapshotter.observability import get_logger

logger = get_logger(__name__)

DEFAULT_TOPIC = "image_raw/compressed"
DEFAULT_QUEUE_DEPTH = 1
DEFAULT_PRODUCER_POLL_INTERVAL_S = 1.0

FrameCallback = Callable[[CompressedFrame], None]


class TopicError(Exception):
    """Base exception for topic operations."""

    pass


class TopicClosedError(TopicError):
    """Raised when subscribing to or advertising on a closed topic."""

    pass


class Subscription:
    """Live registration of a callback on a topic.

    Created by ``FrameTopic.subscribe``. Usable as a context manager;
    ``close()`` is idempotent.
    """

    def __init__(
        self,
        topic: FrameTopic,
        callback: FrameCallback,
        subscription_id: int,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
    ) -> None:
        self._topic = topic
        self._callback = callback
        self.subscription_id = subscription_id
        self._queue: deque[CompressedFrame] = deque(maxlen=queue_depth)
        self._scheduled = False
        self._active = True
        self.delivered = 0

    @property
    def active(self) -> bool:
        """True until ``close()`` is called or the topic closes."""
        return self._active

    def _enqueue(self, frame: CompressedFrame, loop: asyncio.AbstractEventLoop) -> None:
        """Queue a frame and schedule a drain if none is pending."""
        if not self._active:
            return
        self._queue.append(frame)
        if not self._scheduled:
            self._scheduled = True
            loop.call_soon(self._drain)

    def _drain(self) -> None:
        """Deliver queued frames until the queue empties or we are closed.

        The callback may close this subscription (the broker does on its
        first frame); remaining frames are then discarded.
        """
        self._scheduled = False
        while self._active and self._queue:
            frame = self._queue.popleft()
            self.delivered += 1
            try:
                self._callback(frame)
            except Exception:
                logger.exception(
                    "Subscriber callback failed",
                    topic=self._topic.name,
                    subscription_id=self.subscription_id,
                )

    def close(self) -> None:
        """Stop deliveries and unregister from the topic."""
        if not self._active:
            return
        self._active = False
        self._queue.clear()
        self._topic._remove_subscription(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Subscription(topic={self._topic.name!r}, "
            f"id={self.subscription_id}, active={self._active})"
        )


class Publisher:
    """Handle through which a producer publishes on a topic.

    While open it counts towards ``FrameTopic.publisher_count``, which is
    what ``wait_for_producer`` watches.
    """

    def __init__(self, topic: FrameTopic, publisher_id: int) -> None:
        self._topic = topic
        self.publisher_id = publisher_id
        self._closed = False

    @property
    def closed(self) -> bool:
        """True after ``close()``."""
        return self._closed

    def publish(self, frame: CompressedFrame) -> int:
        """Queue ``frame`` for every live subscriber.

        Must be called on the topic's event loop. Never blocks.

        Args:
            frame: Frame to deliver.

        Returns:
            Number of subscriptions the frame was queued for. 0 when
            nobody is listening or this publisher is closed.
        """
        if self._closed:
            logger.debug(
                "Publish on closed publisher ignored",
                topic=self._topic.name,
                publisher_id=self.publisher_id,
            )
            return 0
        return self._topic._dispatch(frame)

    def publish_threadsafe(self, frame: CompressedFrame) -> None:
        """Publish from a thread other than the topic's loop.

        Raises:
            TopicError: If the topic has not been bound to a loop yet.
        """
        loop = self._topic.loop
        if loop is None:
            raise TopicError(
                f"Topic {self._topic.name!r} is not bound to an event loop"
            )
        loop.call_soon_threadsafe(self.publish, frame)

    def close(self) -> None:
        """Withdraw this publisher. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._topic._remove_publisher(self)

    def __repr__(self) -> str:
        return (
            f"Publisher(topic={self._topic.name!r}, "
            f"id={self.publisher_id}, closed={self._closed})"
        )


class FrameTopic:
    """Named frame stream with any number of publishers and subscribers.

    The topic binds to the running event loop on first use (or to the
    ``loop`` passed in). All methods except ``Publisher.publish_threadsafe``
    must be called on that loop.
    """

    def __init__(
        self,
        name: str = DEFAULT_TOPIC,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.name = name
        self._loop = loop
        self._subscriptions: dict[int, Subscription] = {}
        self._publishers: dict[int, Publisher] = {}
        self._ids = itertools.count(1)
        self._publisher_available = asyncio.Event()
        self._closed = False
        self._msg_count = 0
        self._byte_count = 0
        self._last_publish_time = 0.0

    # --- Properties ---

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        """Event loop deliveries run on, None until first use."""
        return self._loop

    @property
    def closed(self) -> bool:
        """True after ``close()``."""
        return self._closed

    @property
    def publisher_count(self) -> int:
        """Number of open publishers."""
        return len(self._publishers)

    @property
    def subscriber_count(self) -> int:
        """Number of live subscriptions."""
        return len(self._subscriptions)

    # --- Registration ---

    def advertise(self) -> Publisher:
        """Register a new publisher.

        Raises:
            TopicClosedError: If the topic is closed.
        """
        if self._closed:
            raise TopicClosedError(f"Topic {self.name!r} is closed")
        self._bind_loop()
        publisher = Publisher(self, next(self._ids))
        self._publishers[publisher.publisher_id] = publisher
        self._publisher_available.set()
        logger.debug(
            "Publisher advertised",
            topic=self.name,
            publisher_id=publisher.publisher_id,
        )
        return publisher

    def subscribe(
        self,
        callback: FrameCallback,
        queue_depth: int = DEFAULT_QUEUE_DEPTH,
    ) -> Subscription:
        """Register ``callback`` for frames published from now on.

        Args:
            callback: Called on the topic's loop with each frame.
            queue_depth: Undelivered frames kept for this subscriber;
                older ones are dropped first.

        Returns:
            The live Subscription. Close it to stop deliveries.

        Raises:
            TopicClosedError: If the topic is closed.
            ValueError: If queue_depth < 1.
        """
        if self._closed:
            raise TopicClosedError(f"Topic {self.name!r} is closed")
        if queue_depth < 1:
            raise ValueError(f"queue_depth must be >= 1, got {queue_depth}")
        self._bind_loop()
        subscription = Subscription(self, callback, next(self._ids), queue_depth)
        self._subscriptions[subscription.subscription_id] = subscription
        return subscription

    async def wait_for_publisher(self) -> None:
        """Return once at least one publisher is advertised."""
        await self._publisher_available.wait()

    def close(self) -> None:
        """Close the topic, every subscription and every publisher."""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscriptions.values()):
            subscription.close()
        for publisher in list(self._publishers.values()):
            publisher.close()
        logger.info("Topic closed", topic=self.name, messages=self._msg_count)

    def snapshot(self) -> dict[str, Any]:
        """Counters for status endpoints."""
        return {
            "name": self.name,
            "closed": self._closed,
            "publishers": self.publisher_count,
            "subscribers": self.subscriber_count,
            "msg_count": self._msg_count,
            "byte_count": self._byte_count,
            "last_publish_time": self._last_publish_time,
        }

    # --- Internal ---

    def _bind_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _dispatch(self, frame: CompressedFrame) -> int:
        loop = self._bind_loop()
        self._msg_count += 1
        self._byte_count += len(frame.data)
        self._last_publish_time = time.time()
        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription._enqueue(frame, loop)
        return len(subscriptions)

    def _remove_subscription(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)

    def _remove_publisher(self, publisher: Publisher) -> None:
        self._publishers.pop(publisher.publisher_id, None)
        if not self._publishers:
            self._publisher_available.clear()

    def __repr__(self) -> str:
        return (
            f"FrameTopic(name={self.name!r}, publishers={self.publisher_count}, "
            f"subscribers={self.subscriber_count})"
        )


async def wait_for_producer(
    topic: FrameTopic,
    *,
    poll_interval: float = DEFAULT_PRODUCER_POLL_INTERVAL_S,
    shutdown: asyncio.Event | None = None,
) -> bool:
    """Wait until ``topic`` has at least one publisher.

    Logs a warning on every poll while waiting. Gives up when
    ``shutdown`` is set.

    Args:
        topic: Topic to watch.
        poll_interval: Seconds between warnings and shutdown checks.
        shutdown: Optional event signalling process shutdown.

    Returns:
        True once a publisher exists, False if interrupted by shutdown.

    Example:
        >>> if not await wait_for_producer(topic, shutdown=stop_event):
        ...     return  # shutting down, never became ready
    """
    while topic.publisher_count == 0:
        if shutdown is not None and shutdown.is_set():
            logger.error(
                "Interrupted while waiting for the publisher", topic=topic.name
            )
            return False
        logger.warning("Waiting for a publisher on topic", topic=topic.name)
        try:
            await asyncio.wait_for(topic.wait_for_publisher(), poll_interval)
        except TimeoutError:
            pass

    logger.info("Publisher found. Ready to get stills.", topic=topic.name)
    return True
