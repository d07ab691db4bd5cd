"""Snapshot core: frame topic, broker and still service.

``Snapshotter`` is imported from ``image_snapshotter.devices.runtime``
directly, since it builds on the drivers package.
"""

from image_snapshotter.devices.broker import (
    BrokerState,
    PendingRequest,
    Scheduler,
    SnapshotBroker,
    TimerHandle,
)
from image_snapshotter.devices.messages import (
    DEFAULT_TIMEOUT_S,
    REASON_BUSY,
    REASON_INVALID_TIMEOUT,
    REASON_STREAM_UNAVAILABLE,
    REASON_TIMEOUT,
    CompressedFrame,
    FrameHeader,
    StillRequest,
    StillResponse,
)
from image_snapshotter.devices.service import (
    ServiceError,
    ServiceNotRunningError,
    StillService,
)
from image_snapshotter.devices.topic import (
    FrameTopic,
    Publisher,
    Subscription,
    TopicClosedError,
    TopicError,
    wait_for_producer,
)

__all__ = [
    # Messages
    "CompressedFrame",
    "FrameHeader",
    "StillRequest",
    "StillResponse",
    "DEFAULT_TIMEOUT_S",
    "REASON_BUSY",
    "REASON_INVALID_TIMEOUT",
    "REASON_STREAM_UNAVAILABLE",
    "REASON_TIMEOUT",
    # Broker
    "BrokerState",
    "PendingRequest",
    "Scheduler",
    "SnapshotBroker",
    "TimerHandle",
    # Topic
    "FrameTopic",
    "Publisher",
    "Subscription",
    "TopicClosedError",
    "TopicError",
    "wait_for_producer",
    # Service
    "ServiceError",
    "ServiceNotRunningError",
    "StillService",
]
