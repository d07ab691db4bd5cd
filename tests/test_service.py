"""Tests for StillService, the request/response front of the broker.

Uses a real FrameTopic on the test's event loop so timers and deliveries
go through asyncio exactly as in production.
"""

import asyncio

import pytest

from image_snapshotter.devices.messages import (
    REASON_BUSY,
    REASON_STREAM_UNAVAILABLE,
    REASON_TIMEOUT,
    StillRequest,
    StillResponse,
)
from image_snapshotter.devices.service import (
    ServiceError,
    ServiceNotRunningError,
    StillService,
)
from image_snapshotter.devices.topic import FrameTopic
from image_snapshotter.observability import SnapshotStats
from tests.helpers import make_frame


async def _wait_for_subscriber(topic: FrameTopic) -> None:
    for _ in range(200):
        if topic.subscriber_count:
            return
        await asyncio.sleep(0.005)
    raise AssertionError("broker never subscribed")


@pytest.fixture
def topic() -> FrameTopic:
    return FrameTopic()


@pytest.fixture
def stats() -> SnapshotStats:
    return SnapshotStats()


@pytest.fixture
def service(topic, stats) -> StillService:
    return StillService(topic, stats=stats)


class TestCall:
    @pytest.mark.asyncio
    async def test_not_ready_fails_unavailable(self, service, stats):
        response = await service.call(1.0)

        assert response.success is False
        assert response.reason == REASON_STREAM_UNAVAILABLE
        assert stats.get_summary().outcome_counts == {"unavailable": 1}

    @pytest.mark.asyncio
    async def test_frame_answers_call(self, service, topic):
        service.mark_ready()
        publisher = topic.advertise()

        caller = asyncio.create_task(service.call(1.0))
        await _wait_for_subscriber(topic)
        publisher.publish(make_frame(sequence=5))

        response = await asyncio.wait_for(caller, 1.0)
        assert response.success
        assert response.still.header.sequence == 5
        assert topic.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_timeout_answers_call(self, service, topic):
        service.mark_ready()

        response = await asyncio.wait_for(service.call(0.05), 1.0)

        assert response.reason == REASON_TIMEOUT
        assert topic.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_overlapping_call_rejected(self, service, topic):
        """Second caller gets busy at once; first still gets its frame."""
        service.mark_ready()
        publisher = topic.advertise()

        first = asyncio.create_task(service.call(1.0))
        await _wait_for_subscriber(topic)
        second = await asyncio.wait_for(service.call(0), 0.5)
        publisher.publish(make_frame())

        assert second.reason == REASON_BUSY
        assert (await asyncio.wait_for(first, 1.0)).success

    @pytest.mark.asyncio
    async def test_handle_uses_request_timeout(self, service):
        service.mark_ready()

        response = await asyncio.wait_for(
            service.handle(StillRequest(timeout_s=0.02)), 1.0
        )

        assert response.reason == REASON_TIMEOUT

    @pytest.mark.asyncio
    async def test_mark_unavailable_fails_pending(self, service, topic):
        service.mark_ready()
        caller = asyncio.create_task(service.call(5.0))
        await _wait_for_subscriber(topic)

        service.mark_unavailable()

        response = await asyncio.wait_for(caller, 1.0)
        assert response.reason == REASON_STREAM_UNAVAILABLE
        assert service.ready is False

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_wedge_broker(self, service, topic, log_stream):
        """A caller that goes away leaves the broker able to take new work."""
        service.mark_ready()
        publisher = topic.advertise()
        caller = asyncio.create_task(service.call(5.0))
        await _wait_for_subscriber(topic)

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        publisher.publish(make_frame())
        await asyncio.sleep(0)

        assert service.broker.pending is None
        assert "No caller waiting for response" in log_stream.getvalue()

        follow_up = asyncio.create_task(service.call(1.0))
        await _wait_for_subscriber(topic)
        publisher.publish(make_frame(sequence=1))
        assert (await asyncio.wait_for(follow_up, 1.0)).success

    @pytest.mark.asyncio
    async def test_call_from_foreign_loop_rejected(self, service):
        service.bind_loop()

        def run_elsewhere():
            return asyncio.run(service.call(0.1))

        with pytest.raises(ServiceError, match="service loop"):
            await asyncio.to_thread(run_elsewhere)

    @pytest.mark.asyncio
    async def test_request_ids_increase(self, service):
        assert [service.next_request_id() for _ in range(3)] == [1, 2, 3]


class TestRequestStill:
    @pytest.mark.asyncio
    async def test_unbound_service_not_running(self, topic):
        service = StillService(topic)

        with pytest.raises(ServiceNotRunningError):
            await service.request_still(0.1)

    @pytest.mark.asyncio
    async def test_same_loop_delegates_to_call(self, service):
        service.mark_ready()

        response = await asyncio.wait_for(service.request_still(0.02), 1.0)

        assert response.reason == REASON_TIMEOUT

    @pytest.mark.asyncio
    async def test_other_thread_hops_onto_service_loop(self, service, topic):
        """A request from a thread with its own loop is served by ours.

        Arrangement:
        1. Service ready on the test loop, publisher advertised.
        2. A worker thread runs ``asyncio.run(request_still(...))``.

        Assertion Strategy:
        - The broker subscribes on this loop.
        - A frame published here answers the worker's request.
        """
        service.mark_ready()
        publisher = topic.advertise()

        worker = asyncio.create_task(
            asyncio.to_thread(lambda: asyncio.run(service.request_still(1.0)))
        )
        await _wait_for_subscriber(topic)
        publisher.publish(make_frame(sequence=11))

        response = await asyncio.wait_for(worker, 2.0)
        assert response.success
        assert response.still.header.sequence == 11


class TestRespond:
    @pytest.mark.asyncio
    async def test_unknown_request_dropped(self, service, log_stream):
        service.respond(99, StillResponse.failure(REASON_TIMEOUT))

        assert "No caller waiting for response, dropping" in log_stream.getvalue()

    def test_repr(self, service):
        assert "ready=False" in repr(service)
        assert "get_still" in repr(service)
