"""
Tests for the change feed listener.

Uses the scriptable FakeTransport from conftest to drive connects,
deliveries and disconnects.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import wait_until
from realtime.change_feed import ChangeFeedListener
from realtime.events import ChangeEvent, OperationKind, Topic
from realtime.transport import FeedDisconnectedError
from utils.retry import RetryPolicy


def entry_event(class_id: str) -> ChangeEvent:
    return ChangeEvent(table=Topic.PROGRESS_ENTRIES.value, operation=OperationKind.INSERT, class_id=class_id)


def average_event(class_id: str) -> ChangeEvent:
    return ChangeEvent(table=Topic.CLASS_AVERAGES.value, operation=OperationKind.UPDATE, class_id=class_id)


@pytest.fixture
def broker():
    mock = MagicMock()
    mock.handle_event = AsyncMock(return_value=())
    return mock


@pytest.fixture
def policy():
    return RetryPolicy(max_retries=2, retry_delay=0.0, timeout=0.5)


def delivered(broker) -> list:
    return [call.args[0] for call in broker.handle_event.await_args_list]


class TestSubscriptions:

    def test_subscribe_and_unsubscribe(self, transport, broker):
        listener = ChangeFeedListener(transport, broker)

        handle = listener.subscribe(Topic.PROGRESS_ENTRIES, class_id="C1")
        other = listener.subscribe("class_averages")

        assert handle.topic == Topic.PROGRESS_ENTRIES
        assert other.topic == Topic.CLASS_AVERAGES
        assert handle.id != other.id
        assert listener.unsubscribe(handle) is True
        assert listener.unsubscribe(handle) is False
        assert listener.subscriptions == [other]

    def test_unknown_topic_rejected(self, transport, broker):
        listener = ChangeFeedListener(transport, broker)

        with pytest.raises(ValueError):
            listener.subscribe("students")

    def test_handle_matching(self, transport, broker):
        listener = ChangeFeedListener(transport, broker)
        handle = listener.subscribe(Topic.PROGRESS_ENTRIES, class_id="C1")

        assert handle.matches(entry_event("C1"))
        assert not handle.matches(entry_event("C2"))
        assert not handle.matches(average_event("C1"))


class TestDelivery:

    @pytest.mark.asyncio
    async def test_forwards_events_matching_class_filter(self, transport, broker, policy):
        listener = ChangeFeedListener(transport, broker, retry_policy=policy)
        listener.subscribe(Topic.PROGRESS_ENTRIES, class_id="C1")
        listener.subscribe(Topic.CLASS_AVERAGES, class_id="C1")

        async with listener:
            await wait_until(lambda: listener.connected)
            transport.push(entry_event("C2"))
            transport.push(entry_event("C1"))
            transport.push(average_event("C1"))
            await wait_until(lambda: broker.handle_event.await_count == 2)

        assert [(e.table, e.class_id) for e in delivered(broker)] == [
            ("progress_entries", "C1"),
            ("class_averages", "C1"),
        ]
        assert set(transport.channels) == {"progress_entries", "class_averages"}

    @pytest.mark.asyncio
    async def test_unfiltered_subscription_receives_every_class(self, transport, broker, policy):
        listener = ChangeFeedListener(transport, broker, retry_policy=policy)
        listener.subscribe(Topic.PROGRESS_ENTRIES)

        async with listener:
            await wait_until(lambda: listener.connected)
            transport.push(entry_event("C1"))
            transport.push(entry_event("C2"))
            await wait_until(lambda: broker.handle_event.await_count == 2)

        assert listener.events_delivered == 2

    @pytest.mark.asyncio
    async def test_unsubscribed_topic_not_forwarded(self, transport, broker, policy):
        listener = ChangeFeedListener(transport, broker, retry_policy=policy)
        handle = listener.subscribe(Topic.PROGRESS_ENTRIES)
        listener.subscribe(Topic.CLASS_AVERAGES)

        async with listener:
            await wait_until(lambda: listener.connected)
            listener.unsubscribe(handle)
            transport.push(entry_event("C1"))
            transport.push(average_event("C1"))
            await wait_until(lambda: broker.handle_event.await_count == 1)

        assert delivered(broker)[0].table == "class_averages"

    @pytest.mark.asyncio
    async def test_broker_error_does_not_stop_listener(self, transport, broker, policy):
        broker.handle_event.side_effect = [RuntimeError("cache bug"), ()]
        listener = ChangeFeedListener(transport, broker, retry_policy=policy)
        listener.subscribe(Topic.PROGRESS_ENTRIES)

        async with listener:
            await wait_until(lambda: listener.connected)
            transport.push(entry_event("C1"))
            transport.push(entry_event("C1"))
            await wait_until(lambda: broker.handle_event.await_count == 2)
            assert listener.is_running


class TestReconnection:

    @pytest.mark.asyncio
    async def test_reconnects_and_resumes_after_disconnect(self, transport, broker, policy):
        on_reconnect = AsyncMock()
        listener = ChangeFeedListener(transport, broker, retry_policy=policy, on_reconnect=on_reconnect)
        listener.subscribe(Topic.PROGRESS_ENTRIES)

        async with listener:
            await wait_until(lambda: listener.connected)
            transport.drop()
            await wait_until(lambda: transport.connect_count == 2 and listener.connected)
            transport.push(entry_event("C1"))
            await wait_until(lambda: broker.handle_event.await_count == 1)

        on_reconnect.assert_awaited_once()
        assert not listener.degraded
        assert isinstance(listener.last_error, FeedDisconnectedError)

    @pytest.mark.asyncio
    async def test_transient_connect_failures_are_retried(self, transport, broker, policy):
        transport.connect_failures = [FeedDisconnectedError("refused"), None]
        listener = ChangeFeedListener(transport, broker, retry_policy=policy)
        listener.subscribe(Topic.PROGRESS_ENTRIES)

        async with listener:
            await wait_until(lambda: listener.connected)

        assert transport.connect_count == 2
        assert not listener.degraded

    @pytest.mark.asyncio
    async def test_unexpected_connect_error_is_retried(self, transport, broker):
        transport.connect_failures = [RuntimeError("internal client error"), None]
        listener = ChangeFeedListener(transport, broker, retry_policy=RetryPolicy(max_retries=3, retry_delay=0.0))
        listener.subscribe(Topic.PROGRESS_ENTRIES)

        async with listener:
            await wait_until(lambda: listener.connected)
            assert listener.is_running

        assert transport.connect_count == 2
        assert not listener.degraded
        assert isinstance(listener.last_error, RuntimeError)

    @pytest.mark.asyncio
    async def test_unexpected_receive_error_reconnects(self, transport, broker, policy):
        listener = ChangeFeedListener(transport, broker, retry_policy=policy)
        listener.subscribe(Topic.PROGRESS_ENTRIES)

        async with listener:
            await wait_until(lambda: listener.connected)
            transport._queue.put_nowait(RuntimeError("decoder bug"))
            await wait_until(lambda: transport.connect_count == 2 and listener.connected)

        assert isinstance(listener.last_error, RuntimeError)

    @pytest.mark.asyncio
    async def test_unexpected_errors_exhaust_into_degraded(self, transport, broker, policy):
        transport.connect_failures = [RuntimeError("bad config")] * policy.max_attempts
        degraded_causes = []
        listener = ChangeFeedListener(
            transport, broker, retry_policy=policy, on_degraded=degraded_causes.append
        )
        listener.subscribe(Topic.PROGRESS_ENTRIES)

        listener.start()
        await listener.wait()

        assert listener.degraded
        assert len(degraded_causes) == 1
        assert isinstance(degraded_causes[0], RuntimeError)
        await listener.stop()

    @pytest.mark.asyncio
    async def test_degraded_when_reconnect_budget_exhausted(self, transport, broker, policy):
        transport.always_fail = True
        degraded_causes = []
        listener = ChangeFeedListener(
            transport, broker, retry_policy=policy, on_degraded=degraded_causes.append
        )
        listener.subscribe(Topic.PROGRESS_ENTRIES)

        listener.start()
        await listener.wait()

        assert listener.degraded
        assert not listener.is_running
        assert transport.connect_count == policy.max_attempts
        assert len(degraded_causes) == 1
        assert isinstance(degraded_causes[0], FeedDisconnectedError)
        await listener.stop()


class TestCancellation:

    @pytest.mark.asyncio
    async def test_no_invalidation_after_stop(self, transport, broker, policy):
        listener = ChangeFeedListener(transport, broker, retry_policy=policy)
        listener.subscribe(Topic.PROGRESS_ENTRIES)
        listener.start()
        await wait_until(lambda: listener.connected)

        await listener.stop()
        transport.push(entry_event("C1"))

        assert not listener.is_running
        assert not listener.connected
        assert transport.close_count >= 1
        broker.handle_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, transport, broker, policy):
        listener = ChangeFeedListener(transport, broker, retry_policy=policy)

        async with listener:
            listener.start()
            await wait_until(lambda: listener.connected)

        assert transport.connect_count == 1
