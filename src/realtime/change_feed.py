"""
Change feed listener for progress entries and class averages.

The listener owns the feed subscription for its whole lifetime: ``start``
spawns a background task that connects the transport, forwards every matching
event to the invalidation broker and reconnects with backoff when the link
drops. ``stop`` cancels that task and closes the transport; once it returns no
further invalidations are issued.

Delivery is at-least-once with no ordering guarantee. Events missed while
disconnected are not replayed; owners that need a consistent view after a
reconnect should resynchronize from ``on_reconnect`` (for example by running
the aggregator or dropping their caches).
"""

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from utils.retry import RetryPolicy
from .broker import CacheInvalidationBroker
from .events import ChangeEvent, Topic
from .transport import FeedDisconnectedError, FeedTransport


logger = logging.getLogger(__name__)

DegradedCallback = Callable[[BaseException], Any]
ReconnectCallback = Callable[[], Any]


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque handle returned by ``ChangeFeedListener.subscribe``."""
    id: int
    topic: Topic
    class_id: Optional[str] = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.topic.value:
            return False
        return self.class_id is None or event.class_id == self.class_id


class ChangeFeedListener:
    """Long-lived subscription that forwards change events to the broker."""

    def __init__(
        self,
        transport: FeedTransport,
        broker: CacheInvalidationBroker,
        retry_policy: Optional[RetryPolicy] = None,
        on_degraded: Optional[DegradedCallback] = None,
        on_reconnect: Optional[ReconnectCallback] = None,
    ):
        self.transport = transport
        self.broker = broker
        self.retry_policy = retry_policy or RetryPolicy(max_retries=5, retry_delay=1.0, timeout=10.0)
        self.on_degraded = on_degraded
        self.on_reconnect = on_reconnect

        self._subscriptions: Dict[int, SubscriptionHandle] = {}
        self._ids = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self._connected = False
        self._connected_once = False
        self.degraded = False
        self.last_error: Optional[BaseException] = None
        self.events_delivered = 0

    # Subscriptions

    def subscribe(self, topic: Union[Topic, str], class_id: Optional[str] = None) -> SubscriptionHandle:
        """Deliver events of ``topic``, optionally only those for ``class_id``."""
        handle = SubscriptionHandle(id=next(self._ids), topic=Topic(topic), class_id=class_id)
        self._subscriptions[handle.id] = handle
        logger.debug(f"Subscribed to {handle.topic.value}" + (f" for class {class_id}" if class_id else ""))
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        """Remove a subscription. Returns False if it was already gone."""
        return self._subscriptions.pop(handle.id, None) is not None

    @property
    def subscriptions(self) -> list:
        return list(self._subscriptions.values())

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def connected(self) -> bool:
        return self._connected

    def start(self) -> None:
        """Start the background receive loop. No-op if already running."""
        if self.is_running:
            return
        self._stopped = False
        self.degraded = False
        self._task = asyncio.create_task(self._run(), name="change-feed-listener")

    async def stop(self) -> None:
        """Cancel the receive loop and close the transport."""
        self._stopped = True
        task, self._task = self._task, None

        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.transport.close()
        self._connected = False
        logger.info("Change feed listener stopped")

    async def __aenter__(self) -> "ChangeFeedListener":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def wait(self) -> None:
        """Block until the receive loop ends (degraded mode or stop)."""
        if self._task is not None:
            await asyncio.shield(self._task)

    # Receive loop

    async def _run(self) -> None:
        channels = [topic.value for topic in Topic]
        policy = self.retry_policy
        failures = 0

        while not self._stopped:
            try:
                if policy.timeout is not None:
                    await asyncio.wait_for(self.transport.connect(channels), timeout=policy.timeout)
                else:
                    await self.transport.connect(channels)
            except (FeedDisconnectedError, asyncio.TimeoutError) as e:
                self.last_error = e
                logger.warning(f"Change feed connect failed: {e!r}")
            except Exception as e:
                self.last_error = e
                logger.error(f"Unexpected error connecting change feed: {e!r}", exc_info=True)
            else:
                self._connected = True
                failures = 0
                if self._connected_once:
                    logger.info("Change feed reconnected")
                    await self._fire(self.on_reconnect)
                self._connected_once = True

                try:
                    await self._consume()
                except FeedDisconnectedError as e:
                    self.last_error = e
                    logger.warning(f"Change feed disconnected: {e}")
                except Exception as e:
                    self.last_error = e
                    logger.error(f"Change feed receive loop failed: {e!r}", exc_info=True)
                finally:
                    self._connected = False

                await self.transport.close()

            if self._stopped:
                return

            if failures >= policy.max_retries:
                await self._enter_degraded(self.last_error)
                return

            delay = policy.delay_for(failures)
            failures += 1
            logger.info(f"Reconnecting change feed in {delay:.1f}s (attempt {failures}/{policy.max_retries})")
            await asyncio.sleep(delay)

    async def _consume(self) -> None:
        while not self._stopped:
            event = await self.transport.receive()
            await self._dispatch(event)

    async def _dispatch(self, event: ChangeEvent) -> None:
        for handle in list(self._subscriptions.values()):
            if self._stopped:
                return
            if not handle.matches(event):
                continue
            try:
                await self.broker.handle_event(event)
                self.events_delivered += 1
            except Exception as e:
                logger.error(f"Invalidation for {event.table} event failed: {e}", exc_info=True)

    async def _enter_degraded(self, cause: Optional[BaseException]) -> None:
        self.degraded = True
        logger.error(
            f"Change feed reconnect budget exhausted after {self.retry_policy.max_retries} attempts; "
            f"serving cached data only",
            extra={"cause": repr(cause)},
        )
        await self._fire(self.on_degraded, cause or FeedDisconnectedError("reconnect budget exhausted"))

    async def _fire(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Change feed callback failed: {e}", exc_info=True)
