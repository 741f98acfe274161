"""
Transports for the change feed.

A transport owns one live subscription to the database's notification
channels. It does not reconnect by itself; when the link drops ``receive``
raises ``FeedDisconnectedError`` and the listener decides what to do.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Union

import asyncpg

from .events import ChangeEvent


logger = logging.getLogger(__name__)


class FeedDisconnectedError(Exception):
    """Raised when the transport loses (or cannot establish) its connection."""
    pass


class FeedTransport(ABC):
    """Abstract interface for change feed transports."""

    @abstractmethod
    async def connect(self, channels: Iterable[str]) -> None:
        """Open the connection and start listening on ``channels``."""
        pass

    @abstractmethod
    async def receive(self) -> ChangeEvent:
        """Wait for the next event. Raises FeedDisconnectedError on link loss."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Stop listening and release the connection. Safe to call twice."""
        pass


_DISCONNECTED = object()


class PostgresNotifyTransport(FeedTransport):
    """
    LISTEN/NOTIFY transport over a dedicated asyncpg connection.

    Notifications are pushed by asyncpg callbacks into a queue that
    ``receive`` drains. Connection loss is detected with asyncpg's
    termination listener and surfaced as FeedDisconnectedError.
    """

    def __init__(self, dsn: str, connect_timeout: float = 10.0):
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self._conn: Optional[asyncpg.Connection] = None
        self._channels: list = []
        self._queue: "asyncio.Queue[Union[ChangeEvent, object]]" = asyncio.Queue()

    async def connect(self, channels: Iterable[str]) -> None:
        await self.close()
        self._queue = asyncio.Queue()
        self._channels = list(channels)

        try:
            self._conn = await asyncpg.connect(self.dsn, timeout=self.connect_timeout)
            self._conn.add_termination_listener(self._on_terminated)
            for channel in self._channels:
                await self._conn.add_listener(channel, self._on_notification)
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            await self.close()
            raise FeedDisconnectedError(f"Could not subscribe to change feed: {e}") from e

        logger.info(f"Listening for changes on {', '.join(self._channels)}")

    def _on_notification(self, connection, pid, channel, payload) -> None:
        try:
            event = ChangeEvent.from_notification(channel, payload)
        except Exception as e:
            logger.warning(f"Unreadable notification on {channel}, invalidating table anyway: {e}")
            event = ChangeEvent(table=channel)
        self._queue.put_nowait(event)

    def _on_terminated(self, connection) -> None:
        self._queue.put_nowait(_DISCONNECTED)

    async def receive(self) -> ChangeEvent:
        if self._conn is None:
            raise FeedDisconnectedError("Change feed is not connected")

        item = await self._queue.get()
        if item is _DISCONNECTED:
            raise FeedDisconnectedError("Change feed connection terminated")
        return item

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return

        conn.remove_termination_listener(self._on_terminated)
        if not conn.is_closed():
            try:
                for channel in self._channels:
                    await conn.remove_listener(channel, self._on_notification)
                await conn.close(timeout=self.connect_timeout)
            except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                logger.warning(f"Error closing change feed connection: {e}")
                conn.terminate()
