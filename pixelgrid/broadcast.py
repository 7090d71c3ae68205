# pixelgrid/broadcast.py

import asyncio
import logging
import threading
from typing import Any, Protocol

from pixelgrid.pricing import as_utc

logger = logging.getLogger("pixelgrid_backend")


class Subscriber(Protocol):
    def deliver(self, message: dict[str, Any]) -> None: ...


def iso_utc(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def cell_message(cell) -> dict[str, Any]:
    """The one message shape pushed to viewers."""
    return {
        "x": cell.x,
        "y": cell.y,
        "color": cell.color,
        "price": cell.price,
        "ownerId": cell.owner_id,
        "ownerName": cell.owner_name,
        "link": cell.link,
        "isProtected": bool(cell.is_protected),
        "protectionExpiresAt": iso_utc(cell.protection_expires_at),
        "lastUpdated": iso_utc(cell.last_updated),
    }


class Broadcaster:
    """
    Explicit registry of connected viewers. Best effort: a subscriber whose
    delivery raises is dropped and has to re-hydrate from the full grid.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: set = set()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.add(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.discard(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message: dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscribers)

        delivered = 0
        for subscriber in targets:
            try:
                subscriber.deliver(message)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping subscriber %r after failed delivery: %s", subscriber, e)
                self.unsubscribe(subscriber)
        return delivered


class QueueSubscriber:
    """
    Bridges publishes from worker threads onto one event loop's queue,
    drained by a single WebSocket connection.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 1000) -> None:
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _put(self, message: dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Viewer queue full, dropping update for (%s,%s)", message.get("x"), message.get("y"))

    def deliver(self, message: dict[str, Any]) -> None:
        if self.loop.is_closed():
            raise RuntimeError("viewer loop is closed")
        self.loop.call_soon_threadsafe(self._put, message)

    async def next_message(self) -> dict[str, Any]:
        return await self.queue.get()
