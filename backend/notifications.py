"""
In-process fan-out of order lifecycle events to websocket subscribers.

Subscribers are grouped into rooms: one room per order (``order-<id>``) that
the customer joins to follow their order, and ``staff-room`` that every
connected staff/admin session joins. Delivery is best effort: nothing is
persisted or replayed, and a subscriber only sees events published after it
joined a room.

``publish`` is safe to call from any thread. Each subscriber owns a FIFO
queue bound to the event loop its websocket runs on, so events published to
one subscriber arrive in publish order.
"""
import asyncio
import logging
import threading
import uuid
from collections import defaultdict
from typing import Dict, Optional, Set

logger = logging.getLogger(__name__)

STAFF_ROOM = "staff-room"


def order_room(order_id) -> str:
    return f"order-{order_id}"


class Subscriber:
    def __init__(self, loop: asyncio.AbstractEventLoop, user=None):
        self.id = uuid.uuid4().hex
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()
        self.rooms: Set[str] = set()
        self.user_id = getattr(user, "id", None)
        self.role = getattr(user, "role", None)

    def deliver(self, message: dict):
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)

    async def next_message(self) -> dict:
        return await self.queue.get()


class NotificationHub:
    def __init__(self):
        self._rooms: Dict[str, Set[Subscriber]] = defaultdict(set)
        self._lock = threading.Lock()

    def connect(self, user=None, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscriber:
        subscriber = Subscriber(loop or asyncio.get_running_loop(), user)
        logger.info("Subscriber %s connected (user=%s)", subscriber.id, subscriber.user_id)
        return subscriber

    def join(self, subscriber: Subscriber, room: str):
        with self._lock:
            self._rooms[room].add(subscriber)
            subscriber.rooms.add(room)
        logger.info("Subscriber %s joined %s", subscriber.id, room)

    def leave(self, subscriber: Subscriber, room: str):
        with self._lock:
            self._discard(subscriber, room)

    def disconnect(self, subscriber: Subscriber):
        with self._lock:
            for room in list(subscriber.rooms):
                self._discard(subscriber, room)
        logger.info("Subscriber %s disconnected", subscriber.id)

    def room_size(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def publish(self, room: str, event: str, payload: dict) -> int:
        """Fire-and-forget delivery; returns how many subscribers were reached."""
        message = {"event": event, "room": room}
        message.update(payload)

        with self._lock:
            subscribers = list(self._rooms.get(room, ()))

        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.deliver(message)
                delivered += 1
            except RuntimeError as e:
                # The subscriber's event loop is closed
                logger.warning("Dropping subscriber %s from %s: %s", subscriber.id, room, e)
                with self._lock:
                    for joined in list(subscriber.rooms):
                        self._discard(subscriber, joined)

        logger.debug("Published %s to %s (%s subscribers)", event, room, delivered)
        return delivered

    def _discard(self, subscriber: Subscriber, room: str):
        members = self._rooms.get(room)
        if members is not None:
            members.discard(subscriber)
            if not members:
                del self._rooms[room]
        subscriber.rooms.discard(room)


hub = NotificationHub()
