"""Room-scoped fanout for live connections.

A connection is anything with an awaitable ``send_json(data)`` (a FastAPI
``WebSocket`` in production). Joining a channel only means "listen"; whether
the connection may read or write a room is decided by the chat service call
the event triggers.

Frames for a room go out in the order they were published. A publisher
enqueues while it still holds the lock that ordered its write, and only one
flush per room sends at a time. Delivery is at-most-once and best-effort.
Broadcasts include the origin connection; clients drop echoes of their own
messages by message id. A client that was disconnected re-fetches room state
instead of replaying.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Protocol, Set

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


def room_for_chat(room_id: str) -> str:
    return f"chat:{room_id}"


class Relay:
    def __init__(self) -> None:
        self._channels: Dict[str, Set[Connection]] = {}
        self._pending: Dict[str, Deque[Dict[str, Any]]] = {}
        self._draining: Set[str] = set()
        self._lock = threading.Lock()

    def join(self, connection: Connection, room_id: str) -> None:
        channel = room_for_chat(room_id)
        with self._lock:
            self._channels.setdefault(channel, set()).add(connection)
        logger.debug("Connection %s joined %s", id(connection), channel)

    def leave(self, connection: Connection, room_id: str) -> None:
        channel = room_for_chat(room_id)
        with self._lock:
            self._discard(channel, connection)
        logger.debug("Connection %s left %s", id(connection), channel)

    def disconnect(self, connection: Connection) -> None:
        """Drop a connection from every channel."""
        with self._lock:
            for channel in list(self._channels):
                self._discard(channel, connection)

    def subscribers(self, room_id: str) -> List[Connection]:
        with self._lock:
            return list(self._channels.get(room_for_chat(room_id), ()))

    def channels(self) -> List[str]:
        with self._lock:
            return sorted(self._channels)

    def pending(self, room_id: str) -> int:
        with self._lock:
            return len(self._pending.get(room_id, ()))

    def publish(self, room_id: str, event: str, payload: Dict[str, Any]) -> None:
        """Queue ``{"event", "roomId", **payload}`` for the room; see :meth:`flush`."""
        frame = {"event": event, "roomId": room_id, **payload}
        with self._lock:
            self._pending.setdefault(room_id, deque()).append(frame)

    async def flush(self, room_id: str) -> int:
        """Send the room's queued frames in order.

        If another flush of the same room is already sending, this returns at
        once and the running flush picks up the new frames. Returns the number
        of deliveries this call made.
        """
        delivered = 0
        while True:
            with self._lock:
                if not self._pending.get(room_id) or room_id in self._draining:
                    return delivered
                self._draining.add(room_id)
            try:
                while True:
                    with self._lock:
                        queue = self._pending.get(room_id)
                        if not queue:
                            self._pending.pop(room_id, None)
                            break
                        frame = queue.popleft()
                    delivered += await self._deliver(room_id, frame)
            finally:
                with self._lock:
                    self._draining.discard(room_id)
            # frames queued after the last pop but before the discard go out on the next pass

    async def broadcast(self, room_id: str, event: str, payload: Dict[str, Any]) -> int:
        """Publish one frame and flush the room.

        Returns the number of connections that accepted frames during this
        flush. A failing connection is removed from all channels; the others
        still receive.
        """
        self.publish(room_id, event, payload)
        return await self.flush(room_id)

    # --------- internals ----------
    async def _deliver(self, room_id: str, frame: Dict[str, Any]) -> int:
        targets = self.subscribers(room_id)
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send_json(frame) for c in targets), return_exceptions=True)
        delivered = 0
        for connection, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning("Dropping connection %s after failed send to %s: %s",
                               id(connection), room_for_chat(room_id), result)
                self.disconnect(connection)
            else:
                delivered += 1
        return delivered

    def _discard(self, channel: str, connection: Connection) -> None:
        members = self._channels.get(channel)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self._channels[channel]
