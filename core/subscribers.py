"""Registry of connected SSE agents and best-effort fan-out."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

CONNECTED_MESSAGE = "Connected to SSE server"


class ChannelClosed(Exception):
    """Write attempted on a subscriber whose connection has gone away."""


def format_sse(event: str, data: dict) -> str:
    """Frame one named event in the SSE wire format."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


class Subscriber:
    """One open push channel.

    Framed text is buffered in a bounded ``asyncio.Queue`` which the
    streaming response drains. ``None`` on the queue tells the stream to end.
    """

    def __init__(self, subscriber_id: int, queue_size: int = 100):
        self.id = subscriber_id
        self.connected_at = datetime.now(timezone.utc)
        self.queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def write(self, text: str) -> None:
        if self.closed:
            raise ChannelClosed(f"subscriber {self.id} is closed")
        self.queue.put_nowait(text)  # raises asyncio.QueueFull on a stalled reader

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            # reader is stalled anyway; it will see `closed` on its next wakeup
            pass

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id}, closed={self.closed})"


class SubscriberRegistry:
    """Tracks connected agents. Owned by a single broker instance."""

    def __init__(self, queue_size: int = 100) -> None:
        if queue_size < 2:
            raise ValueError("queue_size must hold at least the two greeting frames")
        self._queue_size = queue_size
        self._ids = itertools.count(1)
        self._subscribers: dict[int, Subscriber] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def __iter__(self):
        return iter(list(self._subscribers.values()))

    def subscribe(self) -> Subscriber:
        """Register a new channel and greet it.

        The greeting is an empty comment (flushes proxies) followed by a
        ``connection`` event. The channel only joins the registry once both
        are buffered.
        """
        sub = Subscriber(next(self._ids), queue_size=self._queue_size)
        sub.write(":\n\n")
        sub.write(format_sse("connection", {"message": CONNECTED_MESSAGE}))
        self._subscribers[sub.id] = sub
        logger.info(
            "Client connected - ID: %s, total connected: %d",
            sub.id, len(self._subscribers),
            extra={"subscriber_id": sub.id},
        )
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        """Remove *sub*. Removing an already-absent subscriber is a no-op."""
        removed = self._subscribers.pop(sub.id, None)
        sub.close()
        if removed is not None:
            logger.info(
                "Client disconnected - ID: %s, total remaining: %d",
                sub.id, len(self._subscribers),
                extra={"subscriber_id": sub.id},
            )

    def broadcast(self, event: str, payload: dict) -> int:
        """Write *event* to every registered channel; return how many took it.

        A failing channel is logged and skipped, never raised.
        """
        text = format_sse(event, payload)
        delivered = 0
        for sub in list(self._subscribers.values()):
            try:
                sub.write(text)
            except Exception as e:
                logger.warning(
                    "Error sending %s to client %s: %r", event, sub.id, e,
                    extra={"subscriber_id": sub.id},
                )
                continue
            delivered += 1
        logger.info("Broadcast %s to %d client(s)", event, delivered)
        return delivered

    def close_all(self) -> None:
        for sub in list(self._subscribers.values()):
            self.unsubscribe(sub)
