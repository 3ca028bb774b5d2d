"""
OGS Manager — SSE Connection
Per-request wire framing, heartbeat and teardown for one staff stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from realtime.events import Event
from realtime.hub import Client, Hub
from realtime.subscriptions import Subscription

logger = logging.getLogger("ogs.realtime.sse")

HEARTBEAT_FRAME = b": heartbeat\n\n"
DISCONNECT_POLL_SECONDS = 1.0


def format_frame(event_type: str, data: str) -> bytes:
    return f"event: {event_type}\ndata: {data}\n\n".encode("utf-8")


def format_event(event: Event) -> bytes:
    return format_frame(event.type.value, event.to_json())


class StreamingUnsupported(RuntimeError):
    pass


def ensure_streaming(scope: dict) -> None:
    """Streaming needs an HTTP scope on an ASGI server that accepts chunked bodies."""
    if scope.get("type") != "http":
        raise StreamingUnsupported("streaming unsupported")


class SSEConnection:
    """
    Drives one stream: the connected frame, then events and heartbeats until
    the client goes away. Three wait sources are multiplexed with asyncio.wait:
    the disconnect watcher, the client's queue, and the heartbeat timeout.
    """

    HEADERS = {
        "Content-Type":      "text/event-stream",
        "Cache-Control":     "no-cache",
        "Connection":        "keep-alive",
        "X-Accel-Buffering": "no",
    }

    def __init__(
        self,
        hub: Hub,
        subscription: Subscription,
        is_disconnected: Callable[[], Awaitable[bool]],
        staff_id: Optional[int] = None,
        heartbeat_seconds: float = 30.0,
        buffer_size: int = 32,
        poll_seconds: float = DISCONNECT_POLL_SECONDS,
    ):
        self.hub = hub
        self.subscription = subscription
        self.client = Client(staff_id=staff_id, buffer_size=buffer_size)
        self._is_disconnected = is_disconnected
        self._heartbeat = heartbeat_seconds
        self._poll = poll_seconds

    def connected_payload(self) -> dict:
        sub = self.subscription
        return {
            "status":                   "ready",
            "supervised_group_count":   len(sub.active_group_ids),
            "active_group_ids":         [str(i) for i in sub.active_group_ids],
            "educational_group_topics": list(sub.educational_group_topics),
            "subscribed_topic_count":   len(sub.all_topics),
        }

    async def _watch_disconnect(self) -> None:
        while not await self._is_disconnected():
            await asyncio.sleep(self._poll)

    async def frames(self) -> AsyncIterator[bytes]:
        yield format_frame("connected", json.dumps(self.connected_payload()))

        topics = self.subscription.all_topics
        if topics:
            self.client.bind_loop(asyncio.get_running_loop())
            self.hub.register(self.client, topics)
        logger.info("SSE stream open for staff %s (%d topic(s))", self.client.staff_id, len(topics))

        watcher = asyncio.ensure_future(self._watch_disconnect())
        getter: Optional[asyncio.Future] = None
        try:
            while True:
                waiting = {watcher}
                if topics:
                    if getter is None:
                        getter = asyncio.ensure_future(self.client.queue.get())
                    waiting.add(getter)

                done, _ = await asyncio.wait(
                    waiting, timeout=self._heartbeat, return_when=asyncio.FIRST_COMPLETED,
                )
                if watcher in done:
                    break
                if getter is not None and getter in done:
                    event = getter.result()
                    getter = None
                    yield format_event(event)
                    continue
                yield HEARTBEAT_FRAME
        finally:
            for task in (watcher, getter):
                if task is not None and not task.done():
                    task.cancel()
            self.hub.unregister(self.client)
            logger.info("SSE stream closed for staff %s", self.client.staff_id)
