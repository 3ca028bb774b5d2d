"""
OGS Manager — Realtime Hub
In-process pub/sub: routes events to the SSE clients subscribed to their topic.
Each client owns a bounded queue; a full queue drops the event for that client only.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from typing import Dict, FrozenSet, Iterable, Optional, Set

from realtime.events import Event

logger = logging.getLogger("ogs.realtime.hub")

DEFAULT_BUFFER = 32

_client_ids = itertools.count(1)


class Client:
    """One SSE subscriber. Delivery counters are per client."""

    def __init__(self, staff_id: Optional[int] = None, buffer_size: int = DEFAULT_BUFFER,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.id = next(_client_ids)
        self.staff_id = staff_id
        self.topics: FrozenSet[str] = frozenset()
        self.queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(buffer_size, 1))
        self.delivered = 0
        self.dropped = 0
        self._loop = loop

    def __repr__(self) -> str:
        return f"<Client id={self.id} staff={self.staff_id} topics={len(self.topics)}>"

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def offer(self, event: Event) -> None:
        """Non-blocking enqueue, safe to call from any thread."""
        loop = self._loop
        if loop is not None and not loop.is_closed() and not _on_loop(loop):
            loop.call_soon_threadsafe(self._offer_now, event)
        else:
            self._offer_now(event)

    def _offer_now(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
            self.delivered += 1
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Client %d buffer full — dropped %s (dropped=%d)",
                           self.id, event.type.value, self.dropped)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next queued event, or None if nothing arrived within timeout."""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class Hub:
    """
    Topic → clients registry. Created once at application start and passed to
    everything that publishes; never a module-level singleton.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._topics: Dict[str, Set[Client]] = {}
        self._clients: Dict[int, Client] = {}
        self._broadcasts = 0

    def register(self, client: Client, topics: Iterable[str]) -> None:
        wanted = frozenset(str(t) for t in topics)
        with self._lock:
            self._detach(client)
            client.topics = wanted
            self._clients[client.id] = client
            for topic in wanted:
                self._topics.setdefault(topic, set()).add(client)
        logger.debug("Registered %r", client)

    def unregister(self, client: Client) -> None:
        with self._lock:
            removed = self._detach(client)
        if removed:
            logger.debug("Unregistered %r (delivered=%d dropped=%d)",
                         client, client.delivered, client.dropped)

    def _detach(self, client: Client) -> bool:
        if self._clients.pop(client.id, None) is None:
            return False
        for topic in client.topics:
            members = self._topics.get(topic)
            if members is None:
                continue
            members.discard(client)
            if not members:
                del self._topics[topic]
        return True

    def broadcast(self, event: Event) -> int:
        """Offer the event to every client subscribed to its topic; returns how many."""
        with self._lock:
            self._broadcasts += 1
            targets = list(self._topics.get(event.topic, ()))
            for client in targets:
                client.offer(event)
        logger.debug("Broadcast %s on topic %s to %d client(s)",
                     event.type.value, event.topic, len(targets))
        return len(targets)

    def broadcast_all(self, events: Iterable[Event]) -> int:
        return sum(self.broadcast(e) for e in events)

    def is_registered(self, client: Client) -> bool:
        with self._lock:
            return client.id in self._clients

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def stats(self) -> dict:
        with self._lock:
            clients = list(self._clients.values())
            return {
                "clients":    len(clients),
                "topics":     len(self._topics),
                "broadcasts": self._broadcasts,
                "delivered":  sum(c.delivered for c in clients),
                "dropped":    sum(c.dropped for c in clients),
            }
