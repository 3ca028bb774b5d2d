"""
OGS Manager — Tests: SSE framing, stream lifecycle and topic resolution
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json

import pytest
from starlette.requests import Request

from active_store import ActiveStore
from database import utcnow
from models.db_models import ActiveGroup, Supervision
from realtime.events import Event, EventType
from realtime.hub import Hub
from realtime.sse import (
    HEARTBEAT_FRAME, SSEConnection, StreamingUnsupported,
    ensure_streaming, format_event, format_frame,
)
from realtime.subscriptions import Subscription, resolve_topics
from routes.sse import sse_events


def parse_frame(frame: bytes):
    lines = frame.decode("utf-8").rstrip("\n").split("\n")
    fields = dict(line.split(": ", 1) for line in lines)
    return fields["event"], json.loads(fields["data"])


class Disconnect:
    """Stand-in for Request.is_disconnected."""

    def __init__(self):
        self.gone = False

    async def __call__(self):
        return self.gone


async def wait_until(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition not reached")


# ─── Framing ─────────────────────────────────────────────────────────────────

class TestFraming:
    def test_frame_layout(self):
        assert format_frame("connected", "{}") == b"event: connected\ndata: {}\n\n"

    def test_event_frame(self):
        event = Event.create(EventType.STUDENT_CHECKOUT, "7", {"student_id": 3, "student_name": "Jörg"})
        name, data = parse_frame(format_event(event))
        assert name == "student_checkout"
        assert data["type"] == "student_checkout"
        assert data["topic"] == "7"
        assert data["data"]["student_name"] == "Jörg"
        assert data["timestamp"].endswith("Z")

    def test_heartbeat_is_a_comment(self):
        assert HEARTBEAT_FRAME.startswith(b":")
        assert HEARTBEAT_FRAME.endswith(b"\n\n")

    def test_streaming_requires_http_scope(self):
        ensure_streaming({"type": "http"})
        with pytest.raises(StreamingUnsupported):
            ensure_streaming({"type": "websocket"})


# ─── Stream lifecycle ────────────────────────────────────────────────────────

class TestStream:
    def _connection(self, hub, subscription, disconnect, heartbeat=5.0):
        return SSEConnection(hub, subscription, disconnect, staff_id=1,
                             heartbeat_seconds=heartbeat, poll_seconds=0.01)

    @pytest.mark.asyncio
    async def test_connected_frame_comes_first(self):
        hub = Hub()
        sub = Subscription(active_group_ids=(4, 9), educational_group_topics=("edu:2",))
        stream = self._connection(hub, sub, Disconnect()).frames()

        name, data = parse_frame(await stream.__anext__())
        await stream.aclose()

        assert name == "connected"
        assert data == {
            "status": "ready",
            "supervised_group_count": 2,
            "active_group_ids": ["4", "9"],
            "educational_group_topics": ["edu:2"],
            "subscribed_topic_count": 3,
        }

    @pytest.mark.asyncio
    async def test_event_is_delivered_and_client_removed_on_disconnect(self):
        hub = Hub()
        disconnect = Disconnect()
        conn = self._connection(hub, Subscription(active_group_ids=(4,)), disconnect)
        stream = conn.frames()
        await stream.__anext__()

        pending = asyncio.ensure_future(stream.__anext__())
        await wait_until(lambda: hub.is_registered(conn.client))
        hub.broadcast(Event.create(EventType.STUDENT_CHECKIN, "4", {"student_id": 1}))

        name, data = parse_frame(await asyncio.wait_for(pending, 1.0))
        assert name == "student_checkin"
        assert data["data"] == {"student_id": 1}

        disconnect.gone = True
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(stream.__anext__(), 1.0)
        assert not hub.is_registered(conn.client)
        assert hub.client_count == 0

    @pytest.mark.asyncio
    async def test_other_topics_are_not_delivered(self):
        hub = Hub()
        conn = self._connection(hub, Subscription(active_group_ids=(4,)), Disconnect(), heartbeat=0.05)
        stream = conn.frames()
        await stream.__anext__()

        pending = asyncio.ensure_future(stream.__anext__())
        await wait_until(lambda: hub.is_registered(conn.client))
        hub.broadcast(Event.create(EventType.STUDENT_CHECKIN, "5", {"student_id": 1}))

        assert await asyncio.wait_for(pending, 1.0) == HEARTBEAT_FRAME
        await stream.aclose()
        assert hub.client_count == 0

    @pytest.mark.asyncio
    async def test_empty_subscription_only_heartbeats(self):
        hub = Hub()
        stream = self._connection(hub, Subscription(), Disconnect(), heartbeat=0.01).frames()

        await stream.__anext__()
        assert await asyncio.wait_for(stream.__anext__(), 1.0) == HEARTBEAT_FRAME
        assert await asyncio.wait_for(stream.__anext__(), 1.0) == HEARTBEAT_FRAME
        assert hub.client_count == 0
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_closing_the_stream_unregisters(self):
        hub = Hub()
        conn = self._connection(hub, Subscription(active_group_ids=(4,)), Disconnect(), heartbeat=0.01)
        stream = conn.frames()
        await stream.__anext__()
        await stream.__anext__()
        assert hub.is_registered(conn.client)

        await stream.aclose()
        assert not hub.is_registered(conn.client)


# ─── Topic resolution ────────────────────────────────────────────────────────

class TestResolveTopics:
    def test_supervised_running_groups_and_edu_groups(self, db_session, world):
        db_session.add(Supervision(staff_id=world.staff, active_group_id=world.group9))
        db_session.add(Supervision(staff_id=world.staff, active_group_id=world.group7))
        db_session.commit()

        sub = resolve_topics(ActiveStore(db_session), world.staff)

        assert sub.active_group_ids == tuple(sorted([world.group7, world.group9]))
        assert sub.educational_group_topics == (f"edu:{world.edu}",)
        assert sub.all_topics == [str(i) for i in sub.active_group_ids] + [f"edu:{world.edu}"]

    def test_ended_supervisions_and_groups_are_excluded(self, db_session, world):
        db_session.add(Supervision(staff_id=world.staff, active_group_id=world.group7,
                                   end_time=utcnow()))
        db_session.add(Supervision(staff_id=world.staff, active_group_id=world.group9))
        db_session.get(ActiveGroup, world.group9).end_time = utcnow()
        db_session.commit()

        assert resolve_topics(ActiveStore(db_session), world.staff).active_group_ids == ()

    def test_staff_without_assignments(self, db_session, world):
        sub = resolve_topics(ActiveStore(db_session), 9999)
        assert sub == Subscription()
        assert sub.all_topics == []

    def test_store_supervisions_skip_ended_groups(self, db_session, world):
        db_session.add(Supervision(staff_id=world.staff, active_group_id=world.group7))
        db_session.add(Supervision(staff_id=world.staff, active_group_id=world.group9))
        db_session.get(ActiveGroup, world.group9).end_time = utcnow()
        db_session.commit()

        found = ActiveStore(db_session).find_staff_active_supervisions(world.staff)

        assert [s.active_group_id for s in found] == [world.group7]

    def test_store_educational_group_ids(self, db_session, world):
        store = ActiveStore(db_session)
        assert store.find_staff_educational_group_ids(world.staff) == [world.edu]
        assert store.find_staff_educational_group_ids(9999) == []


# ─── HTTP surface ────────────────────────────────────────────────────────────

class TestSSERoutes:
    def test_stream_requires_staff_token(self, client, world):
        resp = client.get("/api/sse/events")
        assert resp.status_code == 401
        assert resp.json()["status"] == "error"

    def test_stream_rejects_bad_token(self, client, world):
        resp = client.get("/api/sse/events", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid token"

    def test_stats(self, client, hub, staff_headers):
        resp = client.get("/api/sse/stats", headers=staff_headers)
        assert resp.status_code == 200
        assert resp.json() == {"clients": 0, "topics": 0, "broadcasts": 0, "delivered": 0, "dropped": 0}

    @pytest.mark.asyncio
    async def test_non_streaming_scope_is_rejected_before_any_bytes(self):
        request = Request({"type": "websocket", "path": "/api/sse/events", "headers": []})

        resp = await sse_events(request, staff=None, db=None)

        assert resp.status_code == 500
        assert json.loads(resp.body) == {"status": "error", "error": "streaming unsupported"}
