"""
OGS Manager — SSE Route
Long-lived event streams for staff, filtered to the groups they supervise.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from active_store import ActiveStore
from auth import require_staff
from config import settings
from database import get_db
from errors import error_body
from models.db_models import Staff
from models.schemas import HubStats
from realtime.sse import SSEConnection, StreamingUnsupported, ensure_streaming
from realtime.subscriptions import resolve_topics

logger = logging.getLogger("ogs.routes.sse")
router = APIRouter(prefix="/api/sse", tags=["sse"])

# SSEConnection sends its own heartbeats; keep the library ping out of the way.
_LIBRARY_PING_SECONDS = 24 * 60 * 60


@router.get("/events")
async def sse_events(
    request: Request,
    staff: Staff = Depends(require_staff),
    db: Session = Depends(get_db),
):
    try:
        ensure_streaming(request.scope)
    except StreamingUnsupported as exc:
        return JSONResponse(status_code=500, content=error_body(str(exc)))

    subscription = resolve_topics(ActiveStore(db), staff.id)
    # The stream outlives the request's DB work.
    db.close()

    connection = SSEConnection(
        hub=request.app.state.hub,
        subscription=subscription,
        is_disconnected=request.is_disconnected,
        staff_id=staff.id,
        heartbeat_seconds=settings.sse_heartbeat_seconds,
        buffer_size=settings.sse_client_buffer,
    )
    return EventSourceResponse(
        connection.frames(),
        headers=SSEConnection.HEADERS,
        ping=_LIBRARY_PING_SECONDS,
    )


@router.get("/stats", response_model=HubStats)
def sse_stats(request: Request, staff: Staff = Depends(require_staff)):
    return request.app.state.hub.stats()
