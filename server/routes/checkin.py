"""
OGS Manager — RFID Check-in Route
Devices post scans here; events are published once the transaction is committed.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from auth import require_device
from checkin.engine import CheckinEngine
from database import get_db
from models.db_models import Device
from models.schemas import CheckinRequest

logger = logging.getLogger("ogs.routes.checkin")
router = APIRouter(prefix="/iot", tags=["iot"])


@router.post("/checkin")
async def device_checkin(
    payload: CheckinRequest,
    request: Request,
    device: Device = Depends(require_device),
    db: Session = Depends(get_db),
):
    engine = CheckinEngine(db)
    result = await run_in_threadpool(engine.process, payload.rfid, payload.room_id, device)

    hub = request.app.state.hub
    delivered = hub.broadcast_all(result.events)
    logger.debug("Check-in %s published %d event(s) to %d client(s)",
                 result.action, len(result.events), delivered)

    return {"status": "success", "data": result.to_response(), "message": result.summary}
