"""
OGS Manager — Active Groups Routes
Start/end running groups, supervision from the web UI, and scheduled checkouts.
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from active_store import ActiveStore
from auth import require_staff
from checkin.supervisor import supervisor_event
from database import get_db, utcnow
from errors import Conflict, NotFound
from models.db_models import Activity, Device, Room, Staff, Student
from models.schemas import (
    ActiveGroupCreate, ActiveGroupResponse, ActiveGroupSummary, GroupEndResult,
    ScheduledCheckoutCreate, ScheduledCheckoutResponse, SupervisionResponse,
)
from realtime.events import Event, EventType, group_topic

logger = logging.getLogger("ogs.routes.active")
router = APIRouter(prefix="/api/active", tags=["active"])


def _publish(request: Request, *events: Event) -> None:
    request.app.state.hub.broadcast_all(events)


# ─── Groups ──────────────────────────────────────────────────────────────────

@router.get("/groups", response_model=List[ActiveGroupSummary])
def list_active_groups(db: Session = Depends(get_db), staff: Staff = Depends(require_staff)):
    store = ActiveStore(db)
    groups = store.list_running_groups()
    counts = store.count_open_visits_by_group(g.id for g in groups)
    return [
        ActiveGroupSummary(
            **ActiveGroupResponse.model_validate(g).model_dump(),
            room_name=g.room.name if g.room else None,
            activity_name=g.activity.name if g.activity else None,
            visitor_count=counts.get(g.id, 0),
        )
        for g in groups
    ]


@router.post("/groups", response_model=ActiveGroupResponse, status_code=status.HTTP_201_CREATED)
def start_active_group(
    payload: ActiveGroupCreate,
    request: Request,
    db: Session = Depends(get_db),
    staff: Staff = Depends(require_staff),
):
    if db.query(Activity).filter(Activity.id == payload.activity_id).first() is None:
        raise NotFound("activity not found")
    room = db.query(Room).filter(Room.id == payload.room_id).first()
    if room is None:
        raise NotFound("room not found")
    if payload.device_id is not None:
        if db.query(Device).filter(Device.id == payload.device_id).first() is None:
            raise NotFound("device not found")

    store = ActiveStore(db)
    running = [g for g in store.find_active_groups_by_room(room.id) if g.device_id == payload.device_id]
    if running:
        raise Conflict(f"room '{room.name}' already has a running group on this device")
    if payload.device_id is not None and store.find_running_group_by_device(payload.device_id):
        raise Conflict("device is already bound to a running group")

    group_id = store.create_active_group(payload.activity_id, room.id, device_pk=payload.device_id)
    db.commit()
    group = store.get_active_group(group_id)
    logger.info("Staff %d started group %d in room %s", staff.id, group.id, room.name)

    _publish(request, Event.create(EventType.GROUP_STARTED, group_topic(group.id), {
        "active_group_id": group.id,
        "activity_id":     group.activity_id,
        "room_id":         room.id,
        "room_name":       room.name,
        "started_by":      staff.id,
    }))
    return group


@router.post("/groups/{group_id}/end", response_model=GroupEndResult)
def end_active_group(
    group_id: int,
    request: Request,
    db: Session = Depends(get_db),
    staff: Staff = Depends(require_staff),
):
    store = ActiveStore(db)
    group = store.get_active_group(group_id)
    if group is None:
        raise NotFound("active group not found")
    room_name = group.room.name if group.room else None

    now = utcnow()
    closed = store.end_active_group(group_id, at=now)
    db.commit()
    logger.info("Staff %d ended group %d (%d visit(s) closed)", staff.id, group_id, len(closed))

    _publish(request, Event.create(EventType.GROUP_ENDED, group_topic(group_id), {
        "active_group_id": group_id,
        "room_name":       room_name,
        "closed_visits":   len(closed),
        "ended_by":        staff.id,
    }, emitted_at=now))
    return GroupEndResult(id=group_id, closed_visits=len(closed), end_time=now)


# ─── Supervision ─────────────────────────────────────────────────────────────

@router.post("/groups/{group_id}/supervise", response_model=SupervisionResponse,
             status_code=status.HTTP_201_CREATED)
def join_supervision(
    group_id: int,
    request: Request,
    db: Session = Depends(get_db),
    staff: Staff = Depends(require_staff),
):
    store = ActiveStore(db)
    group = store.get_active_group(group_id)
    if group is None or not group.is_running:
        raise NotFound("running active group not found")
    if store.find_open_supervision(staff.id, group_id) is not None:
        raise Conflict("already supervising this group")

    sup = store.create_supervision(staff.id, group_id)
    store.update_session_activity(group_id)
    db.commit()
    db.refresh(sup)

    _publish(request, supervisor_event(EventType.SUPERVISOR_JOINED, staff, group_id,
                                       group.room.name if group.room else None))
    return sup


@router.delete("/groups/{group_id}/supervise", response_model=SupervisionResponse)
def leave_supervision(
    group_id: int,
    request: Request,
    db: Session = Depends(get_db),
    staff: Staff = Depends(require_staff),
):
    store = ActiveStore(db)
    sup = store.find_open_supervision(staff.id, group_id)
    if sup is None:
        raise NotFound("no open supervision for this group")
    store.end_supervision(sup)
    db.commit()
    db.refresh(sup)

    group = store.get_active_group(group_id)
    _publish(request, supervisor_event(EventType.SUPERVISOR_LEFT, staff, group_id,
                                       group.room.name if group and group.room else None))
    return sup


# ─── Scheduled checkouts ─────────────────────────────────────────────────────

@router.post("/scheduled-checkouts", response_model=ScheduledCheckoutResponse,
             status_code=status.HTTP_201_CREATED)
def create_scheduled_checkout(
    payload: ScheduledCheckoutCreate,
    db: Session = Depends(get_db),
    staff: Staff = Depends(require_staff),
):
    if db.query(Student).filter(Student.id == payload.student_id).first() is None:
        raise NotFound("student not found")
    store = ActiveStore(db)
    if store.get_pending_scheduled_checkout(payload.student_id) is not None:
        raise Conflict("student already has a pending scheduled checkout")

    sc = store.create_scheduled_checkout(
        payload.student_id, payload.scheduled_for,
        scheduled_by=staff.id, reason=payload.reason,
    )
    db.commit()
    db.refresh(sc)
    logger.info("Scheduled checkout %d for student %d at %s", sc.id, sc.student_id, sc.scheduled_for)
    return sc


@router.delete("/scheduled-checkouts/{checkout_id}", response_model=ScheduledCheckoutResponse)
def cancel_scheduled_checkout(
    checkout_id: int,
    db: Session = Depends(get_db),
    staff: Staff = Depends(require_staff),
):
    store = ActiveStore(db)
    sc = store.cancel_scheduled_checkout(checkout_id, staff.id)
    db.commit()
    db.refresh(sc)
    return sc
