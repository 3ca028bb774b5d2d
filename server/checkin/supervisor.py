"""
OGS Manager — Supervisor Scans
A staff tag scanned at a device toggles that staff member's supervision of the
active group currently bound to the device.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from active_store import ActiveStore
from concurrency import Deadline, KeyedLocks
from database import to_rfc3339
from errors import DeviceNotBound, DomainError, InternalError
from models.db_models import Device, Person, Staff
from realtime.events import Event, EventType, group_topic

logger = logging.getLogger("ogs.checkin.supervisor")

SUPERVISOR_JOINED = "supervisor_joined"
SUPERVISOR_LEFT   = "supervisor_left"


@dataclass
class SupervisorResult:
    staff_id: int
    staff_name: str
    action: str
    active_group_id: int
    room_name: str
    processed_at: datetime
    message: str
    events: List[Event] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"Staff {self.action} successfully"

    def to_response(self) -> dict:
        return {
            "staff_id":        self.staff_id,
            "staff_name":      self.staff_name,
            "action":          self.action,
            "active_group_id": self.active_group_id,
            "room_name":       self.room_name,
            "processed_at":    to_rfc3339(self.processed_at),
            "message":         self.message,
            "status":          "success",
        }


class SupervisorToggle:

    def __init__(self, db: Session, locks: KeyedLocks, deadline: Deadline,
                 clock: Callable[[], datetime]):
        self.db = db
        self.locks = locks
        self.deadline = deadline
        self.clock = clock

    def toggle(self, person: Person, staff: Staff, device: Device) -> SupervisorResult:
        store = ActiveStore(self.db, self.deadline)
        with self.locks.hold(f"staff:{staff.id}", timeout=self.deadline.remaining()):
            self.db.rollback()
            try:
                result = self._apply(store, person, staff, device)
                self.db.commit()
            except DomainError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error("Supervisor scan for staff %d failed: %s", staff.id, exc)
                raise InternalError("supervisor scan failed") from exc
        logger.info("Staff %d %s group %d", result.staff_id, result.action, result.active_group_id)
        return result

    def _apply(self, store: ActiveStore, person: Person, staff: Staff,
               device: Device) -> SupervisorResult:
        group = store.find_running_group_by_device(device.id)
        if group is None:
            raise DeviceNotBound()

        now = self.clock()
        existing = store.find_open_supervision(staff.id, group.id)
        if existing is not None:
            store.end_supervision(existing)
            action, event_type = SUPERVISOR_LEFT, EventType.SUPERVISOR_LEFT
            message = f"Tschüss {person.first_name}!"
        else:
            store.create_supervision(staff.id, group.id)
            action, event_type = SUPERVISOR_JOINED, EventType.SUPERVISOR_JOINED
            message = f"Hallo {person.first_name}!"
        store.update_session_activity(group.id, at=now)

        room_name = group.room.name if group.room else ""
        event = Event.create(event_type, group_topic(group.id), {
            "staff_id":        staff.id,
            "staff_name":      person.full_name,
            "active_group_id": group.id,
            "room_name":       room_name,
        }, emitted_at=now)
        return SupervisorResult(
            staff_id=staff.id,
            staff_name=person.full_name,
            action=action,
            active_group_id=group.id,
            room_name=room_name,
            processed_at=now,
            message=message,
            events=[event],
        )


def supervisor_event(event_type: EventType, staff: Staff, active_group_id: int,
                     room_name: Optional[str] = None) -> Event:
    """Event for supervision changes made through the web API."""
    person = staff.person
    return Event.create(event_type, group_topic(active_group_id), {
        "staff_id":        staff.id,
        "staff_name":      person.full_name if person else None,
        "active_group_id": active_group_id,
        "room_name":       room_name,
    })
