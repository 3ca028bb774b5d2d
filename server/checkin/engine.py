"""
OGS Manager — RFID Check-in Engine
Decides checkout / check-in / transfer for one scan and applies it in a single
transaction. Events are returned to the caller and published only after commit.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, time as dtime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from active_store import ActiveStore
from checkin.decision import (
    CHECKED_IN, CHECKED_OUT, CHECKED_OUT_DAILY, TRANSFERRED,
    Action, ScanState, decide_action, greeting,
)
from checkin.supervisor import SupervisorToggle
from concurrency import Deadline, KeyedLocks, checkin_locks
from config import settings
from database import to_rfc3339, utcnow
from errors import (
    CapacityExceeded, DomainError, InternalError, NoActiveGroupInRoom,
    NotAStudent, RoomNotFound, TagNotFound,
)
from models.db_models import (
    Activity, ActivityCategory, ActiveGroup, Device, Person, Room, Student, Visit,
)
from realtime.events import Event, EventType, edu_topic, group_topic

logger = logging.getLogger("ogs.checkin")

SCHULHOF_MAX_PARTICIPANTS = 100


# ─── Result ──────────────────────────────────────────────────────────────────

@dataclass
class CheckinResult:
    student_id: int
    student_name: str
    action: str
    visit_id: int
    room_name: str
    processed_at: datetime
    message: str
    previous_room: Optional[str] = None
    events: List[Event] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"Student {self.action} successfully"

    def to_response(self) -> dict:
        data = {
            "student_id":   self.student_id,
            "student_name": self.student_name,
            "action":       self.action,
            "visit_id":     self.visit_id,
            "room_name":    self.room_name,
            "processed_at": to_rfc3339(self.processed_at),
            "message":      self.message,
            "status":       "success",
        }
        if self.action == TRANSFERRED and self.previous_room:
            data["previous_room"] = self.previous_room
        return data


# ─── Daily checkout ──────────────────────────────────────────────────────────

def parse_clock_time(value: str) -> dtime:
    hours, _, minutes = value.strip().partition(":")
    return dtime(int(hours), int(minutes or 0))


class DailyCheckoutPolicy:
    """
    A checkout counts as the student's daily checkout when it closes a visit in
    the home room of the student's educational group after the configured time.
    """

    def __init__(self, checkout_time: str = "15:00",
                 local_now: Callable[[], datetime] = datetime.now):
        self.checkout_time = parse_clock_time(checkout_time)
        self._local_now = local_now

    def applies(self, student: Student, closed_visit: Visit) -> bool:
        group = student.group
        if group is None or group.room_id is None:
            return False
        active_group = closed_visit.active_group
        if active_group is None or active_group.room_id != group.room_id:
            return False
        return self._local_now().time() > self.checkout_time


# ─── Engine ──────────────────────────────────────────────────────────────────

class CheckinEngine:

    def __init__(
        self,
        db: Session,
        locks: KeyedLocks = checkin_locks,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        daily_policy: Optional[DailyCheckoutPolicy] = None,
        schulhof_room_name: Optional[str] = None,
        schulhof_activity_name: Optional[str] = None,
    ):
        self.db = db
        self.locks = locks
        self.timeout = settings.checkin_timeout_seconds if timeout_seconds is None else timeout_seconds
        self.clock = clock
        self.daily_policy = daily_policy or DailyCheckoutPolicy(settings.student_daily_checkout_time)
        self.schulhof_room_name = schulhof_room_name or settings.schulhof_room_name
        self.schulhof_activity_name = schulhof_activity_name or settings.schulhof_activity_name

    def process(self, tag_id: str, room_id: Optional[int], device: Device,
                actor_staff_id: Optional[int] = None):
        """Handle one scan. Returns a CheckinResult, or a SupervisorResult for staff tags."""
        deadline = Deadline(self.timeout)
        store = ActiveStore(self.db, deadline)

        person = store.find_person_by_tag(tag_id)
        if person is None:
            logger.warning("Unknown RFID tag %s on device %s", tag_id, device.device_id)
            raise TagNotFound()

        if person.student is None:
            if person.staff is not None:
                toggle = SupervisorToggle(self.db, self.locks, deadline, self.clock)
                return toggle.toggle(person, person.staff, device)
            raise NotAStudent("RFID tag not assigned to student or staff")

        target_room: Optional[Room] = None
        if room_id is not None:
            target_room = store.get_room(room_id)
            if target_room is None:
                raise RoomNotFound()

        student = person.student
        keys = [f"student:{student.id}"]
        if target_room is not None and target_room.name == self.schulhof_room_name:
            keys.append(f"room:{target_room.id}")

        with self._hold(keys, deadline):
            # Start from a clean snapshot so a scan that waited sees the previous one.
            self.db.rollback()
            try:
                result = self._apply(store, student, target_room, device, actor_staff_id)
                deadline.check()
                self.db.commit()
            except DomainError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error("Check-in transaction for student %d failed: %s", student.id, exc)
                raise InternalError("check-in transaction failed") from exc

        logger.info("Student %d %s (room=%s, visit=%d)",
                    result.student_id, result.action, result.room_name, result.visit_id)
        return result

    def _hold(self, keys: List[str], deadline: Deadline):
        stack = ExitStack()
        try:
            for key in keys:
                stack.enter_context(self.locks.hold(key, timeout=deadline.remaining()))
        except BaseException:
            stack.close()
            raise
        return stack

    # ─── Transaction body ─────────────────────────────────────────────────────

    def _apply(self, store: ActiveStore, student: Student, target_room: Optional[Room],
               device: Device, actor_staff_id: Optional[int]) -> CheckinResult:
        now = self.clock()
        person: Person = student.person

        current = store.get_student_current_visit(student.id)
        current_group: Optional[ActiveGroup] = current.active_group if current else None
        state = ScanState(
            checked_in=current is not None,
            current_room_id=current_group.room_id if current_group else None,
        )
        action = decide_action(state, target_room.id if target_room else None)
        previous_room = current_group.room.name if current_group and current_group.room else None

        closed_visit: Optional[Visit] = None
        if action in (Action.CHECK_OUT, Action.TRANSFER):
            closed_visit = store.end_visit(current.id, at=now)
            self._cancel_pending_checkout(store, student.id, actor_staff_id)

        new_visit_id: Optional[int] = None
        target_group: Optional[ActiveGroup] = None
        if action in (Action.CHECK_IN, Action.TRANSFER):
            target_group = self._resolve_group(store, target_room, now)
            self._check_capacity(store, target_room, target_group)
            new_visit_id = store.create_visit(student.id, target_group.id, entry_time=now)

        if target_room is not None:
            self._touch_device_session(store, target_room.id, device)

        if action == Action.CHECK_OUT:
            response_action = CHECKED_OUT
            if self.daily_policy.applies(student, closed_visit):
                response_action = CHECKED_OUT_DAILY
            room_name = previous_room or (target_room.name if target_room else "")
            visit_id = closed_visit.id
        elif action == Action.TRANSFER and previous_room and previous_room != target_room.name:
            response_action = TRANSFERRED
            room_name = target_room.name
            visit_id = new_visit_id
        else:
            response_action = CHECKED_IN
            room_name = target_room.name
            visit_id = new_visit_id

        result = CheckinResult(
            student_id=student.id,
            student_name=person.full_name,
            action=response_action,
            visit_id=visit_id,
            room_name=room_name,
            processed_at=now,
            message=greeting(response_action, person.first_name, previous_room, room_name),
            previous_room=previous_room if response_action == TRANSFERRED else None,
        )
        result.events = self._build_events(student, result, current_group, target_group, now)
        return result

    def _resolve_group(self, store: ActiveStore, room: Room, now: datetime) -> ActiveGroup:
        groups = store.find_active_groups_by_room(room.id)
        if groups:
            if len(groups) > 1:
                logger.warning("Room %d has %d running active groups; using lowest id %d",
                               room.id, len(groups), groups[0].id)
            return groups[0]

        if room.name != self.schulhof_room_name:
            logger.warning("No active group in room %d (%s)", room.id, room.name)
            raise NoActiveGroupInRoom("no active groups in specified room")

        activity = self._schulhof_activity(store, room)
        group_id = store.create_active_group(activity.id, room.id, start_time=now)
        logger.info("Auto-created Schulhof active group %d in room %d", group_id, room.id)
        return store.get_active_group(group_id)

    def _schulhof_activity(self, store: ActiveStore, room: Room) -> Activity:
        activity = store.find_activity_by_name(self.schulhof_activity_name)
        if activity is not None:
            return activity

        category = store.find_category_by_name(self.schulhof_activity_name)
        if category is None:
            category = ActivityCategory(name=self.schulhof_activity_name,
                                        description="Freies Spielen auf dem Schulhof")
            self.db.add(category)
            self.db.flush()
        activity = Activity(
            name=self.schulhof_activity_name,
            category_id=category.id,
            is_open=True,
            max_participants=SCHULHOF_MAX_PARTICIPANTS,
            planned_room_id=room.id,
        )
        self.db.add(activity)
        self.db.flush()
        logger.info("Created missing Schulhof activity %d", activity.id)
        return activity

    def _check_capacity(self, store: ActiveStore, room: Room, group: ActiveGroup) -> None:
        if room.capacity:
            current = store.count_open_visits_in_room(room.id)
            if current >= room.capacity:
                raise CapacityExceeded.for_room(room.id, room.name, current, room.capacity)
        activity = group.activity
        if activity is not None and activity.max_participants:
            current = store.count_open_visits_in_group(group.id)
            if current >= activity.max_participants:
                raise CapacityExceeded.for_activity(activity.id, activity.name, current,
                                                    activity.max_participants)

    def _cancel_pending_checkout(self, store: ActiveStore, student_id: int,
                                 actor_staff_id: Optional[int]) -> None:
        try:
            pending = store.get_pending_scheduled_checkout(student_id)
            if pending is None:
                return
            store.cancel_scheduled_checkout(pending.id, actor_staff_id)
            logger.info("Cancelled pending scheduled checkout %d for student %d", pending.id, student_id)
        except DomainError as exc:
            logger.warning("Could not cancel scheduled checkout for student %d: %s", student_id, exc)

    def _touch_device_session(self, store: ActiveStore, room_id: int, device: Device) -> None:
        for group in store.find_active_groups_by_room(room_id):
            if group.device_id == device.id:
                try:
                    store.update_session_activity(group.id)
                except DomainError as exc:
                    logger.warning("Failed to update session activity for group %d: %s", group.id, exc)
                break

    # ─── Events ───────────────────────────────────────────────────────────────

    def _build_events(self, student: Student, result: CheckinResult,
                      source: Optional[ActiveGroup], target: Optional[ActiveGroup],
                      now: datetime) -> List[Event]:
        payload = {
            "student_id":   result.student_id,
            "student_name": result.student_name,
            "action":       result.action,
            "visit_id":     result.visit_id,
            "room_name":    result.room_name,
            "group_id":     student.group_id,
        }
        if result.action in (CHECKED_OUT, CHECKED_OUT_DAILY):
            event_type, primary = EventType.STUDENT_CHECKOUT, source
        elif result.action == TRANSFERRED:
            event_type, primary = EventType.STUDENT_TRANSFER, target
            payload["previous_room"] = result.previous_room
            payload["previous_active_group_id"] = source.id if source else None
        else:
            event_type, primary = EventType.STUDENT_CHECKIN, target
        payload["active_group_id"] = primary.id if primary else None

        event = Event.create(event_type, group_topic(primary.id), payload, emitted_at=now)
        events = [event]
        if event_type == EventType.STUDENT_TRANSFER and source is not None and source.id != primary.id:
            events.append(event.for_topic(group_topic(source.id)))
        if student.group_id is not None:
            events.append(event.for_topic(edu_topic(student.group_id)))
        return events
