"""
OGS Manager — Active-State Store
Repository over ActiveGroup, Visit, Supervision and ScheduledCheckout.
Writers flush but never commit; the caller owns the transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import exists, func
from sqlalchemy.orm import Session, joinedload

from concurrency import Deadline
from database import utcnow
from errors import EntityEnded, NotFound
from models.db_models import (
    Activity, ActivityCategory, ActiveGroup, EducationalGroupTeacher, Person, Room,
    ScheduledCheckout, Student, Supervision, Visit,
)

logger = logging.getLogger("ogs.active_store")

# Attendance states reported by the snapshot helper
CHECKED_IN  = "checked_in"
CHECKED_OUT = "checked_out"
ABSENT      = "absent"


class ActiveStore:
    """Every call checks the ambient deadline before touching the database."""

    def __init__(self, db: Session, deadline: Optional[Deadline] = None):
        self.db = db
        self.deadline = deadline or Deadline.none()

    def _q(self, *entities):
        self.deadline.check()
        return self.db.query(*entities)

    # ─── Lookups ──────────────────────────────────────────────────────────────

    def find_person_by_tag(self, tag_id: str) -> Optional[Person]:
        return (
            self._q(Person)
            .options(joinedload(Person.student), joinedload(Person.staff))
            .filter(Person.tag_id == tag_id)
            .first()
        )

    def get_room(self, room_id: int) -> Optional[Room]:
        return self._q(Room).filter(Room.id == room_id).first()

    def find_activity_by_name(self, name: str) -> Optional[Activity]:
        return self._q(Activity).filter(Activity.name == name).order_by(Activity.id).first()

    def find_category_by_name(self, name: str) -> Optional[ActivityCategory]:
        return self._q(ActivityCategory).filter(ActivityCategory.name == name).first()

    def get_active_group(self, group_id: int) -> Optional[ActiveGroup]:
        return (
            self._q(ActiveGroup)
            .options(joinedload(ActiveGroup.room), joinedload(ActiveGroup.activity))
            .filter(ActiveGroup.id == group_id)
            .first()
        )

    # ─── Visits ───────────────────────────────────────────────────────────────

    def get_student_current_visit(self, student_id: int) -> Optional[Visit]:
        return (
            self._q(Visit)
            .options(joinedload(Visit.active_group).joinedload(ActiveGroup.room))
            .filter(Visit.student_id == student_id, Visit.exit_time.is_(None))
            .first()
        )

    def create_visit(self, student_id: int, active_group_id: int,
                     entry_time: Optional[datetime] = None) -> int:
        self.deadline.check()
        visit = Visit(student_id=student_id, active_group_id=active_group_id,
                      entry_time=entry_time or utcnow())
        self.db.add(visit)
        self.db.flush()
        return visit.id

    def end_visit(self, visit_id: int, at: Optional[datetime] = None) -> Visit:
        visit = self._q(Visit).filter(Visit.id == visit_id).first()
        if visit is None:
            raise NotFound(f"visit {visit_id} not found")
        if visit.exit_time is not None:
            raise EntityEnded(f"visit {visit_id} has already ended")
        visit.exit_time = at or utcnow()
        self.db.flush()
        return visit

    def count_open_visits_in_group(self, active_group_id: int) -> int:
        return (
            self._q(func.count(Visit.id))
            .filter(Visit.active_group_id == active_group_id, Visit.exit_time.is_(None))
            .scalar()
        ) or 0

    def count_open_visits_in_room(self, room_id: int) -> int:
        return (
            self._q(func.count(Visit.id))
            .join(ActiveGroup, ActiveGroup.id == Visit.active_group_id)
            .filter(
                ActiveGroup.room_id == room_id,
                ActiveGroup.end_time.is_(None),
                Visit.exit_time.is_(None),
            )
            .scalar()
        ) or 0

    # ─── Active groups ────────────────────────────────────────────────────────

    def find_active_groups_by_room(self, room_id: int) -> List[ActiveGroup]:
        return (
            self._q(ActiveGroup)
            .options(joinedload(ActiveGroup.room), joinedload(ActiveGroup.activity))
            .filter(ActiveGroup.room_id == room_id, ActiveGroup.end_time.is_(None))
            .order_by(ActiveGroup.id)
            .all()
        )

    def find_running_group_by_device(self, device_pk: int) -> Optional[ActiveGroup]:
        return (
            self._q(ActiveGroup)
            .options(joinedload(ActiveGroup.room))
            .filter(ActiveGroup.device_id == device_pk, ActiveGroup.end_time.is_(None))
            .order_by(ActiveGroup.id)
            .first()
        )

    def list_running_groups(self) -> List[ActiveGroup]:
        return (
            self._q(ActiveGroup)
            .options(joinedload(ActiveGroup.room), joinedload(ActiveGroup.activity))
            .filter(ActiveGroup.end_time.is_(None))
            .order_by(ActiveGroup.id)
            .all()
        )

    def create_active_group(self, activity_id: int, room_id: int,
                            device_pk: Optional[int] = None,
                            start_time: Optional[datetime] = None) -> int:
        self.deadline.check()
        now = start_time or utcnow()
        group = ActiveGroup(activity_id=activity_id, room_id=room_id, device_id=device_pk,
                            start_time=now, last_activity=now)
        self.db.add(group)
        self.db.flush()
        return group.id

    def end_active_group(self, group_id: int, at: Optional[datetime] = None) -> List[Visit]:
        """End the group and close its open visits and supervisions. Returns the closed visits."""
        group = self._q(ActiveGroup).filter(ActiveGroup.id == group_id).first()
        if group is None:
            raise NotFound(f"active group {group_id} not found")
        if group.end_time is not None:
            raise EntityEnded(f"active group {group_id} has already ended")
        now = at or utcnow()
        group.end_time = now

        closed = (
            self._q(Visit)
            .filter(Visit.active_group_id == group_id, Visit.exit_time.is_(None))
            .all()
        )
        for visit in closed:
            visit.exit_time = now
        for sup in (
            self._q(Supervision)
            .filter(Supervision.active_group_id == group_id, Supervision.end_time.is_(None))
            .all()
        ):
            sup.end_time = now
        self.db.flush()
        return closed

    def update_session_activity(self, active_group_id: int, at: Optional[datetime] = None) -> None:
        updated = (
            self._q(ActiveGroup)
            .filter(ActiveGroup.id == active_group_id, ActiveGroup.end_time.is_(None))
            .update({ActiveGroup.last_activity: at or utcnow()}, synchronize_session="fetch")
        )
        if not updated:
            raise NotFound(f"running active group {active_group_id} not found")

    def find_stale_active_groups(self, idle_since: datetime) -> List[ActiveGroup]:
        """Running groups with no session activity and no new visit since idle_since."""
        recent_visit = exists().where(
            Visit.active_group_id == ActiveGroup.id,
            Visit.entry_time >= idle_since,
        )
        return (
            self._q(ActiveGroup)
            .options(joinedload(ActiveGroup.room))
            .filter(
                ActiveGroup.end_time.is_(None),
                ActiveGroup.last_activity < idle_since,
                ~recent_visit,
            )
            .order_by(ActiveGroup.id)
            .all()
        )

    # ─── Supervisions ─────────────────────────────────────────────────────────

    def find_staff_active_supervisions(self, staff_id: int) -> List[Supervision]:
        """Open supervisions of running groups only."""
        return (
            self._q(Supervision)
            .join(ActiveGroup, ActiveGroup.id == Supervision.active_group_id)
            .filter(
                Supervision.staff_id == staff_id,
                Supervision.end_time.is_(None),
                ActiveGroup.end_time.is_(None),
            )
            .order_by(Supervision.id)
            .all()
        )

    def find_staff_educational_group_ids(self, staff_id: int) -> List[int]:
        rows = (
            self._q(EducationalGroupTeacher.group_id)
            .filter(EducationalGroupTeacher.staff_id == staff_id)
            .distinct()
            .order_by(EducationalGroupTeacher.group_id)
            .all()
        )
        return [r[0] for r in rows]

    def find_open_supervision(self, staff_id: int, active_group_id: int) -> Optional[Supervision]:
        return (
            self._q(Supervision)
            .filter(
                Supervision.staff_id == staff_id,
                Supervision.active_group_id == active_group_id,
                Supervision.end_time.is_(None),
            )
            .first()
        )

    def create_supervision(self, staff_id: int, active_group_id: int) -> Supervision:
        self.deadline.check()
        sup = Supervision(staff_id=staff_id, active_group_id=active_group_id, start_time=utcnow())
        self.db.add(sup)
        self.db.flush()
        return sup

    def end_supervision(self, supervision: Supervision) -> None:
        if supervision.end_time is not None:
            raise EntityEnded(f"supervision {supervision.id} has already ended")
        supervision.end_time = utcnow()
        self.db.flush()

    # ─── Scheduled checkouts ──────────────────────────────────────────────────

    def get_pending_scheduled_checkout(self, student_id: int) -> Optional[ScheduledCheckout]:
        return (
            self._q(ScheduledCheckout)
            .filter(ScheduledCheckout.student_id == student_id, ScheduledCheckout.status == "pending")
            .order_by(ScheduledCheckout.scheduled_for)
            .first()
        )

    def create_scheduled_checkout(self, student_id: int, scheduled_for: datetime,
                                  scheduled_by: Optional[int] = None,
                                  reason: Optional[str] = None) -> ScheduledCheckout:
        self.deadline.check()
        sc = ScheduledCheckout(student_id=student_id, scheduled_for=scheduled_for,
                               scheduled_by=scheduled_by, reason=reason, status="pending")
        self.db.add(sc)
        self.db.flush()
        return sc

    def cancel_scheduled_checkout(self, checkout_id: int, actor_id: Optional[int]) -> ScheduledCheckout:
        sc = self._q(ScheduledCheckout).filter(ScheduledCheckout.id == checkout_id).first()
        if sc is None:
            raise NotFound(f"scheduled checkout {checkout_id} not found")
        if sc.status != "pending":
            raise EntityEnded(f"scheduled checkout {checkout_id} is already {sc.status}")
        sc.status = "cancelled"
        sc.cancelled_by = actor_id
        sc.cancelled_at = utcnow()
        self.db.flush()
        return sc

    def find_due_scheduled_checkouts(self, now: datetime) -> List[ScheduledCheckout]:
        return (
            self._q(ScheduledCheckout)
            .filter(ScheduledCheckout.status == "pending", ScheduledCheckout.scheduled_for <= now)
            .order_by(ScheduledCheckout.scheduled_for, ScheduledCheckout.id)
            .all()
        )

    # ─── Bulk snapshots (one query each) ──────────────────────────────────────

    def get_students_current_visits(self, student_ids: Iterable[int]) -> Dict[int, Visit]:
        ids = list(set(student_ids))
        if not ids:
            return {}
        rows = (
            self._q(Visit)
            .filter(Visit.student_id.in_(ids), Visit.exit_time.is_(None))
            .all()
        )
        return {v.student_id: v for v in rows}

    def count_open_visits_by_group(self, group_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(set(group_ids))
        if not ids:
            return {}
        rows = (
            self._q(Visit.active_group_id, func.count(Visit.id))
            .filter(Visit.active_group_id.in_(ids), Visit.exit_time.is_(None))
            .group_by(Visit.active_group_id)
            .all()
        )
        return {gid: count for gid, count in rows}

    def get_active_groups_by_ids(self, group_ids: Iterable[int]) -> Dict[int, ActiveGroup]:
        ids = list(set(group_ids))
        if not ids:
            return {}
        rows = (
            self._q(ActiveGroup)
            .options(joinedload(ActiveGroup.room))
            .filter(ActiveGroup.id.in_(ids))
            .all()
        )
        return {g.id: g for g in rows}

    def get_students_attendance_statuses(self, student_ids: Iterable[int],
                                         day_start: Optional[datetime] = None) -> Dict[int, str]:
        """checked_in with an open visit, checked_out if a visit closed today, else absent."""
        ids = list(set(student_ids))
        if not ids:
            return {}
        if day_start is None:
            day_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        rows = (
            self._q(Visit.student_id, Visit.exit_time)
            .filter(Visit.student_id.in_(ids), Visit.entry_time >= day_start)
            .all()
        )
        statuses = {sid: ABSENT for sid in ids}
        for sid, exit_time in rows:
            if exit_time is None:
                statuses[sid] = CHECKED_IN
            elif statuses[sid] != CHECKED_IN:
                statuses[sid] = CHECKED_OUT
        # an open visit started before today still counts as present
        for sid in self.get_students_current_visits(ids):
            statuses[sid] = CHECKED_IN
        return statuses

    def get_students(self, student_ids: Iterable[int]) -> Dict[int, Student]:
        ids = list(set(student_ids))
        if not ids:
            return {}
        rows = (
            self._q(Student)
            .options(joinedload(Student.person))
            .filter(Student.id.in_(ids))
            .all()
        )
        return {s.id: s for s in rows}
