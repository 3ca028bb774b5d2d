"""
OGS Manager — Student Location Routes
Where a student is right now, resolved with the bulk snapshot helpers.
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from active_store import ActiveStore
from auth import require_staff
from database import get_db
from errors import InvalidRequest, NotFound
from models.db_models import Staff
from models.schemas import StudentLocation

logger = logging.getLogger("ogs.routes.students")
router = APIRouter(prefix="/api/students", tags=["students"])

MAX_BULK_IDS = 200


def resolve_locations(store: ActiveStore, student_ids: List[int]) -> List[StudentLocation]:
    """A fixed number of queries regardless of how many students are asked for."""
    students = store.get_students(student_ids)
    visits = store.get_students_current_visits(students.keys())
    groups = store.get_active_groups_by_ids(v.active_group_id for v in visits.values())
    statuses = store.get_students_attendance_statuses(students.keys())

    locations = []
    for sid in student_ids:
        student = students.get(sid)
        if student is None:
            continue
        visit = visits.get(sid)
        group = groups.get(visit.active_group_id) if visit else None
        locations.append(StudentLocation(
            student_id=sid,
            student_name=student.person.full_name,
            attendance=statuses.get(sid, "absent"),
            visit_id=visit.id if visit else None,
            active_group_id=group.id if group else None,
            room_id=group.room_id if group else None,
            room_name=group.room.name if group and group.room else None,
            entry_time=visit.entry_time if visit else None,
        ))
    return locations


@router.get("/locations", response_model=List[StudentLocation])
def student_locations(
    ids: str = Query(..., description="Comma-separated student ids"),
    db: Session = Depends(get_db),
    staff: Staff = Depends(require_staff),
):
    try:
        student_ids = [int(part) for part in ids.split(",") if part.strip()]
    except ValueError:
        raise InvalidRequest("ids must be comma-separated integers")
    if len(student_ids) > MAX_BULK_IDS:
        raise InvalidRequest(f"at most {MAX_BULK_IDS} ids per request")
    return resolve_locations(ActiveStore(db), student_ids)


@router.get("/{student_id}/location", response_model=StudentLocation)
def student_location(
    student_id: int,
    db: Session = Depends(get_db),
    staff: Staff = Depends(require_staff),
):
    found = resolve_locations(ActiveStore(db), [student_id])
    if not found:
        raise NotFound("student not found")
    return found[0]
