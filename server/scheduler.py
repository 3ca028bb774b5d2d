"""
OGS Manager — Background Jobs (APScheduler)
Executes due scheduled checkouts and ends abandoned active-group sessions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from active_store import ActiveStore
from concurrency import KeyedLocks, checkin_locks
from config import settings
from database import SessionLocal, to_rfc3339, utcnow
from errors import DomainError
from mailer.dispatcher import DeliveryMetadata, DeliveryRequest, Dispatcher
from mailer.transport import Email, Message, default_sender
from models.db_models import ScheduledCheckout, Student
from realtime.events import Event, EventType, edu_topic, group_topic
from realtime.hub import Hub

logger = logging.getLogger("ogs.scheduler")

SCHEDULED_CHECKOUT_TEMPLATE = "scheduled_checkout.html"
LOCK_TIMEOUT_SECONDS = 5.0


@dataclass
class JobOutcome:
    processed: int = 0
    events: List[Event] = field(default_factory=list)
    emails: List[DeliveryRequest] = field(default_factory=list)


class BackgroundJobs:
    """Owns the AsyncIOScheduler; DB work runs in a worker thread, publishing on the loop."""

    def __init__(
        self,
        hub: Hub,
        dispatcher: Optional[Dispatcher] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        locks: KeyedLocks = checkin_locks,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.hub = hub
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.locks = locks
        self.scheduler = scheduler or AsyncIOScheduler()
        self._started = False

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_scheduled_checkouts,
            trigger=IntervalTrigger(seconds=settings.scheduled_checkout_interval_seconds),
            id="scheduled_checkouts",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.cleanup_abandoned_sessions,
            trigger=IntervalTrigger(minutes=settings.session_cleanup_interval_minutes),
            id="session_cleanup",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._started = True
        logger.info(
            "Background jobs started (checkouts every %ds, cleanup every %dm)",
            settings.scheduled_checkout_interval_seconds,
            settings.session_cleanup_interval_minutes,
        )

    def shutdown(self) -> None:
        # AsyncIOScheduler finishes stopping on a later loop turn; track our own state.
        if self._started:
            self._started = False
            self.scheduler.shutdown(wait=False)
            logger.info("Background jobs stopped")

    @property
    def running(self) -> bool:
        return self._started

    # ─── Jobs ─────────────────────────────────────────────────────────────────

    async def run_scheduled_checkouts(self, now: Optional[datetime] = None) -> int:
        outcome = await asyncio.to_thread(self.execute_due_checkouts, now or utcnow())
        self._publish(outcome)
        return outcome.processed

    async def cleanup_abandoned_sessions(self, now: Optional[datetime] = None) -> int:
        outcome = await asyncio.to_thread(self.end_stale_sessions, now or utcnow())
        self._publish(outcome)
        return outcome.processed

    def _publish(self, outcome: JobOutcome) -> None:
        self.hub.broadcast_all(outcome.events)
        if self.dispatcher is None:
            return
        for request in outcome.emails:
            self.dispatcher.dispatch(request)

    # ─── Scheduled checkouts ──────────────────────────────────────────────────

    def execute_due_checkouts(self, now: datetime) -> JobOutcome:
        outcome = JobOutcome()
        db = self.session_factory()
        try:
            store = ActiveStore(db)
            due_ids = [sc.id for sc in store.find_due_scheduled_checkouts(now)]
            for checkout_id in due_ids:
                try:
                    self._execute_one(db, store, checkout_id, now, outcome)
                except (DomainError, SQLAlchemyError) as exc:
                    db.rollback()
                    logger.error("Scheduled checkout %d failed: %s", checkout_id, exc)
        finally:
            db.close()
        if outcome.processed:
            logger.info("Executed %d scheduled checkout(s)", outcome.processed)
        return outcome

    def _execute_one(self, db: Session, store: ActiveStore, checkout_id: int,
                     now: datetime, outcome: JobOutcome) -> None:
        sc = db.query(ScheduledCheckout).filter(ScheduledCheckout.id == checkout_id).first()
        if sc is None:
            return
        with self.locks.hold(f"student:{sc.student_id}", timeout=LOCK_TIMEOUT_SECONDS):
            db.rollback()
            sc = db.query(ScheduledCheckout).filter(ScheduledCheckout.id == checkout_id).first()
            if sc is None or sc.status != "pending":
                return
            student = (
                db.query(Student)
                .options(joinedload(Student.person))
                .filter(Student.id == sc.student_id)
                .first()
            )
            visit = store.get_student_current_visit(sc.student_id)
            group = visit.active_group if visit else None
            if visit is not None:
                store.end_visit(visit.id, at=now)
            sc.status = "executed"
            sc.executed_at = now
            db.commit()

        outcome.processed += 1
        if visit is None:
            logger.info("Scheduled checkout %d: student %d had no open visit", sc.id, sc.student_id)
            return

        person = student.person
        room_name = group.room.name if group and group.room else ""
        event = Event.create(EventType.STUDENT_CHECKOUT, group_topic(group.id), {
            "student_id":            student.id,
            "student_name":          person.full_name,
            "action":                "checked_out",
            "visit_id":              visit.id,
            "room_name":             room_name,
            "active_group_id":       group.id,
            "group_id":              student.group_id,
            "scheduled_checkout_id": sc.id,
        }, emitted_at=now)
        outcome.events.append(event)
        if student.group_id is not None:
            outcome.events.append(event.for_topic(edu_topic(student.group_id)))

        if student.guardian_email:
            outcome.emails.append(DeliveryRequest(
                message=Message(
                    sender=default_sender(settings),
                    to=Email(address=student.guardian_email),
                    subject=f"{person.first_name} wurde abgemeldet",
                    template=SCHEDULED_CHECKOUT_TEMPLATE,
                    content={
                        "student_name":  person.full_name,
                        "first_name":    person.first_name,
                        "room_name":     room_name,
                        "checkout_time": to_rfc3339(now),
                        "reason":        sc.reason or "",
                    },
                ),
                metadata=DeliveryMetadata(
                    type="scheduled_checkout",
                    reference_id=sc.id,
                    recipient=student.guardian_email,
                ),
            ))

    # ─── Abandoned sessions ───────────────────────────────────────────────────

    def end_stale_sessions(self, now: datetime) -> JobOutcome:
        outcome = JobOutcome()
        idle_since = now - timedelta(minutes=settings.session_timeout_minutes)
        db = self.session_factory()
        try:
            store = ActiveStore(db)
            for group in store.find_stale_active_groups(idle_since):
                room_name = group.room.name if group.room else ""
                try:
                    closed = store.end_active_group(group.id, at=now)
                    db.commit()
                except (DomainError, SQLAlchemyError) as exc:
                    db.rollback()
                    logger.error("Could not end abandoned group %d: %s", group.id, exc)
                    continue
                outcome.processed += 1
                outcome.events.append(Event.create(EventType.GROUP_ENDED, group_topic(group.id), {
                    "active_group_id": group.id,
                    "room_name":       room_name,
                    "closed_visits":   len(closed),
                    "reason":          "inactive",
                }, emitted_at=now))
                logger.info("Ended abandoned group %d (%s), closed %d visit(s)",
                            group.id, room_name, len(closed))
        finally:
            db.close()
        return outcome
