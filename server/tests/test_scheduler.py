"""
OGS Manager — Tests: scheduled checkouts and abandoned-session cleanup
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

from active_store import ActiveStore
from checkin.engine import CheckinEngine
from concurrency import KeyedLocks
from database import utcnow
from mailer.dispatcher import Dispatcher
from mailer.transport import MockMailer, TemplateRegistry
from models.db_models import ActiveGroup, ScheduledCheckout, Supervision, Visit
from realtime.events import EventType, edu_topic, group_topic
from realtime.hub import Client, Hub
from scheduler import SCHEDULED_CHECKOUT_TEMPLATE, BackgroundJobs

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


@pytest.fixture
def jobs(session_factory):
    return BackgroundJobs(Hub(), dispatcher=None, session_factory=session_factory, locks=KeyedLocks())


def schedule(db, student_id, minutes_from_now, reason=None):
    sc = ScheduledCheckout(student_id=student_id,
                           scheduled_for=utcnow() + timedelta(minutes=minutes_from_now),
                           reason=reason)
    db.add(sc)
    db.commit()
    return sc.id


class TestScheduledCheckouts:
    def test_due_checkout_closes_visit_and_notifies(self, jobs, db_session, world, device):
        visit_id = CheckinEngine(db_session).process("TAG_A", world.room7, device).visit_id
        sc_id = schedule(db_session, world.student_a, -1, reason="Arzttermin")

        outcome = jobs.execute_due_checkouts(utcnow())

        assert outcome.processed == 1
        assert [e.topic for e in outcome.events] == [group_topic(world.group7), edu_topic(world.edu)]
        assert all(e.type == EventType.STUDENT_CHECKOUT for e in outcome.events)
        assert outcome.events[0].payload["scheduled_checkout_id"] == sc_id

        assert len(outcome.emails) == 1
        email = outcome.emails[0]
        assert email.message.to.address == "eltern.schmidt@example.org"
        assert email.message.template == SCHEDULED_CHECKOUT_TEMPLATE
        assert email.message.content["reason"] == "Arzttermin"
        assert email.metadata.type == "scheduled_checkout"
        assert email.metadata.reference_id == sc_id

        db_session.expire_all()
        assert db_session.get(Visit, visit_id).exit_time is not None
        sc = db_session.get(ScheduledCheckout, sc_id)
        assert sc.status == "executed"
        assert sc.executed_at is not None

    def test_future_checkout_is_left_alone(self, jobs, db_session, world, device):
        CheckinEngine(db_session).process("TAG_A", world.room7, device)
        sc_id = schedule(db_session, world.student_a, 30)

        assert jobs.execute_due_checkouts(utcnow()).processed == 0
        db_session.expire_all()
        assert db_session.get(ScheduledCheckout, sc_id).status == "pending"

    def test_student_without_open_visit(self, jobs, db_session, world):
        sc_id = schedule(db_session, world.student_b, -5)

        outcome = jobs.execute_due_checkouts(utcnow())

        assert outcome.processed == 1
        assert outcome.events == []
        assert outcome.emails == []
        db_session.expire_all()
        assert db_session.get(ScheduledCheckout, sc_id).status == "executed"

    def test_no_email_without_guardian(self, jobs, db_session, world, device):
        CheckinEngine(db_session).process("TAG_B", world.room9, device)
        schedule(db_session, world.student_b, -1)

        outcome = jobs.execute_due_checkouts(utcnow())

        assert outcome.processed == 1
        assert [e.topic for e in outcome.events] == [group_topic(world.group9)]
        assert outcome.emails == []

    def test_vanished_row_does_not_abort_batch(self, jobs, db_session, world, device, monkeypatch):
        CheckinEngine(db_session).process("TAG_A", world.room7, device)
        sc_id = schedule(db_session, world.student_a, -1)
        real_find = ActiveStore.find_due_scheduled_checkouts
        monkeypatch.setattr(
            ActiveStore, "find_due_scheduled_checkouts",
            lambda store, now: [SimpleNamespace(id=9999)] + real_find(store, now),
        )

        outcome = jobs.execute_due_checkouts(utcnow())

        assert outcome.processed == 1
        db_session.expire_all()
        assert db_session.get(ScheduledCheckout, sc_id).status == "executed"

    @pytest.mark.asyncio
    async def test_job_publishes_events_and_sends_mail(self, session_factory, db_session, world, device):
        hub = Hub()
        watcher = Client()
        hub.register(watcher, [group_topic(world.group7)])
        mailer = MockMailer(TemplateRegistry(TEMPLATES_DIR))
        dispatcher = Dispatcher(mailer)
        jobs = BackgroundJobs(hub, dispatcher, session_factory=session_factory, locks=KeyedLocks())

        CheckinEngine(db_session).process("TAG_A", world.room7, device)
        schedule(db_session, world.student_a, -1)

        assert await jobs.run_scheduled_checkouts() == 1
        await dispatcher.drain(timeout=5)

        assert watcher.delivered == 1
        assert len(mailer.sent) == 1
        assert mailer.sent[0].to.address == "eltern.schmidt@example.org"


class TestAbandonedSessions:
    def test_idle_group_is_ended(self, jobs, db_session, world, device):
        now = utcnow()
        db_session.get(ActiveGroup, world.group9).last_activity = now - timedelta(hours=3)
        db_session.commit()
        CheckinEngine(db_session).process("TAG_B", world.room9, device)
        db_session.query(Visit).update({Visit.entry_time: now - timedelta(hours=3)})
        db_session.add(Supervision(staff_id=world.staff, active_group_id=world.group9))
        db_session.commit()

        outcome = jobs.end_stale_sessions(now)

        assert outcome.processed == 1
        event = outcome.events[0]
        assert event.type == EventType.GROUP_ENDED
        assert event.topic == group_topic(world.group9)
        assert event.payload["reason"] == "inactive"
        assert event.payload["closed_visits"] == 1

        db_session.expire_all()
        assert db_session.get(ActiveGroup, world.group9).end_time is not None
        assert db_session.get(ActiveGroup, world.group7).end_time is None
        assert db_session.query(Visit).filter(Visit.exit_time.is_(None)).count() == 0
        assert db_session.query(Supervision).filter(Supervision.end_time.is_(None)).count() == 0

    def test_recent_visit_keeps_group_alive(self, jobs, db_session, world, device):
        now = utcnow()
        db_session.get(ActiveGroup, world.group9).last_activity = now - timedelta(hours=3)
        db_session.commit()
        CheckinEngine(db_session).process("TAG_B", world.room9, device)
        # device D1 is not bound to group 9, so the scan did not touch last_activity
        db_session.expire_all()
        assert db_session.get(ActiveGroup, world.group9).last_activity < now - timedelta(hours=2)

        assert jobs.end_stale_sessions(now).processed == 0

    def test_active_groups_are_kept(self, jobs, world):
        assert jobs.end_stale_sessions(utcnow()).processed == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, jobs):
        jobs.start()
        try:
            assert jobs.running
            assert {j.id for j in jobs.scheduler.get_jobs()} == {"scheduled_checkouts", "session_cleanup"}
        finally:
            jobs.shutdown()
        assert not jobs.running
        # a second call is a no-op
        jobs.shutdown()
        assert not jobs.running

    def test_shutdown_when_not_started(self, jobs):
        jobs.shutdown()
        assert not jobs.running
