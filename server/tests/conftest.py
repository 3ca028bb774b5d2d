"""
OGS Manager — Test fixtures
Run from the repository root or the server/ directory:
    python -m pytest server/tests -v
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import issue_staff_token
from database import Base, build_engine, get_db, init_db
from models.db_models import (
    Activity, ActivityCategory, ActiveGroup, Device, EducationalGroup,
    EducationalGroupTeacher, Person, Room, Staff, Student,
)
from realtime.hub import Hub


DEVICE_KEY = "device-key-1"


@pytest.fixture
def engine():
    eng = build_engine("sqlite:///:memory:", poolclass=StaticPool)
    init_db(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def seed_world(session) -> SimpleNamespace:
    """
    Raum 7 (group bound to device D1), Raum 9 (group, no device),
    Schulhof (no group yet), Turnhalle (no group). Two students, one teacher.
    Everything is committed so engine rollbacks never lose fixtures.
    """
    room7 = Room(name="Raum 7", building="A", floor=1)
    room9 = Room(name="Raum 9", building="A", floor=2)
    schulhof = Room(name="Schulhof", category="outdoor")
    gym = Room(name="Turnhalle", building="B")
    session.add_all([room7, room9, schulhof, gym])
    session.flush()

    category = ActivityCategory(name="Kreativ")
    session.add(category)
    session.flush()
    crafts = Activity(name="Basteln", category_id=category.id, planned_room_id=room7.id)
    reading = Activity(name="Lesen", category_id=category.id, planned_room_id=room9.id)
    session.add_all([crafts, reading])
    session.flush()

    device = Device(device_id="D1", api_key=DEVICE_KEY, name="Reader Raum 7")
    session.add(device)
    session.flush()

    group7 = ActiveGroup(activity_id=crafts.id, room_id=room7.id, device_id=device.id)
    group9 = ActiveGroup(activity_id=reading.id, room_id=room9.id)
    session.add_all([group7, group9])
    session.flush()

    edu = EducationalGroup(name="Sonnengruppe")
    session.add(edu)
    session.flush()

    anna = Person(first_name="Anna", last_name="Schmidt", tag_id="TAG_A")
    ben = Person(first_name="Ben", last_name="Keller", tag_id="TAG_B")
    clara = Person(first_name="Clara", last_name="Weber", tag_id="STAFF_1")
    session.add_all([anna, ben, clara])
    session.flush()

    student_a = Student(person_id=anna.id, group_id=edu.id, school_class="2b",
                        guardian_email="eltern.schmidt@example.org")
    student_b = Student(person_id=ben.id, school_class="3a")
    teacher = Staff(person_id=clara.id, role="admin", pin="1234")
    session.add_all([student_a, student_b, teacher])
    session.flush()

    session.add(EducationalGroupTeacher(group_id=edu.id, staff_id=teacher.id))
    session.commit()

    return SimpleNamespace(
        room7=room7.id, room9=room9.id, schulhof=schulhof.id, gym=gym.id,
        crafts=crafts.id, reading=reading.id, category=category.id,
        device=device.id, group7=group7.id, group9=group9.id, edu=edu.id,
        student_a=student_a.id, student_b=student_b.id, staff=teacher.id,
    )


@pytest.fixture
def world(db_session):
    return seed_world(db_session)


@pytest.fixture
def device(db_session, world):
    return db_session.get(Device, world.device)


@pytest.fixture
def hub():
    return Hub()


@pytest.fixture
def app(db_session, hub):
    from main import create_app

    application = create_app(hub=hub, start_background=False)

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app):
    # No context manager: lifespan (init_db on the real database, scheduler) stays off.
    return TestClient(app)


@pytest.fixture
def device_headers():
    return {"X-Device-Key": DEVICE_KEY}


@pytest.fixture
def staff_headers(world):
    return {"Authorization": f"Bearer {issue_staff_token(world.staff)}"}
