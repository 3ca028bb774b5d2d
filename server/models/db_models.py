"""
OGS Manager — SQLAlchemy ORM Models
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index,
    Integer, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship

from database import Base, utcnow


# ─── People ──────────────────────────────────────────────────────────────────

class Person(Base):
    __tablename__ = "persons"

    id         = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name  = Column(String(100), nullable=False)
    tag_id     = Column(String(64), nullable=True, unique=True, index=True)   # RFID UID
    created_at = Column(DateTime, default=utcnow, nullable=False)

    student = relationship("Student", back_populates="person", uselist=False)
    staff   = relationship("Staff",   back_populates="person", uselist=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Student(Base):
    __tablename__ = "students"

    id             = Column(Integer, primary_key=True, index=True)
    person_id      = Column(Integer, ForeignKey("persons.id", ondelete="CASCADE"), nullable=False, unique=True)
    group_id       = Column(Integer, ForeignKey("educational_groups.id"), nullable=True, index=True)
    school_class   = Column(String(20), nullable=True)
    guardian_email = Column(String(200), nullable=True)

    person = relationship("Person", back_populates="student")
    group  = relationship("EducationalGroup", back_populates="students")
    visits = relationship("Visit", back_populates="student")


class Staff(Base):
    __tablename__ = "staff"

    id        = Column(Integer, primary_key=True, index=True)
    person_id = Column(Integer, ForeignKey("persons.id", ondelete="CASCADE"), nullable=False, unique=True)
    role      = Column(String(50), nullable=False, default="supervisor")
    pin       = Column(String(100), nullable=True)

    person       = relationship("Person", back_populates="staff")
    supervisions = relationship("Supervision", back_populates="staff")


# ─── Educational groups (OGS groups) ─────────────────────────────────────────

class EducationalGroup(Base):
    __tablename__ = "educational_groups"

    id      = Column(Integer, primary_key=True, index=True)
    name    = Column(String(100), nullable=False, unique=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True)         # home room

    room     = relationship("Room")
    students = relationship("Student", back_populates="group")
    teachers = relationship("EducationalGroupTeacher", back_populates="group", cascade="all, delete-orphan")


class EducationalGroupTeacher(Base):
    __tablename__ = "educational_group_teachers"
    __table_args__ = (UniqueConstraint("group_id", "staff_id", name="uq_edu_group_staff"),)

    id       = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("educational_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    staff_id = Column(Integer, ForeignKey("staff.id", ondelete="CASCADE"), nullable=False, index=True)

    group = relationship("EducationalGroup", back_populates="teachers")


# ─── Facilities & activities ─────────────────────────────────────────────────

class Room(Base):
    __tablename__ = "rooms"

    id       = Column(Integer, primary_key=True, index=True)
    name     = Column(String(100), nullable=False, unique=True)
    building = Column(String(100), nullable=True)
    floor    = Column(Integer, nullable=True)
    capacity = Column(Integer, nullable=True)
    category = Column(String(50), nullable=True)


class ActivityCategory(Base):
    __tablename__ = "activity_categories"

    id          = Column(Integer, primary_key=True, index=True)
    name        = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)


class Activity(Base):
    __tablename__ = "activities"

    id               = Column(Integer, primary_key=True, index=True)
    name             = Column(String(150), nullable=False, index=True)
    category_id      = Column(Integer, ForeignKey("activity_categories.id"), nullable=True)
    supervisor_id    = Column(Integer, ForeignKey("staff.id"), nullable=True)
    is_open          = Column(Boolean, default=False, nullable=False)   # open = free access, no roster
    max_participants = Column(Integer, nullable=True)
    planned_room_id  = Column(Integer, ForeignKey("rooms.id"), nullable=True)

    category = relationship("ActivityCategory")


# ─── RFID devices ────────────────────────────────────────────────────────────

class Device(Base):
    __tablename__ = "devices"

    id        = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(100), nullable=False, unique=True)   # hardware identifier
    api_key   = Column(String(128), nullable=False, unique=True, index=True)
    name      = Column(String(100), nullable=True)
    status    = Column(String(20), nullable=False, default="active")  # active | inactive
    last_seen = Column(DateTime, nullable=True)


# ─── Active state ────────────────────────────────────────────────────────────

class ActiveGroup(Base):
    __tablename__ = "active_groups"

    id            = Column(Integer, primary_key=True, index=True)
    activity_id   = Column(Integer, ForeignKey("activities.id"), nullable=False, index=True)
    room_id       = Column(Integer, ForeignKey("rooms.id"), nullable=False, index=True)
    device_id     = Column(Integer, ForeignKey("devices.id"), nullable=True, index=True)
    start_time    = Column(DateTime, default=utcnow, nullable=False)
    end_time      = Column(DateTime, nullable=True)                  # NULL while running
    last_activity = Column(DateTime, default=utcnow, nullable=False)

    activity     = relationship("Activity")
    room         = relationship("Room")
    visits       = relationship("Visit", back_populates="active_group")
    supervisions = relationship("Supervision", back_populates="active_group")

    @property
    def is_running(self) -> bool:
        return self.end_time is None


class Visit(Base):
    __tablename__ = "visits"
    __table_args__ = (
        # at most one open visit per student
        Index(
            "uq_visits_open_student", "student_id", unique=True,
            sqlite_where=text("exit_time IS NULL"),
            postgresql_where=text("exit_time IS NULL"),
        ),
    )

    id              = Column(Integer, primary_key=True, index=True)
    student_id      = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    active_group_id = Column(Integer, ForeignKey("active_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    entry_time      = Column(DateTime, default=utcnow, nullable=False)
    exit_time       = Column(DateTime, nullable=True)

    student      = relationship("Student", back_populates="visits")
    active_group = relationship("ActiveGroup", back_populates="visits")


class Supervision(Base):
    __tablename__ = "supervisions"

    id              = Column(Integer, primary_key=True, index=True)
    staff_id        = Column(Integer, ForeignKey("staff.id", ondelete="CASCADE"), nullable=False, index=True)
    active_group_id = Column(Integer, ForeignKey("active_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    start_time      = Column(DateTime, default=utcnow, nullable=False)
    end_time        = Column(DateTime, nullable=True)

    staff        = relationship("Staff", back_populates="supervisions")
    active_group = relationship("ActiveGroup", back_populates="supervisions")


class ScheduledCheckout(Base):
    __tablename__ = "scheduled_checkouts"

    id            = Column(Integer, primary_key=True, index=True)
    student_id    = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    scheduled_by  = Column(Integer, ForeignKey("staff.id"), nullable=True)
    scheduled_for = Column(DateTime, nullable=False, index=True)
    reason        = Column(String(300), nullable=True)
    status        = Column(String(20), nullable=False, default="pending")  # pending | cancelled | executed
    cancelled_by  = Column(Integer, ForeignKey("staff.id"), nullable=True)
    cancelled_at  = Column(DateTime, nullable=True)
    executed_at   = Column(DateTime, nullable=True)
    created_at    = Column(DateTime, default=utcnow, nullable=False)

    student = relationship("Student")


# ─── Configuration ───────────────────────────────────────────────────────────

class Setting(Base):
    __tablename__ = "settings"

    id           = Column(Integer, primary_key=True, index=True)
    key          = Column(String(100), nullable=False, unique=True)
    value        = Column(Text, nullable=False)
    is_sensitive = Column(Boolean, default=False, nullable=False)   # value is AES-GCM ciphertext
    updated_at   = Column(DateTime, default=utcnow, onupdate=utcnow)
