"""
OGS Manager — Pydantic Schemas (request / response)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ─── Check-in ────────────────────────────────────────────────────────────────

class CheckinRequest(BaseModel):
    rfid: str               = Field(..., min_length=1, max_length=64)
    room_id: Optional[int]  = Field(None, gt=0)

    @field_validator("rfid")
    @classmethod
    def strip_rfid(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("rfid must not be blank")
        return v


# ─── Active groups ───────────────────────────────────────────────────────────

class ActiveGroupCreate(BaseModel):
    activity_id: int          = Field(..., gt=0)
    room_id: int              = Field(..., gt=0)
    device_id: Optional[int]  = Field(None, gt=0)


class ActiveGroupResponse(BaseModel):
    id: int
    activity_id: int
    room_id: int
    device_id: Optional[int]
    start_time: datetime
    end_time: Optional[datetime]
    last_activity: datetime

    model_config = {"from_attributes": True}


class ActiveGroupSummary(ActiveGroupResponse):
    room_name: Optional[str]     = None
    activity_name: Optional[str] = None
    visitor_count: int           = 0


class GroupEndResult(BaseModel):
    id: int
    closed_visits: int
    end_time: datetime


class SupervisionResponse(BaseModel):
    id: int
    staff_id: int
    active_group_id: int
    start_time: datetime
    end_time: Optional[datetime]

    model_config = {"from_attributes": True}


# ─── Scheduled checkouts ─────────────────────────────────────────────────────

class ScheduledCheckoutCreate(BaseModel):
    student_id: int           = Field(..., gt=0)
    scheduled_for: datetime
    reason: Optional[str]     = Field(None, max_length=300)

    @field_validator("scheduled_for")
    @classmethod
    def as_naive_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class ScheduledCheckoutResponse(BaseModel):
    id: int
    student_id: int
    scheduled_by: Optional[int]
    scheduled_for: datetime
    reason: Optional[str]
    status: str
    cancelled_by: Optional[int]
    cancelled_at: Optional[datetime]
    executed_at: Optional[datetime]

    model_config = {"from_attributes": True}


# ─── Student location ────────────────────────────────────────────────────────

class StudentLocation(BaseModel):
    student_id: int
    student_name: str
    attendance: str
    visit_id: Optional[int]         = None
    active_group_id: Optional[int]  = None
    room_id: Optional[int]          = None
    room_name: Optional[str]        = None
    entry_time: Optional[datetime]  = None


# ─── Settings ────────────────────────────────────────────────────────────────

class SettingUpdate(BaseModel):
    value: str          = Field(..., max_length=4000)
    is_sensitive: bool  = False


class SettingResponse(BaseModel):
    key: str
    value: str
    is_sensitive: bool
    updated_at: Optional[datetime] = None


# ─── Realtime ────────────────────────────────────────────────────────────────

class HubStats(BaseModel):
    clients: int
    topics: int
    broadcasts: int
    delivered: int
    dropped: int


class HealthResponse(BaseModel):
    status: str
    version: str
    scheduler_running: bool
    sse_clients: int
