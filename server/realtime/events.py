"""
OGS Manager — Realtime Event Model
Immutable records produced by domain writes and routed by topic.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from database import to_rfc3339, utcnow


class EventType(str, Enum):
    STUDENT_CHECKIN   = "student_checkin"
    STUDENT_CHECKOUT  = "student_checkout"
    STUDENT_TRANSFER  = "student_transfer"
    GROUP_STARTED     = "group_started"
    GROUP_ENDED       = "group_ended"
    SUPERVISOR_JOINED = "supervisor_joined"
    SUPERVISOR_LEFT   = "supervisor_left"


EDU_TOPIC_PREFIX = "edu:"


def group_topic(active_group_id: int) -> str:
    return str(active_group_id)


def edu_topic(educational_group_id: int) -> str:
    return f"{EDU_TOPIC_PREFIX}{educational_group_id}"


@dataclass(frozen=True)
class Event:
    type: EventType
    topic: str
    payload: Mapping[str, Any]
    emitted_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, type: EventType, topic: str, payload: Optional[Mapping[str, Any]] = None,
               emitted_at: Optional[datetime] = None) -> "Event":
        frozen = MappingProxyType(copy.deepcopy(dict(payload or {})))
        return cls(type=EventType(type), topic=str(topic), payload=frozen,
                   emitted_at=emitted_at or utcnow())

    def for_topic(self, topic: str) -> "Event":
        """Same event routed to another topic (educational-group mirror)."""
        return replace(self, topic=str(topic))

    def to_dict(self) -> dict:
        return {
            "type":      self.type.value,
            "topic":     self.topic,
            "data":      copy.deepcopy(dict(self.payload)),
            "timestamp": to_rfc3339(self.emitted_at),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False)
