"""
OGS Manager — Subscription Resolver
Computes the topic set a staff member's SSE stream listens on.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

from active_store import ActiveStore
from realtime.events import edu_topic, group_topic


@dataclass(frozen=True)
class Subscription:
    active_group_ids: Tuple[int, ...] = ()
    educational_group_topics: Tuple[str, ...] = ()

    @property
    def all_topics(self) -> List[str]:
        return [group_topic(i) for i in self.active_group_ids] + list(self.educational_group_topics)


def resolve_topics(store: ActiveStore, staff_id: int) -> Subscription:
    """Two bulk reads: open supervisions of running groups, then edu-group memberships."""
    supervisions = store.find_staff_active_supervisions(staff_id)
    edu_ids = store.find_staff_educational_group_ids(staff_id)
    return Subscription(
        active_group_ids=tuple(sorted({s.active_group_id for s in supervisions})),
        educational_group_topics=tuple(edu_topic(g) for g in edu_ids),
    )
