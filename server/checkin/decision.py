"""
OGS Manager — Check-in Decision
Pure mapping from (current visit state, target room) to an action.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import NoRoomContext


class Action(str, Enum):
    CHECK_IN  = "check_in"
    CHECK_OUT = "check_out"
    TRANSFER  = "transfer"


@dataclass(frozen=True)
class ScanState:
    checked_in: bool
    current_room_id: Optional[int] = None


def decide_action(state: ScanState, target_room_id: Optional[int]) -> Action:
    """
    not checked in, no room   -> NoRoomContext
    not checked in, room T    -> CHECK_IN
    checked in, no room       -> CHECK_OUT
    checked in, room == P     -> CHECK_OUT
    checked in, room != P     -> TRANSFER
    """
    if not state.checked_in:
        if target_room_id is None:
            raise NoRoomContext()
        return Action.CHECK_IN
    if target_room_id is None or target_room_id == state.current_room_id:
        return Action.CHECK_OUT
    return Action.TRANSFER


# ─── Response vocabulary ─────────────────────────────────────────────────────

CHECKED_IN        = "checked_in"
CHECKED_OUT       = "checked_out"
TRANSFERRED       = "transferred"
CHECKED_OUT_DAILY = "checked_out_daily"


def greeting(action: str, first_name: str, previous_room: Optional[str] = None,
             room: Optional[str] = None) -> str:
    if action == TRANSFERRED:
        return f"Gewechselt von {previous_room} zu {room}!"
    if action in (CHECKED_OUT, CHECKED_OUT_DAILY):
        return f"Tschüss {first_name}!"
    return f"Hallo {first_name}!"
