"""
OGS Manager — Settings Routes
Runtime key/value settings; sensitive values are encrypted at rest and masked on read.
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from auth import require_staff
from database import get_db
from errors import Forbidden, NotFound
from models.db_models import Staff
from models.schemas import SettingResponse, SettingUpdate
from settings_store import MASK, SettingsStore

logger = logging.getLogger("ogs.routes.config")
router = APIRouter(prefix="/api/config", tags=["config"])

ADMIN_ROLE = "admin"


def _store(request: Request, db: Session) -> SettingsStore:
    return SettingsStore(db, request.app.state.cipher)


def _require_admin(staff: Staff) -> None:
    if staff.role != ADMIN_ROLE:
        raise Forbidden("admin role required")


@router.get("/settings", response_model=List[SettingResponse])
def list_settings(request: Request, db: Session = Depends(get_db),
                  staff: Staff = Depends(require_staff)):
    return _store(request, db).list()


@router.put("/settings/{key}", response_model=SettingResponse)
def put_setting(key: str, payload: SettingUpdate, request: Request,
                db: Session = Depends(get_db), staff: Staff = Depends(require_staff)):
    _require_admin(staff)
    row = _store(request, db).set(key, payload.value, sensitive=payload.is_sensitive)
    return SettingResponse(
        key=row.key,
        value=MASK if row.is_sensitive else row.value,
        is_sensitive=row.is_sensitive,
        updated_at=row.updated_at,
    )


@router.delete("/settings/{key}", status_code=status.HTTP_204_NO_CONTENT)
def delete_setting(key: str, request: Request,
                   db: Session = Depends(get_db), staff: Staff = Depends(require_staff)):
    _require_admin(staff)
    if not _store(request, db).delete(key):
        raise NotFound("setting not found")
