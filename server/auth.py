"""
OGS Manager — Authentication
Staff authenticate with a Bearer JWT; RFID devices with an X-Device-Key header.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session, joinedload

from config import settings
from database import get_db, utcnow
from errors import Unauthorized
from models.db_models import Device, Staff

logger = logging.getLogger("ogs.auth")


# ─── JWT (staff) ─────────────────────────────────────────────────────────────

def issue_staff_token(staff_id: int, ttl_seconds: Optional[int] = None,
                      extra: Optional[Dict[str, Any]] = None) -> str:
    now = int(time.time())
    if ttl_seconds is None:
        ttl_seconds = settings.jwt_expire_minutes * 60
    claims = {**(extra or {}), "sub": str(staff_id), "iat": now, "exp": now + ttl_seconds}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_staff_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(
            token, settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthorized("token expired")
    except jwt.InvalidTokenError as exc:
        logger.debug("Rejected token: %s", exc)
        raise Unauthorized("invalid token")


def require_staff(
    authorization: str = Header(default=""),
    db: Session = Depends(get_db),
) -> Staff:
    """FastAPI dependency — resolves the Bearer token to a Staff row."""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("missing bearer token")

    claims = decode_staff_token(token.strip())
    try:
        staff_id = int(claims["sub"])
    except (TypeError, ValueError):
        raise Unauthorized("invalid token subject")

    staff = (
        db.query(Staff)
        .options(joinedload(Staff.person))
        .filter(Staff.id == staff_id)
        .first()
    )
    if staff is None:
        raise Unauthorized("staff account not found")
    return staff


# ─── Device API key ──────────────────────────────────────────────────────────

def require_device(
    x_device_key: str = Header(default=""),
    db: Session = Depends(get_db),
) -> Device:
    """FastAPI dependency — validates X-Device-Key and records when the device was seen."""
    key = x_device_key.strip()
    if not key:
        raise Unauthorized("device API key required")

    device = db.query(Device).filter(Device.api_key == key).first()
    if device is None or device.status != "active":
        logger.warning("Rejected device key ending …%s", key[-4:])
        raise Unauthorized("invalid device API key")

    device.last_seen = utcnow()
    db.commit()
    return device
