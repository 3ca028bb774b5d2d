"""
OGS Manager — Error Taxonomy
Domain errors carry a kind up to the HTTP layer, which maps it to a status code.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("ogs.errors")


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED    = "unauthorized"
    FORBIDDEN       = "forbidden"
    NOT_FOUND       = "not_found"
    CONFLICT        = "conflict"
    INTERNAL        = "internal"

    @property
    def status_code(self) -> int:
        return _STATUS[self]


_STATUS = {
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.UNAUTHORIZED:    401,
    ErrorKind.FORBIDDEN:       403,
    ErrorKind.NOT_FOUND:       404,
    ErrorKind.CONFLICT:        409,
    ErrorKind.INTERNAL:        500,
}


class DomainError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    default_message = "internal server error"
    retryable = False

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return self.kind.status_code


# ─── Generic kinds ───────────────────────────────────────────────────────────

class InvalidRequest(DomainError):
    kind = ErrorKind.INVALID_REQUEST
    default_message = "invalid request"


class Unauthorized(DomainError):
    kind = ErrorKind.UNAUTHORIZED
    default_message = "unauthorized"


class Forbidden(DomainError):
    kind = ErrorKind.FORBIDDEN
    default_message = "forbidden"


class NotFound(DomainError):
    kind = ErrorKind.NOT_FOUND
    default_message = "not found"


class Conflict(DomainError):
    kind = ErrorKind.CONFLICT
    default_message = "conflict"


class InternalError(DomainError):
    kind = ErrorKind.INTERNAL
    retryable = True


# ─── Check-in ────────────────────────────────────────────────────────────────

class TagNotFound(NotFound):
    default_message = "RFID tag not found"


class NotAStudent(NotFound):
    default_message = "person is not a student"


class RoomNotFound(NotFound):
    default_message = "room not found"


class NoActiveGroupInRoom(NotFound):
    default_message = "no active group in room"


class DeviceNotBound(NotFound):
    default_message = "device is not bound to a running active group"


class NoRoomContext(InvalidRequest):
    default_message = "room_id is required for check-in"


class CapacityExceeded(Conflict):
    default_message = "capacity exceeded"

    @classmethod
    def for_room(cls, room_id: int, name: str, current: int, maximum: int) -> "CapacityExceeded":
        return cls(
            f"Room '{name}' is full ({current}/{maximum})",
            details={"code": "ROOM_CAPACITY_EXCEEDED", "room_id": room_id,
                     "room_name": name, "current": current, "max": maximum},
        )

    @classmethod
    def for_activity(cls, activity_id: int, name: str, current: int, maximum: int) -> "CapacityExceeded":
        return cls(
            f"Activity '{name}' is full ({current}/{maximum})",
            details={"code": "ACTIVITY_CAPACITY_EXCEEDED", "activity_id": activity_id,
                     "activity_name": name, "current": current, "max": maximum},
        )


class EntityEnded(Conflict):
    default_message = "entity has already ended"


class CheckinTimeout(InternalError):
    default_message = "check-in did not complete before the deadline"


# ─── HTTP mapping ────────────────────────────────────────────────────────────

def error_body(message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"status": "error", "error": message}
    if details:
        body["details"] = details
    return body


async def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.details))


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"invalid request: {location} {first.get('msg', '')}".strip()
    return JSONResponse(status_code=400, content=error_body(message))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("internal server error"))


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, _domain_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(HTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
