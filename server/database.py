"""
OGS Manager — Database Setup (SQLAlchemy)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session

from config import settings, logger


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite connections get WAL + foreign keys."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    eng = create_engine(url, echo=False, **kwargs)

    if eng.dialect.name == "sqlite":
        @event.listens_for(eng, "connect")
        def set_sqlite_pragma(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return eng


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency — yields a DB session and closes after request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create all tables on startup."""
    from models import db_models  # noqa: F401 — ensure models are registered
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database initialised at %s", (bind or engine).url)


# ─── Time helpers ────────────────────────────────────────────────────────────
# Timestamps are stored as naive UTC.

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_rfc3339(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")
