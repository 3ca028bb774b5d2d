"""
OGS Manager — Application Configuration
Version : 1.0.0
"""

from __future__ import annotations
import logging
from logging.handlers import RotatingFileHandler
import sys
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


# ─── Version Info ────────────────────────────────────────────────────────────

APP_NAME    = "OGS Manager"
APP_VERSION = "1.0.0"


# ─── Paths ───────────────────────────────────────────────────────────────────

if getattr(sys, 'frozen', False):
    BASE_DIR = Path(sys.executable).resolve().parent
else:
    BASE_DIR = Path(__file__).resolve().parent

DATA_DIR = BASE_DIR / "data"
DB_PATH  = DATA_DIR / "ogs.db"
LOG_DIR  = DATA_DIR / "logs"

DATA_DIR.mkdir(exist_ok=True)
LOG_DIR.mkdir(exist_ok=True)


# ─── Settings (reads from .env) ──────────────────────────────────────────────

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host: str           = "0.0.0.0"
    port: int           = 8080
    debug: bool         = False
    log_level: str      = "INFO"
    database_url: str   = f"sqlite:///{DB_PATH}"

    # HTTP surface
    cors_allowed_origins: str           = "*"
    rate_limit_enabled: bool            = False
    rate_limit_requests_per_minute: int = 60
    rate_limit_burst: int               = 10
    security_logging_enabled: bool      = False

    # Auth
    jwt_secret: str     = "change-me"
    jwt_algorithm: str  = "HS256"
    jwt_expire_minutes: int = 12 * 60

    # Sensitive settings are AES-GCM encrypted with this key (base64, 16/24/32 bytes)
    settings_encryption_key: Optional[str] = None

    # Email
    email_smtp_host: str     = ""
    email_smtp_port: int     = 587
    email_smtp_user: str     = ""
    email_smtp_password: str = ""
    email_from_name: str     = "OGS Manager"
    email_from_address: str  = "noreply@ogs.local"
    templates_dir: str       = "templates"

    # Check-in engine
    checkin_timeout_seconds: float  = 15.0
    student_daily_checkout_time: str = "15:00"
    schulhof_room_name: str         = "Schulhof"
    schulhof_activity_name: str     = "Schulhof"

    # Realtime
    sse_heartbeat_seconds: float = 30.0
    sse_client_buffer: int       = 32

    # Background jobs
    scheduled_checkout_interval_seconds: int = 60
    session_cleanup_interval_minutes: int    = 15
    session_timeout_minutes: int             = 120

    @property
    def cors_origins(self) -> List[str]:
        if self.cors_allowed_origins.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]


settings = Settings()


# ─── Logging ─────────────────────────────────────────────────────────────────

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s — %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT,
    handlers=[
        logging.StreamHandler(),
        RotatingFileHandler(
            LOG_DIR / "app.log",
            maxBytes=5 * 1024 * 1024,   # 5 MB per file
            backupCount=3,
            encoding="utf-8",
        ),
    ],
)

logger = logging.getLogger("ogs")
logger.info("OGS Manager v%s starting up", APP_VERSION)
