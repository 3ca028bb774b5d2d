"""
OGS Manager — FastAPI Application Entry Point
Version : 1.0.0
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from config import APP_NAME, APP_VERSION, BASE_DIR, settings
from crypto import SettingsCipher
from database import init_db
from errors import install_exception_handlers
from mailer.dispatcher import Dispatcher
from mailer.transport import TemplateRegistry, new_mailer
from models.schemas import HealthResponse
from realtime.hub import Hub
from routes import active, checkin, config as config_routes, sse, students
from scheduler import BackgroundJobs

logger = logging.getLogger("ogs.main")
security_logger = logging.getLogger("ogs.security")

_SECURITY_STATUSES = {401, 403, 429}


def _templates_dir() -> Path:
    path = Path(settings.templates_dir)
    if not path.is_absolute() and not path.is_dir():
        path = BASE_DIR / path
    return path


# ─── Lifespan (startup / shutdown) ───────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Initialising database...")
    init_db()

    if app.state.start_background:
        logger.info("Starting background jobs...")
        app.state.jobs.start()

    yield

    # Shutdown
    app.state.jobs.shutdown()
    await app.state.dispatcher.close()
    logger.info("OGS Manager stopped.")


# ─── App ─────────────────────────────────────────────────────────────────────

def create_app(hub: Optional[Hub] = None, start_background: bool = True) -> FastAPI:
    app = FastAPI(
        title=APP_NAME,
        version=APP_VERSION,
        description="After-school administration: RFID check-in and live supervision",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Shared process state, created once and handed to every component
    app.state.hub = hub or Hub()
    app.state.cipher = SettingsCipher.from_env(settings.settings_encryption_key)
    templates = TemplateRegistry(_templates_dir())
    app.state.dispatcher = Dispatcher(new_mailer(settings, templates))
    app.state.jobs = BackgroundJobs(app.state.hub, app.state.dispatcher)
    app.state.start_background = start_background

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[
            f"{settings.rate_limit_requests_per_minute}/minute",
            f"{settings.rate_limit_burst}/second",
        ],
        enabled=settings.rate_limit_enabled,
    )
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    if settings.security_logging_enabled:
        @app.middleware("http")
        async def log_security_events(request: Request, call_next):
            response = await call_next(request)
            if response.status_code in _SECURITY_STATUSES:
                client = request.client.host if request.client else "-"
                security_logger.warning("%d %s %s from %s", response.status_code,
                                        request.method, request.url.path, client)
            return response

    install_exception_handlers(app)

    # ─── Routes ───────────────────────────────────────────────────────────────
    app.include_router(checkin.router)
    app.include_router(sse.router)
    app.include_router(active.router)
    app.include_router(students.router)
    app.include_router(config_routes.router)

    @app.get("/api/health", response_model=HealthResponse, tags=["meta"])
    def health(request: Request):
        return HealthResponse(
            status="ok",
            version=APP_VERSION,
            scheduler_running=request.app.state.jobs.running,
            sse_clients=request.app.state.hub.client_count,
        )

    return app


app = create_app()


# ─── Entry Point ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    try:
        uvicorn.run(
            "main:app",
            host=settings.host,
            port=settings.port,
            reload=settings.debug,
            log_level=settings.log_level.lower(),
        )
    except OSError as exc:
        if "address already in use" in str(exc).lower() or exc.errno in (98, 10048):
            print(
                f"\n  ERROR: Port {settings.port} is already in use by another application.\n"
                f"  Stop the other program, or set PORT=8081 in 'server/.env' and restart.\n",
                flush=True,
            )
        else:
            raise
