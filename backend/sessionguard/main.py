# backend/sessionguard/main.py

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from . import models  # noqa: F401  (register tables on Base.metadata)
from .api import auth, security
from .core.config import Settings, settings
from .core.observability import setup_logging, setup_tracer
from . import database
from .database import Base
from .middleware.security_headers import SecurityHeadersMiddleware
from .middleware.session_security import SessionSecurityMiddleware
from .middleware.session_timeout import SessionTimeoutGuard, SessionTimeoutMiddleware
from .services.maintenance import start_maintenance_tasks, stop_maintenance_tasks
from .services.security_logger import SecurityEventLogger
from .services.session_manager import SessionLifecycleManager
from .services.session_store import SqlIncidentStore, SqlSessionStore
from .utils.clock import utcnow
from .utils.errors import SessionRejected, session_error_response

logger = logging.getLogger(__name__)


def _merge_origins(*groups: Iterable[str]) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for origin in group:
            if not origin:
                continue
            normalized = origin.rstrip("/")
            if normalized not in merged:
                merged.append(normalized)
    return merged


def create_app(
    app_settings: Settings = settings,
    engine: Optional[Engine] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the API with its session stack wired onto ``app.state``."""
    if engine is None:
        engine = database.engine
        session_factory = database.SessionLocal
    else:
        session_factory = sessionmaker(autoflush=False, bind=engine)
    if app_settings.AUTO_CREATE_TABLES:
        Base.metadata.create_all(bind=engine)

    session_store = SqlSessionStore(session_factory, clock=clock)
    incident_store = SqlIncidentStore(session_factory, clock=clock)
    security_logger = SecurityEventLogger.from_settings(app_settings, incident_store, clock=clock)
    session_manager = SessionLifecycleManager.from_settings(
        app_settings, session_store, security_logger, clock=clock
    )
    timeout_guard = SessionTimeoutGuard(
        session_store,
        idle_timeout=timedelta(minutes=app_settings.IDLE_TIMEOUT_MINUTES),
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        security_logger.start()
        tasks = start_maintenance_tasks(session_manager, security_logger, app_settings)
        try:
            yield
        finally:
            await stop_maintenance_tasks(tasks)
            await security_logger.stop()

    app = FastAPI(
        title="Session Guard API",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.session_factory = session_factory
    app.state.session_store = session_store
    app.state.incident_store = incident_store
    app.state.security_logger = security_logger
    app.state.session_manager = session_manager
    app.state.timeout_guard = timeout_guard

    # Added innermost first: the basic-tier timeout guard reads the user the
    # session middleware attaches, and CORS must wrap session rejections.
    idle_prefixes = list(app_settings.IDLE_TIMEOUT_PATH_PREFIXES)
    if idle_prefixes:
        app.add_middleware(SessionTimeoutMiddleware, guard=timeout_guard, path_prefixes=idle_prefixes)
    app.add_middleware(SessionSecurityMiddleware, manager=session_manager, basic_prefixes=idle_prefixes)
    app.add_middleware(SecurityHeadersMiddleware, production=app_settings.is_production)
    allowed_origins = _merge_origins(app_settings.CORS_ORIGINS)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info("CORS origins set to: %s", allowed_origins)

    @app.exception_handler(SessionRejected)
    async def session_rejected_handler(request: Request, exc: SessionRejected):
        return session_error_response(exc)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "pending_security_events": security_logger.pending}

    app.include_router(auth.router, prefix="/auth", tags=["auth"])
    app.include_router(security.router, prefix=f"{app_settings.API_V1_STR}/security", tags=["security"])

    setup_tracer(app)
    return app


# Configure logging before the module-level app logs anything
setup_logging()
app = create_app()
