"""Basic-tier idle timeout.

Looks up the caller's session by (user id, user agent) and ends it after a
fixed window of inactivity. There is no fingerprinting and no token
rotation here; routes that need those go through the enterprise tier.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..auth.utils import is_auth_bootstrap_path
from ..models.user_session import SessionEndReason
from ..schemas.session import SessionRecord, SessionTimeoutStatus
from ..services.session_store import SessionFilter, SessionStore
from ..utils.clock import utcnow
from ..utils.errors import SessionErrorCode, SessionRejected, session_error_response
from .session_security import path_matches

logger = logging.getLogger(__name__)

IDLE_TIMEOUT = timedelta(minutes=30)


class SessionTimeoutGuard:
    def __init__(
        self,
        store: SessionStore,
        idle_timeout: timedelta = IDLE_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.idle_timeout = idle_timeout
        self._clock = clock

    async def _current_session(self, user_id: int, user_agent: str) -> SessionRecord:
        session = await self.store.find_session_by_user_and_agent(user_id, user_agent, self._clock())
        if session is None:
            raise SessionRejected(SessionErrorCode.SESSION_NOT_FOUND)
        return session

    async def check(self, user_id: int, user_agent: str) -> None:
        """Raise ``SessionRejected`` when the session is missing or idle too long."""
        user = await self.store.find_user(user_id)
        if user is None or not user.session_timeout:
            return

        session = await self._current_session(user_id, user_agent)
        now = self._clock()
        if now - session.last_active_at > self.idle_timeout:
            await self.store.deactivate_sessions(SessionFilter(ids=[session.id]), SessionEndReason.TIMED_OUT.value)
            logger.info("Session timed out for user %s", user_id)
            raise SessionRejected(SessionErrorCode.SESSION_TIMEOUT, "Session has timed out due to inactivity")

        await self.store.update_session(session.id, {"last_active_at": now})

    def _status(self, session: SessionRecord, now: datetime) -> SessionTimeoutStatus:
        expires_at = session.last_active_at + self.idle_timeout
        remaining = max(timedelta(0), expires_at - now)
        return SessionTimeoutStatus(
            is_active=True,
            last_active_at=session.last_active_at,
            time_remaining=int(remaining.total_seconds()),
            expires_at=expires_at,
        )

    async def status(self, user_id: int, user_agent: str) -> SessionTimeoutStatus:
        session = await self._current_session(user_id, user_agent)
        return self._status(session, self._clock())

    async def extend(self, user_id: int, user_agent: str) -> SessionTimeoutStatus:
        session = await self._current_session(user_id, user_agent)
        now = self._clock()
        updated = await self.store.update_session(session.id, {"last_active_at": now})
        return self._status(updated or session, now)


class SessionTimeoutMiddleware(BaseHTTPMiddleware):
    """Apply :class:`SessionTimeoutGuard` to requests already authenticated upstream."""

    def __init__(self, app: ASGIApp, guard: SessionTimeoutGuard, path_prefixes: Optional[Iterable[str]] = None) -> None:
        super().__init__(app)
        self.guard = guard
        self.path_prefixes = tuple(path_prefixes or ())

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        user = getattr(request.state, "user", None)
        if (
            user is None
            or is_auth_bootstrap_path(path)
            or (self.path_prefixes and not path_matches(path, self.path_prefixes))
        ):
            return await call_next(request)

        try:
            await self.guard.check(user.id, request.headers.get("user-agent", ""))
        except SessionRejected as exc:
            return session_error_response(exc)
        except Exception:
            logger.exception("Session timeout check failed; continuing")
        return await call_next(request)
