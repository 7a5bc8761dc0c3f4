"""Session lifecycle: creation, per-request validation, rotation, eviction.

Every authenticated request runs through :meth:`SessionLifecycleManager.validate_session`.
The checks run in a fixed order and each can end the request early:

1. bootstrap auth endpoints and cookie-less requests pass through untouched
2. lookup by token, then the legacy (user id, user agent) fallback
3. unknown session -> cookies cleared, request continues unauthenticated
4. suspended/banned owner -> every session ended, ``ACCOUNT_SUSPENDED``
5. fingerprint mismatch (production only) -> every session ended, ``SECURITY_VIOLATION``
6. idle for longer than the session timeout -> session ended, ``SESSION_TIMEOUT``
7. token older than the rotation interval -> token reissued on the same row
8. ``last_active_at`` bumped, user attached to the request

Storage failures anywhere in this flow are logged and the request simply
continues unauthenticated; only the explicit rejections above reach the client.
"""

from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from starlette.requests import Request
from starlette.responses import Response

from ..auth.fingerprint import FingerprintGenerator, RequestMetadata
from ..auth.utils import SessionCookies, decode_legacy_user_id, describe_device, is_auth_bootstrap_path
from ..models.security_incident import SecurityEventType
from ..models.user_session import SessionEndReason
from ..schemas.session import ActiveSessionResponse, SessionRecord, UserSnapshot
from ..utils.clock import utcnow
from ..utils.errors import SessionErrorCode, SessionRejected
from .security_logger import SecurityEventLogger
from .session_store import SessionCleanupCriteria, SessionFilter, SessionStore

logger = logging.getLogger(__name__)


class SessionTier(str, enum.Enum):
    ENTERPRISE = "enterprise"
    BASIC = "basic"


class SessionState(str, enum.Enum):
    """How a validated request left its session; terminal states live in ``SessionEndReason``."""

    ACTIVE = "active"
    ROTATED = "rotated"


@dataclass
class SessionContext:
    user: UserSnapshot
    session_id: str
    token: Optional[str]
    state: SessionState = SessionState.ACTIVE
    legacy: bool = False


@dataclass
class ValidationOutcome:
    context: Optional[SessionContext] = None
    rejection: Optional[SessionRejected] = None
    # Token to write into the session cookie after rotation
    set_cookie_token: Optional[str] = None
    clear_cookies: bool = False

    @property
    def authenticated(self) -> bool:
        return self.context is not None


def new_session_token() -> str:
    """256 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(32)


class SessionLifecycleManager:
    def __init__(
        self,
        store: SessionStore,
        security_logger: SecurityEventLogger,
        fingerprints: FingerprintGenerator,
        cookies: SessionCookies,
        *,
        session_timeout: timedelta = timedelta(hours=1),
        max_sessions: int = 3,
        rotation_interval: timedelta = timedelta(minutes=5),
        production: bool = False,
        legacy_secret: Optional[str] = None,
        legacy_algorithm: str = "HS256",
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.store = store
        self.security_logger = security_logger
        self.fingerprints = fingerprints
        self.cookies = cookies
        self.session_timeout = session_timeout
        self.max_sessions = max_sessions
        self.rotation_interval = rotation_interval
        self.production = production
        self.legacy_secret = legacy_secret
        self.legacy_algorithm = legacy_algorithm
        self.retention = retention
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings,
        store: SessionStore,
        security_logger: SecurityEventLogger,
        clock: Callable[[], datetime] = utcnow,
    ) -> "SessionLifecycleManager":
        cookies = SessionCookies(
            settings.SECRET_KEY,
            name=settings.SESSION_COOKIE_NAME,
            refresh_name=settings.REFRESH_COOKIE_NAME,
            domain=settings.cookie_domain,
            secure=settings.is_production,
            max_age=settings.SESSION_TIMEOUT_SECONDS,
        )
        return cls(
            store,
            security_logger,
            FingerprintGenerator(settings.SESSION_FINGERPRINT_SECRET),
            cookies,
            session_timeout=timedelta(seconds=settings.SESSION_TIMEOUT_SECONDS),
            max_sessions=settings.CONCURRENT_SESSION_LIMIT,
            rotation_interval=timedelta(seconds=settings.SESSION_ROTATION_INTERVAL_SECONDS),
            production=settings.is_production,
            legacy_secret=settings.SECRET_KEY,
            legacy_algorithm=settings.ALGORITHM,
            retention=timedelta(hours=settings.SESSION_RETENTION_HOURS),
            clock=clock,
        )

    # Creation

    async def create_session(self, user_id: int, request: Request, response: Optional[Response] = None) -> str:
        """Issue a session for ``user_id`` on the requesting device and return its token."""
        now = self._clock()
        meta = RequestMetadata.from_request(request)
        user_agent = meta.user_agent or "unknown"
        token = new_session_token()

        await self.enforce_concurrency_cap(user_id, replacing_user_agent=user_agent)

        record = await self.store.upsert_session(
            user_id,
            user_agent,
            {
                "token": token,
                "fingerprint": self.fingerprints.generate(meta),
                "ip_address": meta.client_ip,
                "device_info": describe_device(user_agent),
                "created_at": now,
                "rotated_at": now,
                "last_active_at": now,
                "expires_at": now + self.session_timeout,
                "is_active": True,
                "ended_at": None,
                "end_reason": None,
            },
        )

        if response is not None:
            self.cookies.set(response, token)

        logger.info("Secure session %s created for user %s", record.id, user_id)
        self.security_logger.log_session(
            SecurityEventType.SESSION_CREATED,
            request,
            user_id,
            {"session_id": record.id, "device": record.device_info},
        )
        return token

    async def enforce_concurrency_cap(self, user_id: int, replacing_user_agent: Optional[str] = None) -> int:
        """End the least recently active sessions so a new one fits under the cap.

        The row for ``replacing_user_agent`` is about to be overwritten by the
        upsert, so it neither counts toward the cap nor gets evicted.
        """
        active = await self.store.list_active_sessions(user_id, self._clock())
        candidates = [s for s in active if s.user_agent != replacing_user_agent]
        if len(candidates) < self.max_sessions:
            return 0
        # Sorted most recent first; keep max-1 so the new session is the max-th.
        evicted = candidates[self.max_sessions - 1:]
        count = await self.store.deactivate_sessions(
            SessionFilter(ids=[s.id for s in evicted]), SessionEndReason.EVICTED.value
        )
        logger.info("Evicted %d session(s) for user %s over the concurrency cap", count, user_id)
        return count

    # Validation

    async def validate_session(
        self, request: Request, tier: SessionTier = SessionTier.ENTERPRISE
    ) -> ValidationOutcome:
        """Resolve the request's session cookie.

        ``SessionTier.BASIC`` stops after the account-status check: idle
        tracking on those routes belongs to the timeout guard, and there is
        no fingerprint or rotation check.
        """
        if is_auth_bootstrap_path(request.url.path):
            return ValidationOutcome()
        raw = self.cookies.read_raw(request)
        if not raw:
            return ValidationOutcome()
        try:
            return await self._validate(request, raw, tier)
        except SessionRejected as exc:
            return ValidationOutcome(rejection=exc, clear_cookies=True)
        except Exception:
            logger.exception("Session validation failed; continuing unauthenticated")
            return ValidationOutcome()

    async def _validate(self, request: Request, raw: str, tier: SessionTier) -> ValidationOutcome:
        now = self._clock()
        meta = RequestMetadata.from_request(request)
        token = self.cookies.unsign(raw)

        session, legacy = await self._lookup(raw, token, meta, now)
        user = await self.store.find_user(session.user_id) if session is not None else None

        if session is None or user is None:
            if token is not None:
                await self.store.deactivate_sessions(SessionFilter(token=token), SessionEndReason.NOT_FOUND.value)
            return ValidationOutcome(clear_cookies=True)

        if user.status.is_blocked:
            try:
                await self.invalidate_all_sessions(user.id, SessionEndReason.ACCOUNT_SUSPENDED)
            except Exception:
                logger.exception("Failed to end sessions for suspended user %s", user.id)
            raise SessionRejected(SessionErrorCode.ACCOUNT_SUSPENDED)

        if tier is SessionTier.BASIC:
            # The idle guard owns last_active_at here; only the row's expiry
            # slides so an active user is never cut off by it.
            await self.store.update_session(session.id, {"expires_at": now + self.session_timeout})
            return ValidationOutcome(
                context=SessionContext(user=user, session_id=session.id, token=session.token, legacy=legacy)
            )

        if self.production and session.fingerprint:
            if not self.fingerprints.matches(session.fingerprint, meta):
                current = self.fingerprints.generate(meta)
                await self._handle_hijack(session, current, request, meta)
                raise SessionRejected(SessionErrorCode.SECURITY_VIOLATION)

        if now - session.last_active_at > self.session_timeout:
            await self.store.deactivate_sessions(SessionFilter(ids=[session.id]), SessionEndReason.TIMED_OUT.value)
            self.security_logger.log_session(
                SecurityEventType.SESSION_EXPIRED,
                request,
                user.id,
                {"session_id": session.id, "last_active_at": session.last_active_at.isoformat()},
            )
            raise SessionRejected(SessionErrorCode.SESSION_TIMEOUT)

        context = SessionContext(user=user, session_id=session.id, token=session.token, legacy=legacy)
        outcome = ValidationOutcome(context=context)

        if now - (session.rotated_at or session.created_at) > self.rotation_interval:
            rotated = await self._rotate(session, now)
            if rotated is not None:
                context.token = rotated
                context.state = SessionState.ROTATED
                outcome.set_cookie_token = rotated
                return outcome

        await self.store.update_session(session.id, {"last_active_at": now})
        return outcome

    async def _lookup(
        self, raw: str, token: Optional[str], meta: RequestMetadata, now: datetime
    ) -> tuple[Optional[SessionRecord], bool]:
        if token is not None:
            session = await self.store.find_active_session(token, now)
            if session is not None:
                return session, False
        # Sessions issued before opaque tokens carried a JWT in the cookie.
        if self.legacy_secret:
            user_id = decode_legacy_user_id(raw, self.legacy_secret, self.legacy_algorithm)
            if user_id is not None and meta.user_agent:
                session = await self.store.find_session_by_user_and_agent(user_id, meta.user_agent, now)
                if session is not None:
                    return session, True
        return None, False

    async def _handle_hijack(
        self, session: SessionRecord, current: str, request: Request, meta: RequestMetadata
    ) -> None:
        logger.warning("Session hijacking detected for user %s (session %s)", session.user_id, session.id)
        try:
            await self.invalidate_all_sessions(session.user_id, SessionEndReason.HIJACK_INVALIDATED)
        except Exception:
            # The request is rejected either way
            logger.exception("Failed to invalidate sessions for user %s after hijack", session.user_id)
        self.security_logger.log_session(
            SecurityEventType.SESSION_HIJACKING,
            request,
            session.user_id,
            {
                "session_id": session.id,
                "original_fingerprint": session.fingerprint,
                "current_fingerprint": current,
                "ip_address": meta.client_ip,
                "user_agent": meta.user_agent,
                "path": request.url.path,
            },
        )

    async def _rotate(self, session: SessionRecord, now: datetime) -> Optional[str]:
        new_token = new_session_token()
        try:
            updated = await self.store.update_session(
                session.id,
                {
                    "token": new_token,
                    "rotated_at": now,
                    "expires_at": now + self.session_timeout,
                    "last_active_at": now,
                },
            )
        except Exception:
            logger.exception("Session rotation failed for session %s", session.id)
            return None
        if updated is None:
            logger.warning("Session %s vanished during rotation", session.id)
            return None
        logger.info("Session rotated for user %s", session.user_id)
        return new_token

    # Termination

    async def invalidate_all_sessions(
        self, user_id: int, reason: SessionEndReason = SessionEndReason.LOGGED_OUT
    ) -> int:
        count = await self.store.deactivate_sessions(SessionFilter(user_id=user_id), reason.value)
        logger.info("Ended %d session(s) for user %s (%s)", count, user_id, reason.value)
        return count

    async def logout(self, request: Request, everywhere: bool = False) -> int:
        """End the caller's session, or all of the caller's sessions."""
        raw = self.cookies.read_raw(request)
        token = self.cookies.unsign(raw) if raw else None
        if token is None:
            return 0
        session = await self.store.find_active_session(token, self._clock())
        if session is None:
            return 0
        if everywhere:
            count = await self.invalidate_all_sessions(session.user_id, SessionEndReason.LOGGED_OUT)
        else:
            count = await self.store.deactivate_sessions(
                SessionFilter(ids=[session.id]), SessionEndReason.LOGGED_OUT.value
            )
        self.security_logger.log_auth(
            SecurityEventType.LOGOUT,
            request,
            session.user_id,
            {"session_id": session.id, "everywhere": everywhere, "sessions_ended": count},
        )
        return count

    async def list_sessions(
        self, user_id: int, current_session_id: Optional[str] = None
    ) -> List[ActiveSessionResponse]:
        rows = await self.store.list_active_sessions(user_id, self._clock())
        return [
            ActiveSessionResponse(
                id=row.id,
                device_info=row.device_info,
                ip_address=row.ip_address,
                created_at=row.created_at,
                last_active_at=row.last_active_at,
                current=row.id == current_session_id,
            )
            for row in rows
        ]

    async def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        criteria = SessionCleanupCriteria(
            rotated_before=now - self.retention,
            expired_before=now,
            include_inactive=True,
        )
        try:
            count = await self.store.delete_sessions(criteria)
        except Exception:
            logger.exception("Session cleanup failed")
            return 0
        if count:
            logger.info("Cleaned up %d expired sessions", count)
        return count
