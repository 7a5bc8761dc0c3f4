"""Per-request session validation for the enterprise tier."""

from typing import Iterable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..services.session_manager import SessionLifecycleManager, SessionTier
from ..utils.errors import session_error_response


def path_matches(path: str, prefixes: Iterable[str]) -> bool:
    return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)


class SessionSecurityMiddleware(BaseHTTPMiddleware):
    """Resolve the session cookie and attach ``user``/``session_id`` to ``request.state``.

    Paths under ``basic_prefixes`` are authenticated without fingerprint,
    idle or rotation checks; ``SessionTimeoutMiddleware`` guards them instead.
    """

    def __init__(self, app: ASGIApp, manager: SessionLifecycleManager, basic_prefixes: Iterable[str] = ()) -> None:
        super().__init__(app)
        self.manager = manager
        self.basic_prefixes = tuple(basic_prefixes)

    async def dispatch(self, request: Request, call_next):
        tier = SessionTier.BASIC if path_matches(request.url.path, self.basic_prefixes) else SessionTier.ENTERPRISE
        outcome = await self.manager.validate_session(request, tier)

        if outcome.rejection is not None:
            response = session_error_response(outcome.rejection)
            self.manager.cookies.clear(response)
            return response

        if outcome.context is not None:
            request.state.user = outcome.context.user
            request.state.session_id = outcome.context.session_id
            request.state.session_token = outcome.context.token

        response = await call_next(request)

        if outcome.clear_cookies:
            self.manager.cookies.clear(response)
        elif outcome.set_cookie_token:
            self.manager.cookies.set(response, outcome.set_cookie_token)
        return response
