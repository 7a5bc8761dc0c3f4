from fastapi import Depends, HTTPException, Request, status

from ..middleware.session_timeout import SessionTimeoutGuard
from ..schemas.session import UserSnapshot
from ..services.security_logger import SecurityEventLogger
from ..services.session_manager import SessionLifecycleManager
from ..utils.errors import SessionErrorCode, SessionRejected


def get_session_manager(request: Request) -> SessionLifecycleManager:
    return request.app.state.session_manager


def get_security_logger(request: Request) -> SecurityEventLogger:
    return request.app.state.security_logger


def get_timeout_guard(request: Request) -> SessionTimeoutGuard:
    return request.app.state.timeout_guard


def get_current_user(request: Request) -> UserSnapshot:
    """Return the user attached by ``SessionSecurityMiddleware``."""
    user = getattr(request.state, "user", None)
    if user is None:
        raise SessionRejected(SessionErrorCode.SESSION_NOT_FOUND)
    return user


def require_admin(
    request: Request,
    current_user: UserSnapshot = Depends(get_current_user),
    security_logger: SecurityEventLogger = Depends(get_security_logger),
) -> UserSnapshot:
    if not current_user.is_admin:
        security_logger.log_unauthorized_access(request, request.url.path, required_role="ADMIN")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required.",
        )
    return current_user
