from enum import Enum
from typing import Dict, Optional
import logging

from fastapi import HTTPException, status
from fastapi.responses import ORJSONResponse

logger = logging.getLogger(__name__)


class SessionErrorCode(str, Enum):
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"


_DEFAULT_MESSAGES = {
    SessionErrorCode.SESSION_NOT_FOUND: "Session not found",
    SessionErrorCode.SESSION_TIMEOUT: "Session expired due to inactivity",
    SessionErrorCode.SECURITY_VIOLATION: "Session security violation detected",
    SessionErrorCode.ACCOUNT_SUSPENDED: "Account is suspended",
}


class SessionRejected(Exception):
    """Raised when a request's session must not be honoured."""

    def __init__(self, code: SessionErrorCode, message: Optional[str] = None) -> None:
        self.code = code
        self.message = message or _DEFAULT_MESSAGES[code]
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        if self.code is SessionErrorCode.ACCOUNT_SUSPENDED:
            return status.HTTP_423_LOCKED
        return status.HTTP_401_UNAUTHORIZED


def session_error_response(exc: SessionRejected) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": exc.code.value, "message": exc.message},
    )


def error_response(
    message: str,
    field_errors: Dict[str, str],
    code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
) -> HTTPException:
    """Return an HTTPException with a consistent structure and log details."""
    logger.error("%s %s", message, field_errors)
    detail = {"message": message, "field_errors": field_errors}
    return HTTPException(status_code=code, detail=detail)
