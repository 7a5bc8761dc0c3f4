from .user import User, UserRole, UserStatus
from .user_session import SessionEndReason, UserSession
from .security_incident import (
    PURGEABLE_SEVERITIES,
    SecurityEventType,
    SecurityIncident,
    SecuritySeverity,
)

__all__ = [
    "User",
    "UserRole",
    "UserStatus",
    "UserSession",
    "SessionEndReason",
    "SecurityIncident",
    "SecurityEventType",
    "SecuritySeverity",
    "PURGEABLE_SEVERITIES",
]
