import enum

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text

from ..database import Base
from ..utils.clock import utcnow


class SecurityEventType(str, enum.Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_HIJACKING = "SESSION_HIJACKING"
    CSRF_ATTACK = "CSRF_ATTACK"
    XSS_ATTEMPT = "XSS_ATTEMPT"
    SQL_INJECTION = "SQL_INJECTION"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    DATA_BREACH_ATTEMPT = "DATA_BREACH_ATTEMPT"
    MALICIOUS_FILE_UPLOAD = "MALICIOUS_FILE_UPLOAD"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    ACCOUNT_LOCKOUT = "ACCOUNT_LOCKOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    EMAIL_CHANGE = "EMAIL_CHANGE"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    API_KEY_CREATED = "API_KEY_CREATED"
    API_KEY_REVOKED = "API_KEY_REVOKED"
    ADMIN_ACTION = "ADMIN_ACTION"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class SecuritySeverity(str, enum.Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Severities purged by the retention job; everything above is kept for audit.
PURGEABLE_SEVERITIES = (SecuritySeverity.INFO, SecuritySeverity.LOW)


class SecurityIncident(Base):
    """Append-only audit row for a security event."""

    __tablename__ = "security_incidents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)
    description = Column(Text, nullable=False)
    # No FK: audit rows outlive the user they mention
    user_id = Column(Integer, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


Index("ix_security_incidents_created_at", SecurityIncident.created_at)
Index("ix_security_incidents_severity_created", SecurityIncident.severity, SecurityIncident.created_at)
Index("ix_security_incidents_user_id", SecurityIncident.user_id)
