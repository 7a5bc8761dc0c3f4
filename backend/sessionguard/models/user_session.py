import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import BaseModel
from ..utils.clock import utcnow


class SessionEndReason(str, enum.Enum):
    """Terminal states of a session; every one of them means is_active=False."""

    LOGGED_OUT = "logged_out"
    TIMED_OUT = "timed_out"
    EVICTED = "evicted"
    HIJACK_INVALIDATED = "hijack_invalidated"
    ACCOUNT_SUSPENDED = "account_suspended"
    NOT_FOUND = "not_found"


class UserSession(BaseModel):
    __tablename__ = "user_sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "user_agent", name="uq_user_sessions_user_agent"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # Opaque session token; NULL on rows written before token lookup existed
    token = Column(String(128), nullable=True)
    # HMAC of request metadata; NULL on legacy rows (fingerprint check skipped)
    fingerprint = Column(String(128), nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=False)
    device_info = Column(String(128), nullable=True)

    # Last token reissue; NULL on legacy rows, which fall back to created_at
    rotated_at = Column(DateTime, nullable=True)
    last_active_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    ended_at = Column(DateTime, nullable=True)
    end_reason = Column(String(32), nullable=True)

    user = relationship("User", back_populates="sessions")


Index("ix_user_sessions_token", UserSession.token, unique=True)
Index("ix_user_sessions_user_active", UserSession.user_id, UserSession.is_active)
Index("ix_user_sessions_expires_at", UserSession.expires_at)
