# backend/sessionguard/schemas/session.py

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..models.user import UserStatus


class SessionRecord(BaseModel):
    """Plain snapshot of a ``user_sessions`` row, detached from the ORM."""

    id: str
    user_id: int
    token: Optional[str] = None
    fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: str
    device_info: Optional[str] = None
    created_at: datetime
    rotated_at: Optional[datetime] = None
    last_active_at: datetime
    expires_at: datetime
    is_active: bool
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None

    model_config = {
        "from_attributes": True
    }


class UserSnapshot(BaseModel):
    id: int
    email: str
    role: str
    status: UserStatus
    session_timeout: bool = True

    model_config = {
        "from_attributes": True
    }

    @property
    def is_admin(self) -> bool:
        return self.role.upper() in ("ADMIN", "SUPER_ADMIN")


class SessionTimeoutStatus(BaseModel):
    is_active: bool
    last_active_at: datetime
    # Seconds left before the idle timeout, floored at zero
    time_remaining: int
    expires_at: datetime


class ActiveSessionResponse(BaseModel):
    id: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_active_at: datetime
    current: bool = False


class LoginResponse(BaseModel):
    success: bool = True
    user: UserSnapshot


class LogoutResponse(BaseModel):
    success: bool = True
    sessions_ended: int
