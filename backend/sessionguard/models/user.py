# backend/sessionguard/models/user.py

from sqlalchemy import Boolean, Column, Integer, String, Enum
from sqlalchemy.orm import relationship
from .base import BaseModel
import enum


class UserStatus(str, enum.Enum):
    """Account states the session core distinguishes."""

    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    BANNED = "BANNED"

    @classmethod
    def _missing_(cls, value: object):
        """Accept lower-case values written by older clients."""
        if isinstance(value, str):
            for member in cls:
                if member.value == value.upper():
                    return member
        return None

    @property
    def is_blocked(self) -> bool:
        return self in (UserStatus.SUSPENDED, UserStatus.BANNED)


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class User(BaseModel):
    __tablename__ = "users"

    id         = Column(Integer, primary_key=True, index=True)
    email      = Column(String, unique=True, index=True, nullable=False)
    password   = Column(String, nullable=False)
    first_name = Column(String, nullable=False)
    last_name  = Column(String, nullable=False)
    role       = Column(String(32), nullable=False, default=UserRole.USER.value)
    status     = Column(Enum(UserStatus), nullable=False, default=UserStatus.ACTIVE)
    # Opt-in to the basic-tier idle timeout
    session_timeout = Column(Boolean, nullable=False, default=True)

    sessions = relationship(
        "UserSession",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
