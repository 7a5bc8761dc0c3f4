# backend/sessionguard/schemas/user.py

from pydantic import BaseModel, EmailStr

from ..models.user import UserRole, UserStatus


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    first_name: str
    last_name: str
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.ACTIVE
    session_timeout: bool = True
