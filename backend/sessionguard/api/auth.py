# backend/sessionguard/api/auth.py

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import ORJSONResponse
from fastapi.security import OAuth2PasswordRequestForm

from .. import crud
from ..models.security_incident import SecurityEventType
from ..schemas.session import LoginResponse, LogoutResponse, UserSnapshot
from ..services.security_logger import SecurityEventLogger
from ..services.session_manager import SessionLifecycleManager
from ..utils.auth import normalize_email, verify_password
from ..utils.errors import SessionErrorCode, SessionRejected, error_response
from .dependencies import get_current_user, get_security_logger, get_session_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def _authenticate(session_factory, email: str, password: str) -> tuple[Optional[UserSnapshot], bool]:
    """Return (user, password_ok); user is None when the email is unknown."""
    with session_factory() as db:
        user = crud.user.get_user_by_email(db, email)
        if user is None:
            return None, False
        return UserSnapshot.model_validate(user), verify_password(password, user.password)


@router.post("/login", response_model=LoginResponse)
async def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    manager: SessionLifecycleManager = Depends(get_session_manager),
    security_logger: SecurityEventLogger = Depends(get_security_logger),
):
    email = normalize_email(form_data.username)
    user, password_ok = await asyncio.to_thread(
        _authenticate, request.app.state.session_factory, email, form_data.password
    )
    if user is None or not password_ok:
        security_logger.log_auth(
            SecurityEventType.LOGIN_FAILURE,
            request,
            user.id if user else None,
            {"email": email},
        )
        raise error_response(
            "Incorrect email or password",
            {"username": "invalid_credentials"},
            status.HTTP_401_UNAUTHORIZED,
        )

    if user.status.is_blocked:
        security_logger.log_auth(
            SecurityEventType.LOGIN_FAILURE,
            request,
            user.id,
            {"email": email, "reason": user.status.value},
        )
        raise SessionRejected(SessionErrorCode.ACCOUNT_SUSPENDED)

    response = ORJSONResponse(LoginResponse(user=user).model_dump(mode="json"))
    await manager.create_session(user.id, request, response)
    security_logger.log_auth(SecurityEventType.LOGIN_SUCCESS, request, user.id)
    return response


async def _logout(request: Request, manager: SessionLifecycleManager, everywhere: bool) -> ORJSONResponse:
    ended = await manager.logout(request, everywhere=everywhere)
    response = ORJSONResponse(LogoutResponse(sessions_ended=ended).model_dump())
    manager.cookies.clear(response)
    return response


@router.post("/logout", response_model=LogoutResponse)
async def logout(request: Request, manager: SessionLifecycleManager = Depends(get_session_manager)):
    """End the session carried by the cookie and clear it."""
    return await _logout(request, manager, everywhere=False)


@router.post("/logout-all", response_model=LogoutResponse)
async def logout_all(request: Request, manager: SessionLifecycleManager = Depends(get_session_manager)):
    """End every session of the cookie's owner."""
    return await _logout(request, manager, everywhere=True)


@router.get("/me", response_model=UserSnapshot)
async def read_current_user(current_user: UserSnapshot = Depends(get_current_user)):
    return current_user
