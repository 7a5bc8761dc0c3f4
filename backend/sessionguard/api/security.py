# backend/sessionguard/api/security.py

from typing import List

from fastapi import APIRouter, Depends, Query, Request

from ..schemas.security import SecurityStatistics, StatisticsTimeframe
from ..schemas.session import ActiveSessionResponse, UserSnapshot
from ..services.security_logger import SecurityEventLogger
from ..services.session_manager import SessionLifecycleManager
from ..middleware.session_timeout import SessionTimeoutGuard
from .dependencies import (
    get_current_user,
    get_security_logger,
    get_session_manager,
    get_timeout_guard,
    require_admin,
)

router = APIRouter(tags=["security"])


@router.get("/session/status")
async def session_status(
    request: Request,
    current_user: UserSnapshot = Depends(get_current_user),
    guard: SessionTimeoutGuard = Depends(get_timeout_guard),
):
    status = await guard.status(current_user.id, request.headers.get("user-agent", ""))
    return {"success": True, "data": status.model_dump(mode="json")}


@router.post("/session/extend")
async def extend_session(
    request: Request,
    current_user: UserSnapshot = Depends(get_current_user),
    guard: SessionTimeoutGuard = Depends(get_timeout_guard),
):
    status = await guard.extend(current_user.id, request.headers.get("user-agent", ""))
    return {"success": True, "message": "Session extended", "data": status.model_dump(mode="json")}


@router.get("/sessions", response_model=List[ActiveSessionResponse])
async def list_active_sessions(
    request: Request,
    current_user: UserSnapshot = Depends(get_current_user),
    manager: SessionLifecycleManager = Depends(get_session_manager),
):
    return await manager.list_sessions(current_user.id, getattr(request.state, "session_id", None))


@router.get("/statistics", response_model=SecurityStatistics)
async def security_statistics(
    timeframe: StatisticsTimeframe = Query(StatisticsTimeframe.DAY),
    admin: UserSnapshot = Depends(require_admin),
    security_logger: SecurityEventLogger = Depends(get_security_logger),
):
    return await security_logger.get_statistics(timeframe)
