"""Periodic background jobs started from the application lifespan."""

import asyncio
import logging
from typing import List

from .security_logger import SecurityEventLogger
from .session_manager import SessionLifecycleManager

logger = logging.getLogger(__name__)


async def session_cleanup_loop(manager: SessionLifecycleManager, interval_seconds: float) -> None:
    """Delete old, expired and inactive session rows on a fixed interval.

    ``cleanup_expired_sessions`` logs and swallows storage errors, so one
    failed run never stops the loop.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await manager.cleanup_expired_sessions()
        except Exception:  # pragma: no cover - keep the scheduler alive
            logger.exception("Session cleanup tick failed")


async def security_incident_cleanup_loop(
    security_logger: SecurityEventLogger, interval_seconds: float, retention_days: int
) -> None:
    """Purge INFO/LOW incidents past retention once per interval (daily by default)."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await security_logger.cleanup(retention_days)
        except Exception:  # pragma: no cover - keep the scheduler alive
            logger.exception("Security incident cleanup tick failed")


def start_maintenance_tasks(
    manager: SessionLifecycleManager, security_logger: SecurityEventLogger, settings
) -> List[asyncio.Task]:
    return [
        asyncio.create_task(
            session_cleanup_loop(manager, settings.SESSION_CLEANUP_INTERVAL_SECONDS)
        ),
        asyncio.create_task(
            security_incident_cleanup_loop(
                security_logger,
                settings.SECURITY_EVENT_CLEANUP_INTERVAL_SECONDS,
                settings.SECURITY_EVENT_RETENTION_DAYS,
            )
        ),
    ]


async def stop_maintenance_tasks(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
