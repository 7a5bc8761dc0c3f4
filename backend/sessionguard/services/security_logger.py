"""Deferred, batched persistence for security events.

``log_event`` is synchronous and never touches storage: it writes a log line
on the ``sessionguard.security`` logger and appends the event to an
in-memory queue. A single drain at a time moves up to ``batch_size`` events
from the head of the queue into the incident store. A failed batch goes back
to the front of the queue and the drain is retried after ``retry_delay``
seconds, so delivery is at-least-once. ``start()`` runs a periodic drain
every ``flush_interval`` seconds so the queue empties even when nobody is
enqueuing.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Optional, Set

from starlette.requests import Request

from ..auth.fingerprint import RequestMetadata
from ..models.security_incident import PURGEABLE_SEVERITIES, SecurityEventType, SecuritySeverity
from ..schemas.security import SecurityEvent, SecurityStatistics, StatisticsTimeframe
from ..utils.clock import utcnow
from .session_store import IncidentFilter, IncidentStore

logger = logging.getLogger(__name__)
security_log = logging.getLogger("sessionguard.security")

_LOG_LEVELS = {
    SecuritySeverity.CRITICAL: logging.ERROR,
    SecuritySeverity.HIGH: logging.ERROR,
    SecuritySeverity.MEDIUM: logging.WARNING,
    SecuritySeverity.LOW: logging.WARNING,
    SecuritySeverity.INFO: logging.INFO,
}

STATISTICS_PAGE_SIZE = 1000


def _request_context(request: Optional[Request]) -> Dict[str, Any]:
    if request is None:
        return {"ip_address": "system", "user_agent": "system", "user_id": None}
    meta = RequestMetadata.from_request(request)
    user = getattr(request.state, "user", None)
    return {
        "ip_address": meta.client_ip,
        "user_agent": meta.user_agent or "unknown",
        "user_id": getattr(user, "id", None),
    }


class SecurityEventLogger:
    def __init__(
        self,
        store: IncidentStore,
        *,
        batch_size: int = 50,
        retry_delay: float = 1.0,
        flush_interval: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._store = store
        self._batch_size = batch_size
        self._retry_delay = retry_delay
        self._flush_interval = flush_interval
        self._clock = clock
        self._queue: Deque[SecurityEvent] = deque()
        self._processing = False
        self._inflight: Set[asyncio.Task] = set()
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, store: IncidentStore, clock: Callable[[], datetime] = utcnow) -> "SecurityEventLogger":
        return cls(
            store,
            batch_size=settings.SECURITY_EVENT_BATCH_SIZE,
            retry_delay=settings.SECURITY_EVENT_RETRY_DELAY_SECONDS,
            flush_interval=settings.SECURITY_EVENT_FLUSH_INTERVAL_SECONDS,
            clock=clock,
        )

    @property
    def pending(self) -> int:
        return len(self._queue)

    def log_event(self, event: SecurityEvent) -> None:
        """Record ``event``: log it now, persist it later."""
        try:
            if event.timestamp is None:
                event.timestamp = self._clock()
            security_log.log(
                _LOG_LEVELS.get(event.severity, logging.WARNING),
                "Security event [%s] %s: %s",
                event.severity.value,
                event.type.value,
                event.description,
                extra={
                    "event_type": event.type.value,
                    "severity": event.severity.value,
                    "user_id": event.user_id,
                    "ip_address": event.ip_address,
                    "user_agent": event.user_agent,
                    "event_metadata": event.metadata,
                },
            )
            self._queue.append(event)
            if not self._processing:
                self._schedule_drain(0)
        except Exception:  # never let auditing break the caller
            logger.exception("Failed to record security event %s", getattr(event, "type", None))

    def _schedule_drain(self, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller); the periodic flush picks the queue up.
            return
        if delay <= 0:
            current = asyncio.current_task()
            if any(task is not current and not task.done() for task in self._inflight):
                return
            task = loop.create_task(self.drain())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        elif self._retry_handle is None:
            self._retry_handle = loop.call_later(delay, self._retry_drain)

    def _retry_drain(self) -> None:
        self._retry_handle = None
        self._schedule_drain(0)

    async def drain(self) -> int:
        """Persist one batch from the head of the queue.

        Returns the number of events written; 0 when another drain is in
        progress, the queue is empty, or the write failed.
        """
        if self._processing or not self._queue:
            return 0
        self._processing = True
        batch = [self._queue.popleft() for _ in range(min(self._batch_size, len(self._queue)))]
        try:
            await self._store.append_security_incidents(batch)
        except asyncio.CancelledError:
            self._queue.extendleft(reversed(batch))
            raise
        except Exception:
            logger.exception("Failed to persist %d security events; retrying", len(batch))
            self._queue.extendleft(reversed(batch))
            self._schedule_drain(self._retry_delay)
            return 0
        finally:
            self._processing = False
        if self._queue:
            self._schedule_drain(0)
        return len(batch)

    async def flush(self) -> int:
        """Drain until the queue is empty or a write fails."""
        persisted = 0
        while self._queue or self._processing:
            if self._processing:
                await asyncio.sleep(0.01)
                continue
            written = await self.drain()
            if written == 0:
                break
            persisted += written
        return persisted

    async def _periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.drain()
            except Exception:
                logger.exception("Periodic security event drain failed")

    def start(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._periodic_flush())

    async def stop(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        remaining = self.pending
        await self.flush()
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        if self.pending:
            logger.warning("Shutting down with %d of %d security events unpersisted", self.pending, remaining)

    # Fixed-template wrappers

    def log_auth(
        self,
        event_type: SecurityEventType,
        request: Request,
        user_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = _request_context(request)
        self.log_event(
            SecurityEvent(
                type=event_type,
                severity=SecuritySeverity.MEDIUM if event_type == SecurityEventType.LOGIN_FAILURE else SecuritySeverity.INFO,
                description=f"User authentication: {event_type.value}",
                user_id=user_id if user_id is not None else ctx["user_id"],
                ip_address=ctx["ip_address"],
                user_agent=ctx["user_agent"],
                metadata=metadata or {},
            )
        )

    def log_session(
        self,
        event_type: SecurityEventType,
        request: Optional[Request],
        user_id: Optional[int],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = _request_context(request)
        severity = SecuritySeverity.CRITICAL if event_type == SecurityEventType.SESSION_HIJACKING else SecuritySeverity.INFO
        self.log_event(
            SecurityEvent(
                type=event_type,
                severity=severity,
                description=f"Session event: {event_type.value}",
                user_id=user_id,
                ip_address=ctx["ip_address"],
                user_agent=ctx["user_agent"],
                metadata=metadata or {},
            )
        )

    def log_attack(
        self,
        event_type: SecurityEventType,
        request: Request,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = _request_context(request)
        self.log_event(
            SecurityEvent(
                type=event_type,
                severity=SecuritySeverity.HIGH,
                description=description,
                user_id=ctx["user_id"],
                ip_address=ctx["ip_address"],
                user_agent=ctx["user_agent"],
                metadata={
                    **(metadata or {}),
                    "url": str(request.url),
                    "method": request.method,
                    "query": dict(request.query_params),
                },
            )
        )

    def log_unauthorized_access(
        self,
        request: Request,
        resource: str,
        required_role: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = _request_context(request)
        user = getattr(request.state, "user", None)
        self.log_event(
            SecurityEvent(
                type=SecurityEventType.UNAUTHORIZED_ACCESS,
                severity=SecuritySeverity.MEDIUM,
                description=f"Unauthorized access attempt to {resource}",
                user_id=ctx["user_id"],
                ip_address=ctx["ip_address"],
                user_agent=ctx["user_agent"],
                metadata={
                    **(metadata or {}),
                    "resource": resource,
                    "required_role": required_role,
                    "user_role": getattr(user, "role", None),
                },
            )
        )

    def log_admin_action(
        self,
        request: Request,
        action: str,
        target_user_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = _request_context(request)
        self.log_event(
            SecurityEvent(
                type=SecurityEventType.ADMIN_ACTION,
                severity=SecuritySeverity.INFO,
                description=f"Admin action: {action}",
                user_id=ctx["user_id"],
                ip_address=ctx["ip_address"],
                user_agent=ctx["user_agent"],
                metadata={**(metadata or {}), "action": action, "target_user_id": target_user_id},
            )
        )

    def log_rate_limit(
        self,
        request: Request,
        limit: int,
        window_seconds: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = _request_context(request)
        self.log_event(
            SecurityEvent(
                type=SecurityEventType.RATE_LIMIT_EXCEEDED,
                severity=SecuritySeverity.MEDIUM,
                description=f"Rate limit exceeded: {limit} requests in {window_seconds}s",
                user_id=ctx["user_id"],
                ip_address=ctx["ip_address"],
                user_agent=ctx["user_agent"],
                metadata={
                    **(metadata or {}),
                    "limit": limit,
                    "window_seconds": window_seconds,
                    "endpoint": request.url.path,
                },
            )
        )

    def log_system_error(
        self,
        error: BaseException,
        context: str,
        request: Optional[Request] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = _request_context(request)
        self.log_event(
            SecurityEvent(
                type=SecurityEventType.SYSTEM_ERROR,
                severity=SecuritySeverity.HIGH,
                description=f"System error in {context}: {error}",
                user_id=ctx["user_id"],
                ip_address=ctx["ip_address"],
                user_agent=ctx["user_agent"],
                metadata={**(metadata or {}), "error": repr(error), "context": context},
            )
        )

    # Reporting and retention

    async def get_statistics(
        self, timeframe: StatisticsTimeframe = StatisticsTimeframe.DAY
    ) -> SecurityStatistics:
        end = self._clock()
        start = end - timeframe.window
        stats = SecurityStatistics(timeframe=timeframe, start_date=start, end_date=end)
        flt = IncidentFilter(since=start, until=end)
        skip = 0
        while True:
            rows = await self._store.query_security_incidents(flt, skip=skip, limit=STATISTICS_PAGE_SIZE)
            for row in rows:
                stats.total += 1
                stats.by_severity[row.severity] = stats.by_severity.get(row.severity, 0) + 1
                stats.by_type[row.type] = stats.by_type.get(row.type, 0) + 1
            if len(rows) < STATISTICS_PAGE_SIZE:
                break
            skip += STATISTICS_PAGE_SIZE
        return stats

    async def cleanup(self, retention_days: int = 90) -> int:
        """Delete INFO/LOW incidents older than ``retention_days``.

        MEDIUM and above are kept regardless of age.
        """
        cutoff = self._clock() - timedelta(days=retention_days)
        try:
            deleted = await self._store.delete_security_incidents(cutoff, PURGEABLE_SEVERITIES)
        except Exception:
            logger.exception("Failed to clean up security incidents")
            return 0
        logger.info("Cleaned up %d old security incidents", deleted)
        return deleted
