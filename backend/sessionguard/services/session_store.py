"""Persistence boundary for sessions and security incidents.

The lifecycle manager, timeout guard and event logger only ever talk to the
abstract stores below. ``SqlSessionStore`` and ``SqlIncidentStore`` run the
synchronous CRUD helpers on a worker thread with a short-lived DB session
per call, and hand back pydantic snapshots so no ORM instance escapes the
session that loaded it.
"""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from sqlalchemy.orm import Session

from .. import crud, schemas
from ..utils.clock import utcnow

T = TypeVar("T")


@dataclass(frozen=True)
class SessionFilter:
    ids: Optional[Sequence[str]] = None
    user_id: Optional[int] = None
    token: Optional[str] = None

    def is_empty(self) -> bool:
        return self.ids is None and self.user_id is None and self.token is None


@dataclass(frozen=True)
class SessionCleanupCriteria:
    rotated_before: Optional[datetime] = None
    expired_before: Optional[datetime] = None
    include_inactive: bool = False


@dataclass(frozen=True)
class IncidentFilter:
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    severities: Optional[Iterable[str]] = None
    types: Optional[Iterable[str]] = None
    user_id: Optional[int] = None


class SessionStore(abc.ABC):
    @abc.abstractmethod
    async def find_active_session(self, token: str, now: datetime) -> Optional[schemas.SessionRecord]:
        ...

    @abc.abstractmethod
    async def find_session_by_user_and_agent(
        self, user_id: int, user_agent: str, now: datetime
    ) -> Optional[schemas.SessionRecord]:
        ...

    @abc.abstractmethod
    async def list_active_sessions(self, user_id: int, now: datetime) -> List[schemas.SessionRecord]:
        ...

    @abc.abstractmethod
    async def upsert_session(
        self, user_id: int, user_agent: str, fields: Dict[str, Any]
    ) -> schemas.SessionRecord:
        ...

    @abc.abstractmethod
    async def update_session(self, session_id: str, fields: Dict[str, Any]) -> Optional[schemas.SessionRecord]:
        ...

    @abc.abstractmethod
    async def deactivate_sessions(self, flt: SessionFilter, reason: str) -> int:
        ...

    @abc.abstractmethod
    async def delete_sessions(self, criteria: SessionCleanupCriteria) -> int:
        ...

    @abc.abstractmethod
    async def find_user(self, user_id: int) -> Optional[schemas.UserSnapshot]:
        ...


class IncidentStore(abc.ABC):
    @abc.abstractmethod
    async def append_security_incidents(self, events: Sequence[schemas.SecurityEvent]) -> int:
        ...

    @abc.abstractmethod
    async def query_security_incidents(
        self, flt: IncidentFilter, skip: int = 0, limit: int = 100
    ) -> List[schemas.SecurityIncidentRecord]:
        ...

    @abc.abstractmethod
    async def delete_security_incidents(self, before: datetime, severities: Iterable[str]) -> int:
        ...


class _ThreadedStore:
    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def _call(self, fn: Callable[[Session], T]) -> T:
        def run() -> T:
            with self._session_factory() as db:
                return fn(db)

        return await asyncio.to_thread(run)


def _record(row) -> Optional[schemas.SessionRecord]:
    return schemas.SessionRecord.model_validate(row) if row is not None else None


class SqlSessionStore(_ThreadedStore, SessionStore):
    async def find_active_session(self, token, now):
        return await self._call(lambda db: _record(crud.crud_session.get_active_session_by_token(db, token, now)))

    async def find_session_by_user_and_agent(self, user_id, user_agent, now):
        return await self._call(
            lambda db: _record(crud.crud_session.get_session_by_user_and_agent(db, user_id, user_agent, now))
        )

    async def list_active_sessions(self, user_id, now):
        return await self._call(
            lambda db: [_record(row) for row in crud.crud_session.list_active_sessions(db, user_id, now)]
        )

    async def upsert_session(self, user_id, user_agent, fields):
        return await self._call(lambda db: _record(crud.crud_session.upsert_session(db, user_id, user_agent, fields)))

    async def update_session(self, session_id, fields):
        return await self._call(lambda db: _record(crud.crud_session.update_session(db, session_id, fields)))

    async def deactivate_sessions(self, flt, reason):
        if flt.is_empty():
            raise ValueError("Refusing to deactivate sessions without a filter")
        now = self._clock()
        return await self._call(
            lambda db: crud.crud_session.deactivate_sessions(
                db,
                ids=flt.ids,
                user_id=flt.user_id,
                token=flt.token,
                reason=reason,
                now=now,
            )
        )

    async def delete_sessions(self, criteria):
        return await self._call(
            lambda db: crud.crud_session.delete_sessions(
                db,
                rotated_before=criteria.rotated_before,
                expired_before=criteria.expired_before,
                include_inactive=criteria.include_inactive,
            )
        )

    async def find_user(self, user_id):
        def load(db: Session) -> Optional[schemas.UserSnapshot]:
            row = crud.user.get_user(db, user_id)
            return schemas.UserSnapshot.model_validate(row) if row is not None else None

        return await self._call(load)


class SqlIncidentStore(_ThreadedStore, IncidentStore):
    async def append_security_incidents(self, events):
        batch = list(events)
        if not batch:
            return 0
        return await self._call(lambda db: crud.crud_security_incident.create_incidents(db, batch))

    async def query_security_incidents(self, flt, skip=0, limit=100):
        def load(db: Session) -> List[schemas.SecurityIncidentRecord]:
            rows = crud.crud_security_incident.query_incidents(
                db,
                since=flt.since,
                until=flt.until,
                severities=flt.severities,
                types=flt.types,
                user_id=flt.user_id,
                skip=skip,
                limit=limit,
            )
            return [schemas.SecurityIncidentRecord.model_validate(row) for row in rows]

        return await self._call(load)

    async def delete_security_incidents(self, before, severities):
        values = [getattr(s, "value", s) for s in severities]
        return await self._call(
            lambda db: crud.crud_security_incident.delete_incidents(db, before=before, severities=values)
        )
