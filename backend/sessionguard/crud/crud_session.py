from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models

logger = logging.getLogger(__name__)


def get_session(db: Session, session_id: str) -> Optional[models.UserSession]:
    return db.query(models.UserSession).filter(models.UserSession.id == session_id).first()


def get_active_session_by_token(
    db: Session, token: str, now: datetime
) -> Optional[models.UserSession]:
    return (
        db.query(models.UserSession)
        .filter(
            models.UserSession.token == token,
            models.UserSession.is_active.is_(True),
            models.UserSession.expires_at > now,
        )
        .first()
    )


def get_session_by_user_and_agent(
    db: Session, user_id: int, user_agent: str, now: datetime
) -> Optional[models.UserSession]:
    return (
        db.query(models.UserSession)
        .filter(
            models.UserSession.user_id == user_id,
            models.UserSession.user_agent == user_agent,
            models.UserSession.is_active.is_(True),
            models.UserSession.expires_at > now,
        )
        .first()
    )


def list_active_sessions(
    db: Session, user_id: int, now: datetime
) -> List[models.UserSession]:
    """Active, unexpired sessions for a user, most recently used first."""
    return (
        db.query(models.UserSession)
        .filter(
            models.UserSession.user_id == user_id,
            models.UserSession.is_active.is_(True),
            models.UserSession.expires_at > now,
        )
        .order_by(
            models.UserSession.last_active_at.desc(),
            models.UserSession.created_at.desc(),
            models.UserSession.id.asc(),
        )
        .all()
    )


def upsert_session(
    db: Session, user_id: int, user_agent: str, fields: Dict[str, Any]
) -> models.UserSession:
    """Insert or overwrite the single row keyed by (user_id, user_agent)."""
    row = (
        db.query(models.UserSession)
        .filter(
            models.UserSession.user_id == user_id,
            models.UserSession.user_agent == user_agent,
        )
        .first()
    )
    if row is None:
        row = models.UserSession(user_id=user_id, user_agent=user_agent, **fields)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent login for the same device won the insert
            db.rollback()
            logger.info("Session upsert raced for user %s; updating existing row", user_id)
            row = (
                db.query(models.UserSession)
                .filter(
                    models.UserSession.user_id == user_id,
                    models.UserSession.user_agent == user_agent,
                )
                .one()
            )
            for key, value in fields.items():
                setattr(row, key, value)
            db.commit()
    else:
        for key, value in fields.items():
            setattr(row, key, value)
        db.commit()
    db.refresh(row)
    return row


def update_session(
    db: Session, session_id: str, fields: Dict[str, Any]
) -> Optional[models.UserSession]:
    row = get_session(db, session_id)
    if row is None:
        return None
    for key, value in fields.items():
        setattr(row, key, value)
    db.commit()
    db.refresh(row)
    return row


def deactivate_sessions(
    db: Session,
    *,
    ids: Optional[Iterable[str]] = None,
    user_id: Optional[int] = None,
    token: Optional[str] = None,
    reason: str,
    now: datetime,
) -> int:
    """Mark matching active rows inactive. Returns the number of rows changed."""
    query = db.query(models.UserSession).filter(models.UserSession.is_active.is_(True))
    if ids is not None:
        id_list = list(ids)
        if not id_list:
            return 0
        query = query.filter(models.UserSession.id.in_(id_list))
    if user_id is not None:
        query = query.filter(models.UserSession.user_id == user_id)
    if token is not None:
        query = query.filter(models.UserSession.token == token)
    count = query.update(
        {
            models.UserSession.is_active: False,
            models.UserSession.ended_at: now,
            models.UserSession.end_reason: reason,
        },
        synchronize_session=False,
    )
    db.commit()
    return count


def delete_sessions(
    db: Session,
    *,
    rotated_before: Optional[datetime] = None,
    expired_before: Optional[datetime] = None,
    include_inactive: bool = False,
) -> int:
    """Delete rows matching any of the given criteria."""
    clauses = []
    if rotated_before is not None:
        # Legacy rows were never rotated; their creation time stands in
        clauses.append(
            func.coalesce(models.UserSession.rotated_at, models.UserSession.created_at) < rotated_before
        )
    if expired_before is not None:
        clauses.append(models.UserSession.expires_at < expired_before)
    if include_inactive:
        clauses.append(models.UserSession.is_active.is_(False))
    if not clauses:
        return 0
    count = (
        db.query(models.UserSession)
        .filter(or_(*clauses))
        .delete(synchronize_session=False)
    )
    db.commit()
    return count
