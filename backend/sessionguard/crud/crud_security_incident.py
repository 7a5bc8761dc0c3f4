from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from .. import models, schemas
from ..utils.clock import utcnow


def create_incidents(db: Session, events: Sequence[schemas.SecurityEvent]) -> int:
    """Insert a batch of events in one transaction."""
    rows = [
        models.SecurityIncident(
            type=event.type.value,
            severity=event.severity.value,
            description=event.description,
            user_id=event.user_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            details=event.metadata or {},
            created_at=event.timestamp or utcnow(),
        )
        for event in events
    ]
    db.add_all(rows)
    db.commit()
    return len(rows)


def query_incidents(
    db: Session,
    *,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    severities: Optional[Iterable[str]] = None,
    types: Optional[Iterable[str]] = None,
    user_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.SecurityIncident]:
    query = db.query(models.SecurityIncident)
    if since is not None:
        query = query.filter(models.SecurityIncident.created_at >= since)
    if until is not None:
        query = query.filter(models.SecurityIncident.created_at <= until)
    if severities is not None:
        query = query.filter(models.SecurityIncident.severity.in_(list(severities)))
    if types is not None:
        query = query.filter(models.SecurityIncident.type.in_(list(types)))
    if user_id is not None:
        query = query.filter(models.SecurityIncident.user_id == user_id)
    return (
        query.order_by(models.SecurityIncident.created_at.desc(), models.SecurityIncident.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def delete_incidents(
    db: Session, *, before: datetime, severities: Iterable[str]
) -> int:
    count = (
        db.query(models.SecurityIncident)
        .filter(
            models.SecurityIncident.created_at < before,
            models.SecurityIncident.severity.in_(list(severities)),
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return count
