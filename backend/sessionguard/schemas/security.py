# backend/sessionguard/schemas/security.py

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..models.security_incident import SecurityEventType, SecuritySeverity


class SecurityEvent(BaseModel):
    type: SecurityEventType
    severity: SecuritySeverity
    description: str
    user_id: Optional[int] = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Stamped by the logger when the event is accepted
    timestamp: Optional[datetime] = None


class SecurityIncidentRecord(BaseModel):
    id: int
    type: str
    severity: str
    description: str
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = {
        "from_attributes": True
    }


class StatisticsTimeframe(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def window(self) -> timedelta:
        return {
            StatisticsTimeframe.HOUR: timedelta(hours=1),
            StatisticsTimeframe.DAY: timedelta(days=1),
            StatisticsTimeframe.WEEK: timedelta(weeks=1),
            StatisticsTimeframe.MONTH: timedelta(days=30),
        }[self]


class SecurityStatistics(BaseModel):
    total: int = 0
    by_severity: Dict[str, int] = Field(
        default_factory=lambda: {s.value: 0 for s in SecuritySeverity}
    )
    by_type: Dict[str, int] = Field(default_factory=dict)
    timeframe: StatisticsTimeframe
    start_date: datetime
    end_date: datetime
