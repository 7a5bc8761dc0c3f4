from .user import UserCreate
from .session import (
    ActiveSessionResponse,
    LoginResponse,
    LogoutResponse,
    SessionRecord,
    SessionTimeoutStatus,
    UserSnapshot,
)
from .security import (
    SecurityEvent,
    SecurityIncidentRecord,
    SecurityStatistics,
    StatisticsTimeframe,
)
