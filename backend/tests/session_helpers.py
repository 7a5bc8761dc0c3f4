"""Shared test doubles for the session security tests."""

from datetime import datetime, timedelta
from typing import List, Optional

from starlette.requests import Request

from sessionguard import schemas
from sessionguard.services.session_store import IncidentStore

TEST_SECRET = "test-cookie-secret"
FINGERPRINT_SECRET = "test-fingerprint-secret"
CHROME_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
SAFARI_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
FIREFOX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0"
EDGE_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36 Edg/124.0"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MemoryIncidentStore(IncidentStore):
    """Incident store double that can be told to fail the next N writes."""

    def __init__(self, fail_times: int = 0) -> None:
        self.rows: List[schemas.SecurityEvent] = []
        self.batches: List[int] = []
        self.fail_times = fail_times

    async def append_security_incidents(self, events):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("database unavailable")
        batch = list(events)
        self.batches.append(len(batch))
        self.rows.extend(batch)
        return len(batch)

    async def query_security_incidents(self, flt, skip=0, limit=100):
        matched = [
            schemas.SecurityIncidentRecord(
                id=index + 1,
                type=event.type.value,
                severity=event.severity.value,
                description=event.description,
                user_id=event.user_id,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                details=event.metadata,
                created_at=event.timestamp,
            )
            for index, event in enumerate(self.rows)
            if (flt.since is None or event.timestamp >= flt.since)
            and (flt.until is None or event.timestamp <= flt.until)
        ]
        return matched[skip:skip + limit]

    async def delete_security_incidents(self, before, severities):
        values = {getattr(s, "value", s) for s in severities}
        keep = [e for e in self.rows if not (e.timestamp < before and e.severity.value in values)]
        deleted = len(self.rows) - len(keep)
        self.rows = keep
        return deleted


def make_request(
    user_agent: str = CHROME_UA,
    ip: str = "203.0.113.7",
    path: str = "/api/v1/things",
    cookies: Optional[dict] = None,
    headers: Optional[dict] = None,
    method: str = "GET",
) -> Request:
    raw = {
        "user-agent": user_agent,
        "accept": "text/html,application/json",
        "accept-language": "en-US,en;q=0.9",
        "accept-encoding": "gzip, deflate, br",
    }
    raw.update(headers or {})
    if cookies:
        raw["cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())
    scope = {
        "type": "http",
        "method": method,
        "scheme": "https",
        "path": path,
        "root_path": "",
        "query_string": b"",
        "server": ("testserver", 443),
        "client": (ip, 51234),
        "headers": [(k.encode("latin-1"), v.encode("latin-1")) for k, v in raw.items() if v is not None],
    }
    return Request(scope)


