import logging
import pytest
from fastapi import HTTPException
import orjson

from sessionguard.utils.errors import (
    SessionErrorCode,
    SessionRejected,
    error_response,
    session_error_response,
)


def test_error_response_logs(caplog):
    caplog.set_level(logging.ERROR, logger="sessionguard.utils.errors")
    with pytest.raises(HTTPException):
        raise error_response("Invalid", {"field": "bad"})
    assert any(
        "Invalid" in r.getMessage() and "'field': 'bad'" in r.getMessage()
        for r in caplog.records
    )


@pytest.mark.parametrize(
    "code,status",
    [
        (SessionErrorCode.SESSION_NOT_FOUND, 401),
        (SessionErrorCode.SESSION_TIMEOUT, 401),
        (SessionErrorCode.SECURITY_VIOLATION, 401),
        (SessionErrorCode.ACCOUNT_SUSPENDED, 423),
    ],
)
def test_session_error_response_shape(code, status):
    response = session_error_response(SessionRejected(code))
    assert response.status_code == status
    body = orjson.loads(response.body)
    assert body["success"] is False
    assert body["code"] == code.value
    assert body["message"]


def test_custom_rejection_message():
    exc = SessionRejected(SessionErrorCode.SESSION_TIMEOUT, "Session has timed out due to inactivity")
    assert orjson.loads(session_error_response(exc).body)["message"] == "Session has timed out due to inactivity"
