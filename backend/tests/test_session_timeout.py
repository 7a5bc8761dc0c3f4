import asyncio
from datetime import timedelta

import pytest

from sessionguard import models
from sessionguard.middleware.session_timeout import SessionTimeoutGuard
from sessionguard.utils.errors import SessionErrorCode, SessionRejected

from session_helpers import CHROME_UA


def run(coro):
    return asyncio.run(coro)


def _open_session(session_store, user_id, clock, user_agent=CHROME_UA):
    return run(
        session_store.upsert_session(
            user_id,
            user_agent,
            {
                "token": f"token-{user_id}-{len(user_agent)}",
                "created_at": clock.now,
                "last_active_at": clock.now,
                "expires_at": clock.now + timedelta(hours=1),
                "is_active": True,
            },
        )
    )


@pytest.fixture
def guard(session_store, clock):
    return SessionTimeoutGuard(session_store, idle_timeout=timedelta(minutes=30), clock=clock)


def test_check_bumps_last_activity(guard, make_user, session_store, clock):
    user_id = make_user()
    _open_session(session_store, user_id, clock)
    clock.advance(minutes=10)

    run(guard.check(user_id, CHROME_UA))

    record = run(session_store.find_session_by_user_and_agent(user_id, CHROME_UA, clock.now))
    assert record.last_active_at == clock.now


def test_check_at_exact_window_is_not_a_timeout(guard, make_user, session_store, clock):
    user_id = make_user()
    _open_session(session_store, user_id, clock)
    clock.advance(minutes=30)
    run(guard.check(user_id, CHROME_UA))


def test_idle_session_is_ended(guard, make_user, session_store, session_factory, clock):
    user_id = make_user()
    session = _open_session(session_store, user_id, clock)
    clock.advance(minutes=31)

    with pytest.raises(SessionRejected) as excinfo:
        run(guard.check(user_id, CHROME_UA))

    assert excinfo.value.code is SessionErrorCode.SESSION_TIMEOUT
    assert excinfo.value.message == "Session has timed out due to inactivity"
    with session_factory() as db:
        row = db.get(models.UserSession, session.id)
        assert not row.is_active
        assert row.end_reason == "timed_out"
        assert row.ended_at == clock.now


def test_users_without_session_timeout_are_never_timed_out(guard, make_user, session_store, clock):
    user_id = make_user(session_timeout=False)
    _open_session(session_store, user_id, clock)
    clock.advance(minutes=45)
    run(guard.check(user_id, CHROME_UA))
    assert run(session_store.find_session_by_user_and_agent(user_id, CHROME_UA, clock.now)).is_active


def test_missing_session_is_rejected(guard, make_user):
    user_id = make_user()
    with pytest.raises(SessionRejected) as excinfo:
        run(guard.check(user_id, CHROME_UA))
    assert excinfo.value.code is SessionErrorCode.SESSION_NOT_FOUND


def test_unknown_user_is_ignored(guard):
    run(guard.check(404, CHROME_UA))


def test_status_reports_remaining_time(guard, make_user, session_store, clock):
    user_id = make_user()
    session = _open_session(session_store, user_id, clock)
    clock.advance(minutes=10)

    status = run(guard.status(user_id, CHROME_UA))

    assert status.is_active
    assert status.time_remaining == 20 * 60
    assert status.expires_at == session.last_active_at + timedelta(minutes=30)


def test_status_floors_remaining_time_at_zero(guard, make_user, session_store, clock):
    user_id = make_user()
    _open_session(session_store, user_id, clock)
    clock.advance(minutes=50)
    assert run(guard.status(user_id, CHROME_UA)).time_remaining == 0


def test_extend_resets_the_window(guard, make_user, session_store, clock):
    user_id = make_user()
    _open_session(session_store, user_id, clock)
    clock.advance(minutes=20)

    status = run(guard.extend(user_id, CHROME_UA))

    assert status.time_remaining == 30 * 60
    assert status.last_active_at == clock.now
