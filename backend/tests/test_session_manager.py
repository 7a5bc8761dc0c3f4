import asyncio
import logging
from datetime import timedelta

from jose import jwt
import pytest
from starlette.responses import Response

from sessionguard import crud, models
from sessionguard.middleware.session_timeout import SessionTimeoutGuard
from sessionguard.models import SecurityEventType, SecuritySeverity, UserStatus
from sessionguard.services.session_manager import SessionState, SessionTier
from sessionguard.services.session_store import SqlSessionStore
from sessionguard.utils.errors import SessionErrorCode

from session_helpers import CHROME_UA, FIREFOX_UA, TEST_SECRET, make_request

AGENTS = {name: f"Agent-{name.upper()}/1.0" for name in "abcd"}


def run(coro):
    return asyncio.run(coro)


def _session_rows(session_factory, user_id):
    with session_factory() as db:
        rows = db.query(models.UserSession).filter(models.UserSession.user_id == user_id).all()
        return {row.user_agent: (row.is_active, row.end_reason) for row in rows}


def _cookie(cookies, token):
    return {"access_token": cookies.sign(token)}


def _persisted_events(manager, memory_incidents):
    run(manager.security_logger.flush())
    return memory_incidents.rows


def test_create_session_persists_row_and_sets_cookie(build_manager, make_user, session_store, clock, cookies):
    manager = build_manager()
    user_id = make_user()
    response = Response()

    token = run(manager.create_session(user_id, make_request(), response))

    assert len(token) == 64
    cookie_value = response.headers["set-cookie"].split(";")[0].split("=", 1)[1]
    assert cookies.unsign(cookie_value) == token
    record = run(session_store.find_active_session(token, clock.now))
    assert record.user_id == user_id
    assert record.device_info == "Chrome on Windows"
    assert record.ip_address == "203.0.113.7"
    assert record.expires_at == clock.now + timedelta(hours=1)
    assert record.fingerprint


def test_create_session_logs_session_created(build_manager, make_user, memory_incidents):
    manager = build_manager()
    user_id = make_user()
    run(manager.create_session(user_id, make_request()))
    events = _persisted_events(manager, memory_incidents)
    assert [e.type for e in events] == [SecurityEventType.SESSION_CREATED]
    assert events[0].user_id == user_id


def test_login_from_same_device_overwrites_session(build_manager, make_user, session_store, session_factory, clock):
    manager = build_manager()
    user_id = make_user()
    first = run(manager.create_session(user_id, make_request()))
    second = run(manager.create_session(user_id, make_request()))

    assert first != second
    assert run(session_store.find_active_session(first, clock.now)) is None
    assert run(session_store.find_active_session(second, clock.now)) is not None
    assert len(_session_rows(session_factory, user_id)) == 1


def test_concurrency_cap_evicts_least_recently_active(build_manager, make_user, session_factory, clock, cookies):
    manager = build_manager(max_sessions=3)
    user_id = make_user()
    tokens = {}
    for name in "abc":
        tokens[name] = run(manager.create_session(user_id, make_request(user_agent=AGENTS[name])))
        clock.advance(minutes=1)

    # A is used again, leaving B as the least recently active session
    outcome = run(manager.validate_session(make_request(user_agent=AGENTS["a"], cookies=_cookie(cookies, tokens["a"]))))
    assert outcome.authenticated
    clock.advance(minutes=1)

    run(manager.create_session(user_id, make_request(user_agent=AGENTS["d"])))

    rows = _session_rows(session_factory, user_id)
    assert rows[AGENTS["b"]] == (False, "evicted")
    assert all(rows[AGENTS[name]] == (True, None) for name in "acd")


def test_relogin_on_known_device_does_not_evict(build_manager, make_user, session_factory, clock):
    manager = build_manager(max_sessions=3)
    user_id = make_user()
    for name in "abc":
        run(manager.create_session(user_id, make_request(user_agent=AGENTS[name])))
        clock.advance(minutes=1)

    run(manager.create_session(user_id, make_request(user_agent=AGENTS["a"])))

    rows = _session_rows(session_factory, user_id)
    assert all(rows[AGENTS[name]] == (True, None) for name in "abc")


def test_max_sessions_must_be_positive(build_manager):
    with pytest.raises(ValueError):
        build_manager(max_sessions=0)


def test_validate_attaches_user_and_bumps_activity(build_manager, make_user, session_store, clock, cookies):
    manager = build_manager()
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    clock.advance(minutes=2)

    outcome = run(manager.validate_session(make_request(cookies=_cookie(cookies, token))))

    assert outcome.authenticated
    assert outcome.context.user.id == user_id
    assert outcome.context.state is SessionState.ACTIVE
    assert outcome.set_cookie_token is None
    record = run(session_store.find_active_session(token, clock.now))
    assert record.last_active_at == clock.now


def test_requests_without_cookie_or_on_bootstrap_paths_pass_through(build_manager):
    manager = build_manager()
    assert not run(manager.validate_session(make_request())).authenticated
    outcome = run(manager.validate_session(make_request(path="/auth/login", cookies={"access_token": "junk"})))
    assert not outcome.authenticated
    assert not outcome.clear_cookies
    assert outcome.rejection is None


def test_tampered_cookie_is_cleared(build_manager, make_user, cookies):
    manager = build_manager()
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    tampered = cookies.sign(token)[:-4] + "abcd"

    outcome = run(manager.validate_session(make_request(cookies={"access_token": tampered})))

    assert not outcome.authenticated
    assert outcome.clear_cookies
    assert outcome.rejection is None


def test_fingerprint_mismatch_invalidates_every_session(
    build_manager, make_user, session_factory, memory_incidents, session_store, clock, cookies
):
    manager = build_manager(production=True)
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    run(manager.create_session(user_id, make_request(user_agent=FIREFOX_UA)))
    original = run(session_store.find_active_session(token, clock.now))

    stolen = make_request(cookies=_cookie(cookies, token), headers={"accept-language": "fr-FR"})
    outcome = run(manager.validate_session(stolen))

    assert outcome.rejection.code is SessionErrorCode.SECURITY_VIOLATION
    assert outcome.rejection.status_code == 401
    assert outcome.clear_cookies
    rows = _session_rows(session_factory, user_id)
    assert set(rows.values()) == {(False, "hijack_invalidated")}

    hijacks = [e for e in _persisted_events(manager, memory_incidents) if e.type is SecurityEventType.SESSION_HIJACKING]
    assert len(hijacks) == 1
    assert hijacks[0].severity is SecuritySeverity.CRITICAL
    assert hijacks[0].metadata["original_fingerprint"] == original.fingerprint
    assert hijacks[0].metadata["current_fingerprint"] != original.fingerprint


def test_fingerprint_is_checked_before_idle_timeout(build_manager, make_user, session_store, clock, cookies):
    manager = build_manager(production=True)
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    record = run(session_store.find_active_session(token, clock.now))
    run(session_store.update_session(record.id, {"last_active_at": clock.now - timedelta(hours=2)}))

    stolen = make_request(cookies=_cookie(cookies, token), headers={"accept-language": "fr-FR"})
    outcome = run(manager.validate_session(stolen))

    assert outcome.rejection.code is SessionErrorCode.SECURITY_VIOLATION


def test_fingerprint_not_enforced_outside_production(build_manager, make_user, cookies):
    manager = build_manager(production=False)
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))

    other = make_request(cookies=_cookie(cookies, token), headers={"accept-language": "fr-FR"})
    assert run(manager.validate_session(other)).authenticated


def test_idle_session_times_out(
    build_manager, make_user, session_store, session_factory, memory_incidents, clock, cookies
):
    manager = build_manager(production=True)
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    record = run(session_store.find_active_session(token, clock.now))
    # Row written under a longer timeout: still unexpired but idle past one hour
    run(
        session_store.update_session(
            record.id,
            {"last_active_at": clock.now - timedelta(hours=2), "expires_at": clock.now + timedelta(hours=6)},
        )
    )

    outcome = run(manager.validate_session(make_request(cookies=_cookie(cookies, token))))

    assert outcome.rejection.code is SessionErrorCode.SESSION_TIMEOUT
    assert _session_rows(session_factory, user_id)[CHROME_UA] == (False, "timed_out")
    events = _persisted_events(manager, memory_incidents)
    assert SecurityEventType.SESSION_EXPIRED in [e.type for e in events]


def test_suspended_account_wins_over_fingerprint_mismatch(
    build_manager, make_user, session_factory, cookies
):
    manager = build_manager(production=True)
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    with session_factory() as db:
        crud.user.set_status(db, user_id, UserStatus.SUSPENDED)

    stolen = make_request(cookies=_cookie(cookies, token), headers={"accept-language": "fr-FR"})
    outcome = run(manager.validate_session(stolen))

    assert outcome.rejection.code is SessionErrorCode.ACCOUNT_SUSPENDED
    assert outcome.rejection.status_code == 423
    assert _session_rows(session_factory, user_id)[CHROME_UA] == (False, "account_suspended")


def test_token_rotation_invalidates_previous_token(build_manager, make_user, session_store, clock, cookies):
    manager = build_manager(rotation_interval=timedelta(minutes=5))
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    logged_in_at = clock.now

    clock.advance(minutes=6)
    rotated = run(manager.validate_session(make_request(cookies=_cookie(cookies, token))))
    assert rotated.authenticated
    assert rotated.context.state is SessionState.ROTATED
    new_token = rotated.set_cookie_token
    assert new_token and new_token != token
    record = run(session_store.find_active_session(new_token, clock.now))
    assert record.created_at == logged_in_at
    assert record.rotated_at == clock.now

    clock.advance(minutes=1)
    stale = run(manager.validate_session(make_request(cookies=_cookie(cookies, token))))
    assert not stale.authenticated
    assert stale.clear_cookies

    fresh = run(manager.validate_session(make_request(cookies=_cookie(cookies, new_token))))
    assert fresh.authenticated
    assert fresh.set_cookie_token is None


def test_rotation_failure_keeps_current_token(build_manager, make_user, session_factory, clock, cookies):
    class NoRotationStore(SqlSessionStore):
        async def update_session(self, session_id, fields):
            if "token" in fields:
                raise RuntimeError("write failed")
            return await super().update_session(session_id, fields)

    store = NoRotationStore(session_factory, clock=clock)
    manager = build_manager(store=store)
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))

    clock.advance(minutes=6)
    outcome = run(manager.validate_session(make_request(cookies=_cookie(cookies, token))))

    assert outcome.authenticated
    assert outcome.set_cookie_token is None
    assert run(store.find_active_session(token, clock.now)).last_active_at == clock.now


def test_storage_failure_degrades_to_unauthenticated(build_manager, make_user, session_factory, clock, cookies, caplog):
    class BrokenLookupStore(SqlSessionStore):
        async def find_active_session(self, token, now):
            raise RuntimeError("database unavailable")

    caplog.set_level(logging.ERROR, logger="sessionguard.services.session_manager")
    manager = build_manager(store=BrokenLookupStore(session_factory, clock=clock))
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))

    outcome = run(manager.validate_session(make_request(cookies=_cookie(cookies, token))))

    assert not outcome.authenticated
    assert outcome.rejection is None
    assert not outcome.clear_cookies
    assert any("continuing unauthenticated" in r.getMessage() for r in caplog.records)


def test_legacy_jwt_cookie_resolves_by_user_and_agent(build_manager, make_user, session_store, clock):
    manager = build_manager(production=True)
    user_id = make_user()
    run(
        session_store.upsert_session(
            user_id,
            CHROME_UA,
            {
                "token": None,
                "fingerprint": None,
                "ip_address": "203.0.113.7",
                "created_at": clock.now,
                "last_active_at": clock.now,
                "expires_at": clock.now + timedelta(hours=1),
                "is_active": True,
            },
        )
    )
    legacy = jwt.encode({"userId": user_id}, TEST_SECRET, algorithm="HS256")

    outcome = run(manager.validate_session(make_request(cookies={"access_token": legacy})))
    assert outcome.authenticated
    assert outcome.context.legacy

    other_device = run(manager.validate_session(make_request(user_agent=FIREFOX_UA, cookies={"access_token": legacy})))
    assert not other_device.authenticated
    assert other_device.clear_cookies


def test_basic_tier_skips_fingerprint_and_activity_bump(build_manager, make_user, session_store, clock, cookies):
    manager = build_manager(production=True)
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    created_at = clock.now
    clock.advance(minutes=10)

    other = make_request(cookies=_cookie(cookies, token), headers={"accept-language": "fr-FR"})
    outcome = run(manager.validate_session(other, SessionTier.BASIC))

    assert outcome.authenticated
    assert outcome.set_cookie_token is None
    record = run(session_store.find_active_session(token, clock.now))
    assert record.last_active_at == created_at
    assert record.expires_at == clock.now + timedelta(hours=1)


def test_basic_tier_keeps_active_user_past_session_timeout(build_manager, make_user, session_store, clock, cookies):
    manager = build_manager()
    guard = SessionTimeoutGuard(session_store, idle_timeout=timedelta(minutes=30), clock=clock)
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))

    # Eight requests twelve minutes apart run well past the one hour timeout
    for _ in range(8):
        clock.advance(minutes=12)
        outcome = run(manager.validate_session(make_request(cookies=_cookie(cookies, token)), SessionTier.BASIC))
        assert outcome.authenticated
        assert not outcome.clear_cookies
        run(guard.check(user_id, CHROME_UA))

    status = run(guard.status(user_id, CHROME_UA))
    assert status.time_remaining == 1800
    record = run(session_store.find_active_session(token, clock.now))
    assert record.is_active
    assert record.expires_at == clock.now + timedelta(hours=1)


def test_logout_ends_current_session_only(build_manager, make_user, session_factory, memory_incidents, cookies):
    manager = build_manager()
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    run(manager.create_session(user_id, make_request(user_agent=FIREFOX_UA)))

    assert run(manager.logout(make_request(cookies=_cookie(cookies, token)))) == 1

    rows = _session_rows(session_factory, user_id)
    assert rows[CHROME_UA] == (False, "logged_out")
    assert rows[FIREFOX_UA] == (True, None)
    assert SecurityEventType.LOGOUT in [e.type for e in _persisted_events(manager, memory_incidents)]


def test_logout_everywhere_ends_all_sessions(build_manager, make_user, session_factory, cookies):
    manager = build_manager()
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    run(manager.create_session(user_id, make_request(user_agent=FIREFOX_UA)))

    assert run(manager.logout(make_request(cookies=_cookie(cookies, token)), everywhere=True)) == 2
    assert set(_session_rows(session_factory, user_id).values()) == {(False, "logged_out")}


def test_logout_without_valid_cookie_is_noop(build_manager):
    manager = build_manager()
    assert run(manager.logout(make_request())) == 0
    assert run(manager.logout(make_request(cookies={"access_token": "forged"}))) == 0


def test_list_sessions_marks_current(build_manager, make_user, session_store, clock):
    manager = build_manager()
    user_id = make_user()
    token = run(manager.create_session(user_id, make_request()))
    clock.advance(minutes=1)
    run(manager.create_session(user_id, make_request(user_agent=FIREFOX_UA)))
    current = run(session_store.find_active_session(token, clock.now))

    sessions = run(manager.list_sessions(user_id, current.id))

    assert [s.device_info for s in sessions] == ["Firefox on Linux", "Chrome on Windows"]
    assert [s.current for s in sessions] == [False, True]


def test_cleanup_removes_expired_inactive_and_unrotated_rows(build_manager, make_user, session_store, session_factory, clock):
    manager = build_manager(retention=timedelta(hours=24))
    user_id = make_user()
    now = clock.now
    base = {"ip_address": "203.0.113.7", "is_active": True}
    rows = {
        "fresh": {"created_at": now, "last_active_at": now, "expires_at": now + timedelta(hours=1)},
        "inactive": {"created_at": now, "last_active_at": now, "expires_at": now + timedelta(hours=1), "is_active": False},
        "expired": {"created_at": now - timedelta(hours=2), "last_active_at": now - timedelta(hours=2), "expires_at": now - timedelta(hours=1)},
        "ancient": {"created_at": now - timedelta(hours=25), "last_active_at": now, "expires_at": now + timedelta(hours=1)},
        "stale": {"created_at": now - timedelta(hours=30), "rotated_at": now - timedelta(hours=25), "last_active_at": now, "expires_at": now + timedelta(hours=1)},
        "long_lived": {"created_at": now - timedelta(hours=30), "rotated_at": now - timedelta(minutes=2), "last_active_at": now, "expires_at": now + timedelta(hours=1)},
    }
    for agent, fields in rows.items():
        run(session_store.upsert_session(user_id, agent, {**base, **fields}))

    assert run(manager.cleanup_expired_sessions()) == 4
    assert sorted(_session_rows(session_factory, user_id)) == ["fresh", "long_lived"]


def test_cleanup_failure_returns_zero(build_manager, session_factory, clock):
    class BrokenCleanupStore(SqlSessionStore):
        async def delete_sessions(self, criteria):
            raise RuntimeError("database unavailable")

    manager = build_manager(store=BrokenCleanupStore(session_factory, clock=clock))
    assert run(manager.cleanup_expired_sessions()) == 0
