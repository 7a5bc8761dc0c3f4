import os
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables for tests before sessionguard reads them
load_dotenv(Path(__file__).resolve().parents[1] / '.env.test')
os.environ.setdefault("PYTEST_RUN", "1")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from sqlalchemy.orm import sessionmaker

from sessionguard import crud, schemas
from sessionguard.auth.fingerprint import FingerprintGenerator
from sessionguard.auth.utils import SessionCookies
from sessionguard.database import Base, build_engine
from sessionguard.models import UserRole, UserStatus
from sessionguard.services.security_logger import SecurityEventLogger
from sessionguard.services.session_manager import SessionLifecycleManager
from sessionguard.services.session_store import SqlIncidentStore, SqlSessionStore

from session_helpers import FINGERPRINT_SECRET, TEST_SECRET, FakeClock, MemoryIncidentStore


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'sessionguard-test.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def session_store(session_factory, clock):
    return SqlSessionStore(session_factory, clock=clock)


@pytest.fixture
def incident_store(session_factory, clock):
    return SqlIncidentStore(session_factory, clock=clock)


@pytest.fixture
def memory_incidents():
    return MemoryIncidentStore()


@pytest.fixture
def make_user(session_factory):
    def _make(
        email: str = "alice@example.com",
        password: str = "s3cret-pass",
        role: UserRole = UserRole.USER,
        status: UserStatus = UserStatus.ACTIVE,
        session_timeout: bool = True,
    ) -> int:
        with session_factory() as db:
            user = crud.user.create_user(
                db,
                schemas.UserCreate(
                    email=email,
                    password=password,
                    first_name="Test",
                    last_name="User",
                    role=role,
                    status=status,
                    session_timeout=session_timeout,
                ),
            )
            return user.id

    return _make


@pytest.fixture
def cookies():
    return SessionCookies(TEST_SECRET, max_age=3600)


@pytest.fixture
def build_manager(session_store, memory_incidents, clock, cookies):
    def _build(store=None, production: bool = False, **kwargs):
        security_logger = SecurityEventLogger(memory_incidents, clock=clock)
        manager = SessionLifecycleManager(
            store or session_store,
            security_logger,
            FingerprintGenerator(FINGERPRINT_SECRET),
            cookies,
            production=production,
            legacy_secret=TEST_SECRET,
            clock=clock,
            **kwargs,
        )
        return manager

    return _build
