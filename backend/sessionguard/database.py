from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sessionguard.core.config import settings
import os
import logging

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    """Create an engine with SQLite pragmas or env-driven pool sizing."""
    is_sqlite = url.startswith("sqlite")
    pool_kwargs = {
        # Avoid stale idle connections causing first-hit failures after inactivity
        "pool_pre_ping": True,
    }
    if is_sqlite:
        # Store calls run on worker threads, so the connection must cross threads
        connect_args = {"check_same_thread": False, "timeout": 15}
    else:
        connect_args = {}
        try:
            pool_kwargs.update({
                "pool_size": int(os.getenv("DB_POOL_SIZE") or 6),
                "max_overflow": int(os.getenv("DB_MAX_OVERFLOW") or 6),
                "pool_recycle": int(os.getenv("DB_POOL_RECYCLE") or 300),
                "pool_timeout": float(os.getenv("DB_POOL_TIMEOUT") or 5.0),
            })
        except ValueError:
            logger.warning("Invalid DB_POOL_* value; using default pool sizing")
            pool_kwargs["pool_recycle"] = 300

    engine = create_engine(url, connect_args=connect_args, **pool_kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            # WAL improves read concurrency between request handlers and the
            # event drain; busy_timeout backs off on transient locks (ms).
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA busy_timeout=15000;")
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    return engine


if os.getenv("PYTEST_RUN") == "1":
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
else:
    SQLALCHEMY_DATABASE_URL = settings.SQLALCHEMY_DATABASE_URL

engine = build_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(autoflush=False, bind=engine)

Base = declarative_base()
