"""
Database configuration and session management.

Supports SQLite (demo / development) and PostgreSQL (production).
Exposes the engine, the session factory, the declarative ``Base`` shared by
every ORM model, a FastAPI dependency and a context manager for work that
runs outside a request (the workflow sequencer).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Iterator, Optional

from sqlalchemy import create_engine, event, exc, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

# =====================================
# Configuration
# =====================================

DATABASE_URL: str = settings.database_url

# Connection pool settings (ignored for SQLite)
POOL_SIZE: int = 5
MAX_OVERFLOW: int = 10
POOL_TIMEOUT: int = 30
POOL_RECYCLE: int = 3600  # 1 hour

_ALLOWED_SCHEMES = ("sqlite", "postgresql", "postgresql+psycopg2")


# =====================================
# Validation
# =====================================

def _validate_database_url(url: str) -> None:
    """
    Validate database URL for compatibility.

    Raises:
        ValueError: If URL is empty or uses an unsupported driver
    """
    if not url:
        raise ValueError("DATABASE_URL cannot be empty")

    if not any(url.startswith(scheme + "://") or url.startswith(scheme + ":///")
               for scheme in _ALLOWED_SCHEMES):
        raise ValueError(
            f"Unsupported database URL scheme. Allowed: {', '.join(_ALLOWED_SCHEMES)}"
        )

    if url.startswith("sqlite") and settings.is_production:
        logger.critical(
            "SQLite detected in production environment! "
            "Execution and step records need PostgreSQL in production."
        )


def _get_engine_config(url: str) -> dict:
    """Engine keyword arguments for the given database type."""
    config = {"future": True}

    if url.startswith("sqlite"):
        config.update({
            "connect_args": {
                "check_same_thread": False,  # Sessions cross the request / sequencer boundary
                "timeout": 20.0,
            },
            "poolclass": NullPool,
        })
    elif url.startswith("postgresql"):
        config.update({
            "pool_size": POOL_SIZE,
            "max_overflow": MAX_OVERFLOW,
            "pool_timeout": POOL_TIMEOUT,
            "pool_recycle": POOL_RECYCLE,
            "pool_pre_ping": True,
        })
        if settings.is_production:
            config["connect_args"] = {"sslmode": "require", "connect_timeout": 10}
        logger.info(
            f"PostgreSQL connection pool configured: "
            f"size={POOL_SIZE}, max_overflow={MAX_OVERFLOW}"
        )

    return config


def build_engine(url: str) -> Engine:
    """Create an engine for ``url`` with the driver-specific settings applied."""
    _validate_database_url(url)
    built = create_engine(url, **_get_engine_config(url))

    if url.startswith("sqlite"):
        @event.listens_for(built, "connect")
        def _sqlite_pragmas(dbapi_conn, connection_record):
            # SQLite leaves foreign keys off unless asked
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()
            logger.debug("New SQLite connection established")

    return built


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        expire_on_commit=False,  # Records are read after the sequencer commits them
    )


# =====================================
# Engine / Session Setup
# =====================================

try:
    engine = build_engine(DATABASE_URL)
    logger.info(f"Database engine created: {DATABASE_URL.split('@')[-1]}")  # Hide credentials
except Exception as e:
    logger.critical(f"Failed to create database engine: {e}")
    raise

SessionLocal = build_session_factory(engine)

# Declarative Base
Base = declarative_base()


# =====================================
# Session helpers
# =====================================

def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency for FastAPI.

    Rolls back on error and always closes the session.  Commits are explicit
    in the service functions.
    """
    db: Session = SessionLocal()
    try:
        yield db
    except exc.SQLAlchemyError as e:
        logger.error(f"Database error: {e}", exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope(factory: SessionFactory = SessionLocal) -> Iterator[Session]:
    """Transactional scope for background work: commit on success, rollback on error."""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine = engine) -> None:
    """Create every table registered on ``Base``."""
    # Model modules register their tables on import.
    from models import config_values, executions, messages  # noqa: F401

    Base.metadata.create_all(bind=bind)


def check_database_health(bind: Optional[Engine] = None) -> bool:
    """Return True if the database answers a trivial query."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
