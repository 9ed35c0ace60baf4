"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine, session factory, FastAPI dependency and
    the unit-of-work helper used by webhook state transitions.

WHY:
    - Webhook handlers share one request-scoped session
    - Subscription + User + Business fan-out must commit all-or-nothing

USAGE:
    from waveorder.database import atomic, get_db

    @router.post("/thing")
    async def thing(db: Session = Depends(get_db)):
        with atomic(db):
            ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_transaction.html
    - waveorder/services/billing/state_reconciler.py (consumer of atomic)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from waveorder.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# UNIT OF WORK
# =============================================================================

@contextmanager
def atomic(db: Session) -> Generator[Session, None, None]:
    """Run a block of ORM writes as one all-or-nothing unit.

    WHAT:
        Commits when the block exits normally. Rolls back and re-raises
        when it raises.

    WHY:
        A subscription transition touches Subscription, every linked User and
        every linked Business. Either all rows move or none do.

    Example:
        with atomic(db):
            user.plan = PlanEnum.pro
            for business in businesses:
                business.subscription_plan = PlanEnum.pro
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
