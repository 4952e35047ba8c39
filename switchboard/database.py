"""
Database configuration and session management.
Uses SQLAlchemy with PostgreSQL for production.

Every cross-agent decision in Switchboard is made by a conditional write in
this store (unique insert for claims, rowcount-checked delete for parked
calls), so nothing here may cache state between requests.
"""

import time
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, Session

from switchboard.config import config
from switchboard.errors import StoreUnreachable
from switchboard.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Create database engine
# For development: SQLite (file-based)
# For production: PostgreSQL
if config.DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        config.DATABASE_URL,
        connect_args={"check_same_thread": False}  # SQLite specific
    )
else:
    # PostgreSQL
    engine = create_engine(
        config.DATABASE_URL,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,  # Connection pool size
        max_overflow=20,  # Max connections above pool_size
        echo=config.DEBUG  # Log SQL queries in debug mode
    )

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database sessions.

    Usage in FastAPI:
        @router.get("/calls")
        def list_calls(db: Session = Depends(get_db)):
            return db.query(Call).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """
    Initialize database - create all tables.
    Should be called on application startup.
    """
    # Register models on Base.metadata before create_all
    from switchboard import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def run_with_store_retry(
    db: Session,
    operation: Callable[[], T],
    budget_seconds: float = None,
    base_delay: float = None,
) -> T:
    """
    Run a store operation, retrying transient connection failures.

    Retries use exponential backoff and stop once the next attempt would
    land past ``budget_seconds`` (defaults to the ring timeout, since a
    claim that lands after the ring has ended is worthless anyway).

    Raises:
        StoreUnreachable: the store kept failing for the whole budget.
    """
    budget = config.RING_TIMEOUT_SECONDS if budget_seconds is None else budget_seconds
    delay_base = config.STORE_RETRY_BASE_DELAY if base_delay is None else base_delay
    deadline = time.monotonic() + budget

    attempt = 0
    while True:
        try:
            return operation()
        except OperationalError as e:
            db.rollback()
            attempt += 1
            delay = delay_base * (2 ** (attempt - 1))
            if time.monotonic() + delay > deadline:
                logger.error("store_unreachable", attempts=attempt, error=str(e))
                raise StoreUnreachable(f"Datastore unavailable after {attempt} attempts") from e
            logger.warning("store_retry", attempt=attempt, delay=delay, error=str(e))
            time.sleep(delay)
