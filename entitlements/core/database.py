"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Transaction helper with retry on transient failures
- Table definitions for the feature catalog and entitlement ledger
"""
import logging
import os
import time
from contextlib import contextmanager
from typing import Callable, Optional, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    false,
    select,
    true,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from entitlements.core.config import settings
from entitlements.core.errors import AccountNotFound, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _configure_sqlite(engine) -> None:
    """Serialise writers and enforce foreign keys on SQLite.

    pysqlite defers BEGIN until the first write, which lets two transactions
    read the same snapshot and then race on the write. Emitting
    BEGIN IMMEDIATE takes the write lock up front.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, **kwargs)
        _configure_sqlite(_engine)
    else:
        _engine = create_engine(
            url,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits when the block exits cleanly, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _compute_backoff(attempt: int) -> float:
    """Exponential backoff in seconds, capped at 2s."""
    base_ms = settings.DB_RETRY_BACKOFF_MS * (2 ** (attempt - 1))
    return min(base_ms, 2000) / 1000.0


def run_transaction(work: Callable[[Session], T], *, attempts: Optional[int] = None) -> T:
    """
    Run `work(session)` as one atomic unit.

    The whole unit is retried on OperationalError (serialization failure,
    deadlock, lock timeout). `work` must re-read its preconditions on every
    attempt; nothing from a failed attempt is visible to the next one.

    Raises:
        TransientStorageError: when every attempt failed
    """
    max_attempts = max(1, attempts or settings.DB_TRANSACTION_ATTEMPTS)
    for attempt in range(1, max_attempts + 1):
        try:
            with get_db_session() as session:
                return work(session)
        except OperationalError as exc:
            if attempt >= max_attempts:
                logger.error(
                    "transaction failed after %s attempts",
                    attempt,
                    extra={"attempt": attempt, "error_code": TransientStorageError.code},
                )
                raise TransientStorageError(f"Storage unavailable: {exc.orig}") from exc
            delay = _compute_backoff(attempt)
            logger.warning(
                "transient storage failure, retrying in %.3fs",
                delay,
                extra={"attempt": attempt},
            )
            time.sleep(delay)
    raise AssertionError("unreachable")


def lock_account(session: Session, account_id: str) -> None:
    """
    Take the per-account row lock that linearises ledger mutations.

    Raises:
        AccountNotFound: if the account does not exist
    """
    row = session.execute(
        select(accounts.c.id).where(accounts.c.id == account_id).with_for_update()
    ).first()
    if row is None:
        raise AccountNotFound(f"Account {account_id} not found")


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Accounts (thin user-account glue)
accounts = Table(
    'accounts',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('email', String(255), nullable=False, unique=True),
    Column('name', Text, nullable=False),
    Column('registered', Boolean, nullable=False, server_default=true()),
    Column('email_verified_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_accounts_created_at', 'created_at'),
)

# Feature catalog: immutable (name, version) definitions
features = Table(
    'features',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(100), nullable=False),
    Column('kind', Integer, nullable=False),
    Column('version', Integer, nullable=False),
    Column('configs', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Seeding relies on this constraint to stay race-free across instances
    UniqueConstraint('name', 'version', name='uq_features_name_version'),
    Index('idx_features_name_kind_version', 'name', 'kind', 'version'),
)

# Entitlement ledger: one row per grant, deactivated but never deleted
account_features = Table(
    'account_features',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False),
    Column('feature_id', Integer, ForeignKey('features.id'), nullable=False),
    Column('reason', Text, nullable=False),
    Column('activated', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('expired_at', DateTime(timezone=True), nullable=True),
    Index('idx_account_features_account_activated', 'account_id', 'activated'),
    Index('idx_account_features_feature_id', 'feature_id'),
)
