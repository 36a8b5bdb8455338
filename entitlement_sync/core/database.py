"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for the entitlement store
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from entitlement_sync.core.config import settings
from entitlement_sync.core.logging import LOGGER_NAME


logger = logging.getLogger(LOGGER_NAME)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


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

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
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

    Commits when the block exits cleanly and rolls back on any exception,
    so every statement issued inside the block lands together or not at all.

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


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Entitlement record, one row per user
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('first_name', Text, nullable=True),
    Column('last_name', Text, nullable=True),
    Column('email', String(320), nullable=True),
    Column('subscription_status', String(20), nullable=False, server_default='inactive'),
    Column('subscription_plan', String(200), nullable=True),
    Column('subscription_id', String(100), nullable=True),
    Column('billing_customer_id', String(100), nullable=True, unique=True),
    Column('requests_remaining', Integer, nullable=True, server_default='0'),
    Column('renewal_date', DateTime(timezone=True), nullable=True),
    Column('is_canceled', Boolean, nullable=False, server_default=text('false')),
    Column('has_received_initial_allocation', Boolean, nullable=False, server_default=text('false')),
    Column('referred_by', String(100), nullable=True),
    Column('last_allocation_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_entitlements_subscription_id', 'subscription_id'),
    Index('idx_entitlements_status_renewal', 'subscription_status', 'renewal_date'),
)

# Payment history, append-only log
payment_history = Table(
    'payment_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=False),  # minor units
    Column('currency', String(10), nullable=False),
    Column('description', Text, nullable=True),
    Column('provider_payment_id', String(100), nullable=True, index=True),
    Column('payment_status', String(30), nullable=False),
    Column('payment_method', String(30), nullable=False, server_default='card'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_payment_history_user_created', 'user_id', 'created_at'),
)

# Quota grants (unlimited purchases, monthly resets)
allocation_history = Table(
    'allocation_history',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=False),
    Column('allocation_type', String(50), nullable=False),
    Column('previous_amount', Integer, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_allocation_history_user_created', 'user_id', 'created_at'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False, unique=True, index=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default=text('false'), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
)
