"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions (SQLAlchemy Core)
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Index, ForeignKey, UniqueConstraint
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from invoiz.core.config import settings


logger = logging.getLogger("invoiz")

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

    return settings.DATABASE_URL


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

    connect_args = {}
    if url.startswith("sqlite"):
        # Request handlers run in a threadpool
        connect_args["check_same_thread"] = False

    if _engine is not None:
        _engine.dispose()

    # Create engine with connection pooling
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
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

    Everything executed inside the block is one transaction: it commits
    when the block exits normally and rolls back on any exception.

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
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users with their embedded subscription slot (one per user)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True, unique=True),
    Column('full_name', String(100), nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('subscription_plan_id', String(50), nullable=True),
    Column('subscription_start_date', DateTime(timezone=True), nullable=True),
    Column('subscription_end_date', DateTime(timezone=True), nullable=True),
    Column('subscription_status', String(20), nullable=True),  # active, expired, cancelled
    Column('subscription_activation_reference', String(100), nullable=True),
    Column('subscription_amount_paid', Integer, nullable=True),  # minor units
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Subscription transaction ledger (append-only, one row per checkout attempt)
subscription_transactions = Table(
    'subscription_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('transaction_id', String(64), nullable=False, unique=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('plan_id', String(50), nullable=False),
    Column('gateway_order_id', String(100), nullable=False),
    Column('gateway_payment_id', String(100), nullable=True),
    Column('gateway_signature', String(255), nullable=True),
    Column('verification_method', String(50), nullable=True),
    Column('amount', Integer, nullable=False),  # minor units
    Column('currency', String(3), nullable=False, server_default='INR'),
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, completed, failed, refunded
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'gateway_order_id', name='uq_subscription_transactions_user_order'),
    # Webhook lookup is by order id alone
    Index('idx_subscription_transactions_order_id', 'gateway_order_id'),
    # History queries: (user_id, created_at)
    Index('idx_subscription_transactions_user_created', 'user_id', 'created_at'),
    # Reconciliation scans pending rows by age
    Index('idx_subscription_transactions_status_created', 'status', 'created_at'),
)
