"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL), thread-safe SQLite for dev/tests
- Ledger table definitions
"""
from typing import Optional, Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, BigInteger, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint, select
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from marketplace.core.config import settings

logger = logging.getLogger("marketplace.database")

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


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC. SQLite hands back naive values, which are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
    }


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

    _engine = create_engine(
        url,
        echo=False,  # Set to True for SQL query logging
        **_engine_kwargs(url),
    )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Release pooled connections and forget the current engine."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it.

    Use this with `Depends(get_db)` in read-only route functions; mutating
    operations open their own vendor-scoped unit of work.
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Vendor accounts: cached balances + cached commission rate (basis points)
vendor_accounts = Table(
    'vendor_accounts',
    metadata,
    Column('vendor_id', String(100), primary_key=True),
    Column('commission_bps', Integer, nullable=False),
    Column('available_balance', BigInteger, nullable=False, server_default='0'),
    Column('pending_balance', BigInteger, nullable=False, server_default='0'),
    Column('last_sequence', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Append-only wallet ledger
wallet_transactions = Table(
    'wallet_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('vendor_id', String(100), nullable=False),
    Column('sequence', Integer, nullable=False),
    Column('type', String(32), nullable=False),
    Column('bucket', String(16), nullable=False),  # available | pending | none
    Column('amount', BigInteger, nullable=False),  # signed
    Column('balance_after', BigInteger, nullable=False),  # available balance after this entry
    Column('pending_after', BigInteger, nullable=False),
    Column('reference_type', String(20), nullable=True),  # order | payout
    Column('reference_id', String(100), nullable=True),
    Column('description', Text, nullable=True),
    Column('reason', Text, nullable=True),
    Column('commission_bps', Integer, nullable=True),
    Column('needs_reconciliation', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Ledger append order is the total order per vendor
    UniqueConstraint('vendor_id', 'sequence', name='uq_wallet_transactions_vendor_sequence'),
    Index('idx_wallet_transactions_vendor_type_seq', 'vendor_id', 'type', 'sequence'),
    Index('idx_wallet_transactions_reference', 'reference_type', 'reference_id'),
)

# One subscription per vendor
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('vendor_id', String(100), primary_key=True),
    Column('plan_id', String(50), nullable=False),
    Column('billing_cycle', String(20), nullable=False, server_default='monthly'),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('auto_renew', Boolean, nullable=False, server_default='1'),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=True),
    Column('upcoming_plan_id', String(50), nullable=True),
    Column('upcoming_plan_date', DateTime(timezone=True), nullable=True),
    Column('upcoming_billing_cycle', String(20), nullable=True),
    Column('upcoming_commission_bps', Integer, nullable=True),
    Column('upcoming_price', BigInteger, nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # Sweep query: due scheduled changes
    Index('idx_subscriptions_upcoming_date', 'upcoming_plan_date'),
)

# Subscription charges recorded on immediate paid activations
subscription_charges = Table(
    'subscription_charges',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('vendor_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False),
    Column('billing_cycle', String(20), nullable=False),
    Column('amount', BigInteger, nullable=False),
    Column('reference', String(200), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
)

# Per (order, vendor) processing state; the flags here make status events idempotent
vendor_orders = Table(
    'vendor_orders',
    metadata,
    Column('order_id', String(100), primary_key=True),
    Column('vendor_id', String(100), primary_key=True),
    Column('status', String(20), nullable=False),
    Column('subtotal', BigInteger, nullable=False),
    Column('commission_bps', Integer, nullable=True),
    Column('platform_fee', BigInteger, nullable=True),
    Column('vendor_net', BigInteger, nullable=True),
    Column('earning_posted', Boolean, nullable=False, server_default='0'),
    Column('delivered_at', DateTime(timezone=True), nullable=True),
    Column('matures_at', DateTime(timezone=True), nullable=True),
    Column('matured', Boolean, nullable=False, server_default='0'),
    Column('reversed', Boolean, nullable=False, server_default='0'),
    Column('reversal_type', String(32), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # Maturation sweep: earning_posted & !matured & !reversed & matures_at <= now
    Index('idx_vendor_orders_maturation', 'matured', 'reversed', 'matures_at'),
)

# Payout requests
payout_requests = Table(
    'payout_requests',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('vendor_id', String(100), nullable=False),
    Column('amount', BigInteger, nullable=False),
    Column('status', String(20), nullable=False),
    Column('note', Text, nullable=True),
    Column('debit_transaction_id', String(36), nullable=True),
    Column('reversal_transaction_id', String(36), nullable=True),
    Column('requested_at', DateTime(timezone=True), nullable=False),
    Column('processing_at', DateTime(timezone=True), nullable=True),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Column('rejected_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_payout_requests_vendor_status', 'vendor_id', 'status'),
    Index('idx_payout_requests_status_requested', 'status', 'requested_at'),
)

# Outbox of domain events for the notification subsystem
ledger_events = Table(
    'ledger_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('vendor_id', String(100), nullable=True, index=True),
    Column('payload', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('delivered_at', DateTime(timezone=True), nullable=True),
    Index('idx_ledger_events_undelivered', 'delivered_at', 'id'),
)
