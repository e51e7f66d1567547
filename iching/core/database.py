"""
Server-side payment ledger: engine lifecycle, sessions and table definitions.

Postgres gets a bounded QueuePool; SQLite (tests, local runs) shares a single
connection through StaticPool so an in-memory ledger survives across sessions.
"""
import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from iching.core.config import settings

logger = logging.getLogger("iching")

metadata = MetaData()

# Ledger traffic is a handful of writes per purchase
POOL_OPTIONS: Dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: Optional[Engine] = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL when both are present."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"poolclass": QueuePool, **POOL_OPTIONS}


def init_engine(database_url: Optional[str] = None) -> Engine:
    """Create the ledger engine and session factory, replacing any previous one."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    _engine = create_engine(url, echo=False, **_engine_options(url))
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False)
    logger.info("database.engine_initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session():
    """Session scope: commit on success, roll back and re-raise on any error."""
    if _SessionLocal is None:
        init_engine()
    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Create missing ledger tables; existing ones are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Drop every ledger table. Tests and local resets only."""
    metadata.drop_all(bind=get_engine())


# Payment orders: one row per created intent, bound to the client's orderId
payment_orders = Table(
    'payment_orders',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('order_id', String(100), nullable=False),
    Column('payment_intent_id', String(100), nullable=False),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('description', String(120), nullable=True),
    Column('status', String(50), nullable=False),  # mirrors the gateway intent status
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('order_id', name='uq_payment_orders_order_id'),
    UniqueConstraint('payment_intent_id', name='uq_payment_orders_intent_id'),
    Index('idx_payment_orders_status', 'status'),
)

# Webhook events (idempotency key = gateway event id)
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default='0'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('event_id', name='uq_webhook_events_event_id'),
    Index('idx_webhook_events_event_type', 'event_type'),
    Index('idx_webhook_events_processed', 'processed'),
)

# Entitlement ledger: exactly one grant per succeeded intent
entitlement_grants = Table(
    'entitlement_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('payment_intent_id', String(100), nullable=False),
    Column('order_id', String(100), nullable=True),
    Column('amount', Numeric(12, 2), nullable=True),
    Column('currency', String(3), nullable=True),
    Column('source', String(20), nullable=False),  # verification | webhook
    Column('event_id', String(100), nullable=True),
    Column('granted_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('payment_intent_id', name='uq_entitlement_grants_intent_id'),
    Index('idx_entitlement_grants_order_id', 'order_id'),
)
