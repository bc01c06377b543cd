# src/tradeledger/infrastructure/db/base.py
"""
Database engine setup and session factory.

Includes a custom JSON serializer so Decimal values (the monthly expense
accumulators) can be stored in JSON columns.
"""

import json
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from tradeledger.config import settings
from .models import Base

log = logging.getLogger(__name__)


# --- Custom JSON Serializer ---
def _custom_json_serializer(obj):
    """Decimals become their exact string form; anything else unknown is an error."""
    if isinstance(obj, Decimal):
        return str(obj)
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine for `url` with the ledger's JSON serializer."""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        pool_pre_ping=True,
        connect_args=connect_args,
        json_serializer=lambda obj: json.dumps(obj, default=_custom_json_serializer),
        **kwargs,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    # Entities are built inside the transaction; keep loaded state after commit.
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_session_factory(engine)


def create_tables(bind: Optional[Engine] = None) -> None:
    """Creates all tables defined in models (development and tests; prod uses Alembic)."""
    bind = bind or engine
    log.info("Creating database tables if they do not exist...")
    Base.metadata.create_all(bind)
