# --- src/tradeledger/infrastructure/db/models/__init__.py ---
"""
Makes the 'models' directory a package and ensures all SQLAlchemy ORM models
are registered on `Base.metadata` for Alembic and `create_tables`.
"""

from .base import Base
from .account import UserAccount
from .journal import (
    Trade,
    Cashflow,
    TradeStatusEnum,
    TradeSideEnum,
    TradeKindEnum,
)

__all__ = [
    "Base",
    "UserAccount",
    "Trade",
    "Cashflow",
    "TradeStatusEnum",
    "TradeSideEnum",
    "TradeKindEnum",
]
