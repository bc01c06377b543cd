# src/tradeledger/infrastructure/db/models/journal.py
"""
SQLAlchemy ORM models for the journal collections: trades and cashflows.
Both hang off `user_accounts` and are purged with it on account reset.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean,
    ForeignKey, Enum, Text, Numeric, Index
)
from sqlalchemy.orm import relationship
from .base import Base

from tradeledger.domain.entities import (
    TradeStatus as TradeStatusEnum,
    TradeSide as TradeSideEnum,
    TradeKind as TradeKindEnum,
)


class Trade(Base):
    __tablename__ = 'trades'

    id = Column(String(32), primary_key=True)
    user_id = Column(String(128), ForeignKey('user_accounts.user_id', ondelete="CASCADE"), nullable=False, index=True)

    symbol = Column(String(32), nullable=False, index=True)
    side = Column(Enum(TradeSideEnum, name="tradesideenum"), nullable=True)
    kind = Column(Enum(TradeKindEnum, name="tradekindenum"), nullable=False, default=TradeKindEnum.NORMAL)
    status = Column(Enum(TradeStatusEnum, name="tradestatusenum"), nullable=False, default=TradeStatusEnum.OPEN, index=True)

    risk_amount = Column(Numeric(20, 8), nullable=False, default=0)
    risk_pct = Column(Numeric(10, 4), nullable=False, default=0)
    fees = Column(Numeric(20, 8), nullable=False, default=0)
    size_usd = Column(Numeric(20, 8), nullable=False, default=0)
    leverage = Column(Numeric(10, 2), nullable=True)

    balance_before = Column(Numeric(20, 8), nullable=True)
    recommended_size = Column(Numeric(20, 8), nullable=True)
    oversized = Column(Boolean, nullable=False, default=False)

    open_at = Column(DateTime(timezone=True), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    pnl = Column(Numeric(20, 8), nullable=True)
    r = Column(Numeric(20, 8), nullable=True)
    notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    account = relationship("UserAccount", back_populates="trades")

    __table_args__ = (
        Index("ix_trades_user_open_at", "user_id", "open_at"),
        Index("ix_trades_user_closed_at", "user_id", "closed_at"),
    )
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<Trade(id={self.id}, symbol={self.symbol}, status={self.status.value}, pnl={self.pnl})>"


class Cashflow(Base):
    __tablename__ = 'cashflows'

    id = Column(String(32), primary_key=True)
    user_id = Column(String(128), ForeignKey('user_accounts.user_id', ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Numeric(20, 8), nullable=False)
    note = Column(Text, nullable=False, default="")
    ts = Column(DateTime(timezone=True), nullable=False, index=True)

    account = relationship("UserAccount", back_populates="cashflows")

    def __repr__(self):
        return f"<Cashflow(id={self.id}, amount={self.amount})>"
