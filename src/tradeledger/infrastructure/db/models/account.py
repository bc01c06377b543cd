# src/tradeledger/infrastructure/db/models/account.py
"""
SQLAlchemy ORM model for the per-user account document.

`version` is the optimistic-concurrency counter: every UPDATE is issued with
`WHERE version = <read version>`, so two transactions that read the same
snapshot cannot both commit a balance change.
"""

from sqlalchemy import Column, Integer, String, DateTime, Numeric, JSON, func
from sqlalchemy.orm import relationship
from .base import Base


class UserAccount(Base):
    __tablename__ = 'user_accounts'

    user_id = Column(String(128), primary_key=True)
    email = Column(String, nullable=True)
    currency = Column(String(8), nullable=False, default="EUR", server_default="EUR")

    starting_balance = Column(Numeric(20, 8), nullable=True)
    current_balance = Column(Numeric(20, 8), nullable=True)
    # "YYYY-MM" -> accumulated expenses; Decimals are serialized as strings
    monthly_expenses = Column(JSON, nullable=False, default=dict)

    # Per-user overrides of the configured risk settings; NULL means "use defaults"
    risk_limits = Column(JSON, nullable=True)
    multipliers = Column(JSON, nullable=True)
    time_zone = Column(String(64), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    trades = relationship("Trade", back_populates="account", cascade="all, delete-orphan", passive_deletes=True)
    cashflows = relationship("Cashflow", back_populates="account", cascade="all, delete-orphan", passive_deletes=True)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<UserAccount(user_id={self.user_id}, balance={self.current_balance}, v={self.version})>"
