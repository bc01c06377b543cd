# src/tradeledger/infrastructure/db/repository.py
"""
Repositories for the ledger store.

Each repository wraps the session of the current unit of work. ORM rows are
mapped onto domain entities here so the services and the KPI engine never
see SQLAlchemy objects.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any

from sqlalchemy.orm import Session

from tradeledger.domain.entities import (
    UserAccount as UserAccountEntity,
    Trade as TradeEntity,
    Cashflow as CashflowEntity,
    TradeStatus,
    TradeKind,
)
from tradeledger.domain.value_objects import Multipliers, RiskLimits, as_decimal, as_utc

from .models import UserAccount, Trade, Cashflow

logger = logging.getLogger(__name__)


def _opt_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else as_decimal(value)


def _opt_utc(value: Optional[datetime]) -> Optional[datetime]:
    return None if value is None else as_utc(value)


# ==========================================================
# ACCOUNT REPOSITORY
# ==========================================================
class AccountRepository:
    """Repository for the per-user account row."""
    def __init__(self, session: Session):
        self.session = session

    def find(self, user_id: str) -> Optional[UserAccount]:
        return self.session.get(UserAccount, user_id)

    def find_for_update(self, user_id: str) -> Optional[UserAccount]:
        """Row-locks the account where the backend supports it (no-op on SQLite)."""
        return (
            self.session.query(UserAccount)
            .filter(UserAccount.user_id == user_id)
            .with_for_update()
            .one_or_none()
        )

    def add(self, account: UserAccount) -> UserAccount:
        self.session.add(account)
        self.session.flush()
        return account

    @staticmethod
    def expenses_of(row: UserAccount) -> Dict[str, Decimal]:
        return {k: as_decimal(v) for k, v in (row.monthly_expenses or {}).items()}

    @staticmethod
    def to_entity(row: UserAccount) -> UserAccountEntity:
        return UserAccountEntity(
            user_id=row.user_id,
            email=row.email,
            currency=row.currency,
            starting_balance=_opt_decimal(row.starting_balance),
            current_balance=_opt_decimal(row.current_balance),
            monthly_expenses=AccountRepository.expenses_of(row),
            created_at=_opt_utc(row.created_at),
            risk_limits=RiskLimits.from_dict(row.risk_limits),
            multipliers=Multipliers.from_dict(row.multipliers),
            time_zone=row.time_zone,
        )


# ==========================================================
# TRADE REPOSITORY
# ==========================================================
class TradeRepository:
    """Repository for the user's trade collection."""
    def __init__(self, session: Session):
        self.session = session

    def find(self, user_id: str, trade_id: str) -> Optional[Trade]:
        return (
            self.session.query(Trade)
            .filter(Trade.user_id == user_id, Trade.id == trade_id)
            .one_or_none()
        )

    def add(self, trade: Trade) -> Trade:
        self.session.add(trade)
        self.session.flush()
        return trade

    def delete(self, trade: Trade) -> None:
        self.session.delete(trade)
        self.session.flush()

    def list_for_user(
        self,
        user_id: str,
        opened_from: Optional[datetime] = None,
        opened_to: Optional[datetime] = None,
    ) -> List[Trade]:
        """Trades ordered newest first, optionally restricted to an open_at range."""
        query = self.session.query(Trade).filter(Trade.user_id == user_id)
        if opened_from is not None:
            query = query.filter(Trade.open_at >= opened_from)
        if opened_to is not None:
            query = query.filter(Trade.open_at <= opened_to)
        return query.order_by(Trade.open_at.desc(), Trade.id).all()

    def delete_all_for_user(self, user_id: str) -> int:
        count = (
            self.session.query(Trade)
            .filter(Trade.user_id == user_id)
            .delete(synchronize_session=False)
        )
        logger.debug(f"Deleted {count} trades for user {user_id}")
        return count

    @staticmethod
    def to_entity(row: Trade) -> TradeEntity:
        return TradeEntity(
            id=row.id,
            user_id=row.user_id,
            symbol=row.symbol,
            open_at=as_utc(row.open_at),
            status=row.status or TradeStatus.OPEN,
            side=row.side,
            kind=row.kind or TradeKind.NORMAL,
            risk_amount=as_decimal(row.risk_amount),
            risk_pct=as_decimal(row.risk_pct),
            fees=as_decimal(row.fees),
            size_usd=as_decimal(row.size_usd),
            leverage=_opt_decimal(row.leverage),
            balance_before=_opt_decimal(row.balance_before),
            recommended_size=_opt_decimal(row.recommended_size),
            oversized=bool(row.oversized),
            closed_at=_opt_utc(row.closed_at),
            pnl=_opt_decimal(row.pnl),
            r=_opt_decimal(row.r),
            notes=row.notes,
        )


# ==========================================================
# CASHFLOW REPOSITORY
# ==========================================================
class CashflowRepository:
    """Repository for deposits, withdrawals and adjustments."""
    def __init__(self, session: Session):
        self.session = session

    def find(self, user_id: str, cashflow_id: str) -> Optional[Cashflow]:
        return (
            self.session.query(Cashflow)
            .filter(Cashflow.user_id == user_id, Cashflow.id == cashflow_id)
            .one_or_none()
        )

    def add(self, cashflow: Cashflow) -> Cashflow:
        self.session.add(cashflow)
        self.session.flush()
        return cashflow

    def delete(self, cashflow: Cashflow) -> None:
        self.session.delete(cashflow)
        self.session.flush()

    def list_for_user(self, user_id: str) -> List[Cashflow]:
        return (
            self.session.query(Cashflow)
            .filter(Cashflow.user_id == user_id)
            .order_by(Cashflow.ts.desc(), Cashflow.id)
            .all()
        )

    def delete_all_for_user(self, user_id: str) -> int:
        count = (
            self.session.query(Cashflow)
            .filter(Cashflow.user_id == user_id)
            .delete(synchronize_session=False)
        )
        logger.debug(f"Deleted {count} cashflows for user {user_id}")
        return count

    @staticmethod
    def to_entity(row: Cashflow) -> CashflowEntity:
        return CashflowEntity(
            id=row.id,
            user_id=row.user_id,
            amount=as_decimal(row.amount),
            ts=as_utc(row.ts),
            note=row.note or "",
        )
