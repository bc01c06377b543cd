# src/tradeledger/application/services/risk_service.py
"""
RiskService: position sizing against the account balance.

The recommended size of a trade is the balance times the multiplier of its
kind; anything above that is flagged as oversized. Multipliers and loss
limits come from settings unless the account carries its own.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from tradeledger.config import settings
from tradeledger.domain.entities import UserAccount
from tradeledger.domain.value_objects import Multipliers, RiskLimits, ZERO, as_decimal

log = logging.getLogger(__name__)


@dataclass
class SizingResult:
    kind: str
    balance: Decimal
    multiplier: Decimal
    recommended: Decimal
    size: Decimal
    oversized: bool


def default_multipliers() -> Multipliers:
    return Multipliers(
        short=settings.MULTIPLIER_SHORT,
        normal=settings.MULTIPLIER_NORMAL,
        long=settings.MULTIPLIER_LONG,
    )


def default_limits() -> RiskLimits:
    return RiskLimits(
        max_trade_loss_pct=settings.MAX_TRADE_LOSS_PCT,
        max_day_loss_pct=settings.MAX_DAY_LOSS_PCT,
        day_goal_pct=settings.DAY_GOAL_PCT,
    )


@dataclass
class RiskService:
    multipliers: Multipliers = field(default_factory=default_multipliers)
    limits: RiskLimits = field(default_factory=default_limits)

    def for_account(self, account: UserAccount) -> RiskService:
        """The account's own multipliers and limits, falling back to these."""
        if account.multipliers is None and account.risk_limits is None:
            return self
        log.debug(f"Using account risk preferences for {account.user_id}")
        return RiskService(
            multipliers=account.multipliers or self.multipliers,
            limits=account.risk_limits or self.limits,
        )

    def recommended_size(self, balance: Any, kind: Any) -> Decimal:
        bal = max(ZERO, as_decimal(balance))
        return bal * self.multipliers.for_kind(kind)

    @staticmethod
    def is_oversized(size: Any, recommended: Any) -> bool:
        rec = as_decimal(recommended)
        return rec > 0 and as_decimal(size) > rec

    def size_trade(self, balance: Any, kind: Any, size: Any) -> SizingResult:
        recommended = self.recommended_size(balance, kind)
        sz = as_decimal(size)
        return SizingResult(
            kind=str(getattr(kind, "value", kind) or "normal"),
            balance=max(ZERO, as_decimal(balance)),
            multiplier=self.multipliers.for_kind(kind),
            recommended=recommended,
            size=sz,
            oversized=self.is_oversized(sz, recommended),
        )
