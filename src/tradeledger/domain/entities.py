# src/tradeledger/domain/entities.py
"""
Defines the core business entities of the journal: the user account that owns
the running balance, the trades and the cashflows. This is the heart of the
domain layer; the ORM rows in `infrastructure.db.models` are mapped onto these
by the repositories.
"""

from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from decimal import Decimal
from typing import Optional, Dict, List
from enum import Enum

from .errors import InvalidInput
from .value_objects import Multipliers, RiskLimits, ZERO, zone_from_name

# --- ENUMERATIONS ---

class TradeStatus(Enum):
    """Two-state lifecycle of a journal trade."""
    OPEN = "open"
    CLOSED = "closed"

class TradeSide(Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["TradeSide"]:
        """Accepts long/short and the buy/sell aliases; blank means unknown."""
        if raw is None:
            return None
        if isinstance(raw, TradeSide):
            return raw
        v = str(raw).strip().lower()
        if not v or v == "n/a":
            return None
        aliases = {"buy": cls.LONG, "sell": cls.SHORT}
        if v in aliases:
            return aliases[v]
        try:
            return cls(v)
        except ValueError:
            raise InvalidInput(f"Invalid side '{raw}'. Must be 'long' or 'short'.")

class TradeKind(Enum):
    """Holding horizon chosen at open; selects the sizing multiplier."""
    SHORT = "short"
    NORMAL = "normal"
    LONG = "long"

# --- ENTITIES ---

@dataclass
class UserAccount:
    """
    One per authenticated user. `current_balance` is only ever written by the
    account ledger; `starting_balance` is fixed by onboarding.
    """
    user_id: str
    currency: str = "EUR"
    email: Optional[str] = None
    starting_balance: Optional[Decimal] = None
    current_balance: Optional[Decimal] = None
    monthly_expenses: Dict[str, Decimal] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    # Per-user preferences; None means "use the configured defaults"
    risk_limits: Optional[RiskLimits] = None
    multipliers: Optional[Multipliers] = None
    time_zone: Optional[str] = None

    @property
    def is_onboarded(self) -> bool:
        return self.starting_balance is not None

    @property
    def balance(self) -> Decimal:
        """Current balance, treating a not-yet-onboarded account as empty."""
        return self.current_balance if self.current_balance is not None else ZERO

    def expenses_for(self, key: str) -> Decimal:
        return self.monthly_expenses.get(key, ZERO)

    def zone(self, default: Optional[tzinfo] = None) -> Optional[tzinfo]:
        """The account's own time zone, else `default`."""
        if not self.time_zone:
            return default
        try:
            return zone_from_name(self.time_zone)
        except InvalidInput:
            return default


@dataclass
class Trade:
    """A manually journaled position."""
    id: str
    user_id: str
    symbol: str
    open_at: datetime
    status: TradeStatus = TradeStatus.OPEN
    side: Optional[TradeSide] = None
    kind: TradeKind = TradeKind.NORMAL

    risk_amount: Decimal = ZERO
    risk_pct: Decimal = ZERO
    fees: Decimal = ZERO
    size_usd: Decimal = ZERO
    leverage: Optional[Decimal] = None

    balance_before: Optional[Decimal] = None
    recommended_size: Optional[Decimal] = None
    oversized: bool = False

    closed_at: Optional[datetime] = None
    pnl: Optional[Decimal] = None
    r: Optional[Decimal] = None
    notes: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status == TradeStatus.CLOSED

    @property
    def net_pnl(self) -> Decimal:
        """Balance effect of this trade: its pnl when closed, otherwise nothing."""
        if self.is_closed and self.pnl is not None:
            return self.pnl
        return ZERO

    @property
    def is_win(self) -> bool:
        # Break-even trades count as wins.
        return self.net_pnl >= 0


@dataclass
class Cashflow:
    """A deposit (positive), withdrawal (negative) or adjustment."""
    id: str
    user_id: str
    amount: Decimal
    ts: datetime
    note: str = ""

    @property
    def is_deposit(self) -> bool:
        return self.amount > 0


@dataclass
class LedgerSnapshot:
    """A consistent read of one account with its full trade and cashflow history."""
    account: UserAccount
    trades: List[Trade] = field(default_factory=list)
    cashflows: List[Cashflow] = field(default_factory=list)
