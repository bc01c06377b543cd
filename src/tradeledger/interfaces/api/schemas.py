# src/tradeledger/interfaces/api/schemas.py
from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tradeledger.application.services.kpi_service import KpiReport, Unbounded


def _to_str(v: Any) -> str | None:
    if v is None: return None
    if hasattr(v, "value"): return str(v.value)
    return str(v)


def _to_number(v: Any) -> Union[int, float, str]:
    """KPI values as JSON: ints stay ints, Decimals become floats, UNBOUNDED becomes "∞"."""
    if isinstance(v, Unbounded): return str(v)
    if isinstance(v, bool): return int(v)
    if isinstance(v, int): return v
    if isinstance(v, Decimal): return float(v)
    return v


# --- Account ---

class EnsureAccountIn(BaseModel):
    email: Optional[str] = None


class OnboardingIn(BaseModel):
    starting_balance: Decimal
    currency: Optional[str] = None


class ResetIn(BaseModel):
    new_starting_balance: Decimal
    currency: Optional[str] = None


class ExpenseIn(BaseModel):
    year: int = Field(ge=1970, le=9999)
    month: int
    delta: Decimal


class RiskLimitsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    max_trade_loss_pct: Decimal
    max_day_loss_pct: Decimal
    day_goal_pct: Decimal


class MultipliersOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    short: Decimal
    normal: Decimal
    long: Decimal


class PreferencesIn(BaseModel):
    """Partial update; omitted keys keep their current value. `clear` restores defaults."""
    model_config = ConfigDict(extra="forbid")
    risk_limits: Optional[Dict[str, Decimal]] = None
    multipliers: Optional[Dict[str, Decimal]] = None
    time_zone: Optional[str] = None
    clear: List[str] = []


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: str
    email: str | None = None
    currency: str
    starting_balance: Decimal | None = None
    current_balance: Decimal | None = None
    monthly_expenses: Dict[str, Decimal] = {}
    is_onboarded: bool
    created_at: datetime | None = None
    risk_limits: RiskLimitsOut | None = None
    multipliers: MultipliersOut | None = None
    time_zone: str | None = None

# --- Trades ---

class TradeIn(BaseModel):
    symbol: str
    side: Optional[str] = None
    kind: Optional[str] = None
    risk_amount: Decimal = Decimal("0")
    risk_pct: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    size_usd: Decimal = Decimal("0")
    leverage: Optional[Decimal] = None
    notes: Optional[str] = None


class TradeCloseIn(BaseModel):
    gross_pnl: Decimal


class TradePatch(BaseModel):
    """Partial update; only fields present in the request body are applied."""
    model_config = ConfigDict(extra="forbid")
    symbol: Optional[str] = None
    side: Optional[str] = None
    kind: Optional[str] = None
    status: Optional[str] = None
    risk_amount: Optional[Decimal] = None
    risk_pct: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    size_usd: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    notes: Optional[str] = None
    pnl: Optional[Decimal] = None
    open_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


class TradeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    symbol: str
    side: str | None = None
    kind: str
    status: str
    risk_amount: Decimal
    risk_pct: Decimal
    fees: Decimal
    size_usd: Decimal
    leverage: Decimal | None = None
    balance_before: Decimal | None = None
    recommended_size: Decimal | None = None
    oversized: bool
    open_at: datetime
    closed_at: datetime | None = None
    pnl: Decimal | None = None
    r: Decimal | None = None
    notes: str | None = None

    @field_validator("side", "kind", "status", mode="before")
    def _v_enum(cls, v): return _to_str(v)

# --- Cashflows ---

class CashflowIn(BaseModel):
    amount: Decimal
    note: str = ""


class CashflowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    amount: Decimal
    ts: datetime
    note: str = ""


class DeletedOut(BaseModel):
    deleted: bool

# --- Analytics ---

class ChartPointOut(BaseModel):
    x: Union[int, str]
    y: float


class KpiItemOut(BaseModel):
    key: str
    label: str
    value: Union[int, float, str]
    tone: str | None = None
    suffix: str = ""
    description: str


class DailyRowOut(BaseModel):
    day: date
    trades: int
    day_pnl: float
    equity: float
    drawdown: float
    pct_cumulative: float
    violations: int


class KpiReportOut(BaseModel):
    start: date
    end: date
    items: List[KpiItemOut]
    charts: Dict[str, List[ChartPointOut]]
    days: List[DailyRowOut]

    @classmethod
    def from_report(cls, report: KpiReport, start: date, end: date) -> "KpiReportOut":
        return cls(
            start=start,
            end=end,
            items=[
                KpiItemOut(
                    key=i.key, label=i.label, value=_to_number(i.value),
                    tone=i.tone, suffix=i.suffix, description=i.description,
                )
                for i in report.items
            ],
            charts={
                key: [ChartPointOut(x=p.x, y=float(p.y)) for p in points]
                for key, points in report.charts.items()
            },
            days=[
                DailyRowOut(
                    day=d.day, trades=len(d.trades), day_pnl=float(d.day_pnl),
                    equity=float(d.equity), drawdown=float(d.drawdown),
                    pct_cumulative=float(d.pct_cumulative), violations=d.violations,
                )
                for d in report.days
            ],
        )


class MonthSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    key: str
    pnl: Decimal
    pct_vs_start: Decimal
    win_rate: Decimal
    trades_count: int
    best_day: Optional[Tuple[date, Decimal]] = None
    worst_day: Optional[Tuple[date, Decimal]] = None
    avg_per_trade: Decimal
    days_left: int
    cashflow_total: Decimal
    expenses: Decimal
    sessions: int
    days_elapsed: int
    session_rate: Decimal
    avg_per_session: Decimal
    payout_now: Decimal
    projected_pnl: Decimal
    projected_payout: Decimal


class MonthRowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    month: int
    pnl: Decimal
    trades_count: int
    win_rate: Decimal


class TodayRiskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    day: date
    pnl_today: Decimal
    trades_today: int
    max_day_loss: Decimal
    loss_used: Decimal
    loss_used_pct: Decimal
    day_goal: Decimal
    goal_hit: Decimal
    goal_hit_pct: Decimal
