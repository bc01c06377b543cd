# src/tradeledger/application/services/kpi_service.py
"""
KPI engine: turns the full trade/cashflow history of an account into the ten
period indicators, the per-day aggregation behind them, and chart-ready
series for each indicator.

The engine is a pure function of its inputs. It is called again on every
live-data change, keeps no state between calls and never raises for
numerically degenerate inputs (empty windows, zero balances): ratios with a
zero denominator come out as 0, except the profit factor of a window with
profits and no losses, which is the `UNBOUNDED` sentinel.

Days are local calendar days: timestamps are converted to `tz` (the host's
local zone when `tz` is None) before bucketing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import MAXYEAR, date, datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

from tradeledger.domain.entities import Cashflow, LedgerSnapshot, Trade, UserAccount
from tradeledger.domain.value_objects import RiskLimits, ZERO, HUNDRED, as_decimal, as_utc

log = logging.getLogger(__name__)

KPI_KEYS = (
    "pnl",
    "retPct",
    "tradesCount",
    "winRate",
    "expectancy",
    "profitFactor",
    "maxDD",
    "avgPerSession",
    "streak",
    "riskViolations",
)

STREAK_NONE = "—"
STREAK_WINDOW = 20


class Unbounded:
    """Value of a ratio whose denominator is zero while its numerator is positive.

    A single shared instance, `UNBOUNDED`, is used. It formats as "∞" and is
    never equal to any number.
    """
    _instance: Optional["Unbounded"] = None

    def __new__(cls) -> "Unbounded":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNBOUNDED"

    def __str__(self) -> str:
        return "∞"

    def __bool__(self) -> bool:
        return True


UNBOUNDED = Unbounded()

KpiNumber = Union[Decimal, int, str, Unbounded]


@dataclass(frozen=True)
class ChartPoint:
    x: Union[str, int]
    y: Decimal


@dataclass
class KpiValue:
    key: str
    label: str
    value: KpiNumber
    description: str
    tone: Optional[str] = None  # "pos" | "neg"
    suffix: str = ""


@dataclass
class DailyRow:
    """Aggregation of one local calendar day inside the window."""
    day: date
    trades: List[Trade]
    day_pnl: Decimal
    wins: int
    losses: int
    equity: Decimal
    peak: Decimal
    drawdown: Decimal
    pct_cumulative: Decimal
    trade_loss_violations: int = 0
    day_loss_violation: int = 0

    @property
    def key(self) -> str:
        return self.day.isoformat()

    @property
    def label(self) -> str:
        return self.day.strftime("%m-%d")

    @property
    def has_trades(self) -> bool:
        return bool(self.trades)

    @property
    def violations(self) -> int:
        return self.trade_loss_violations + self.day_loss_violation


@dataclass
class KpiReport:
    items: List[KpiValue]
    charts: Dict[str, List[ChartPoint]]
    days: List[DailyRow] = field(default_factory=list)
    equity_start: Decimal = ZERO
    equity_end: Decimal = ZERO

    def value(self, key: str) -> KpiNumber:
        for item in self.items:
            if item.key == key:
                return item.value
        raise KeyError(key)

    def get(self, key: str) -> KpiValue:
        for item in self.items:
            if item.key == key:
                return item
        raise KeyError(key)


def local_day(ts: datetime, tz: Optional[tzinfo] = None) -> date:
    """Local calendar date of `ts` (naive timestamps are read as UTC)."""
    try:
        return as_utc(ts).astimezone(tz).date()
    except OverflowError:
        # Shifting a timestamp at the edge of the calendar; clamp to that edge.
        return date.max if ts.year == MAXYEAR else date.min


def _ratio(num: Decimal, den: Decimal) -> Decimal:
    return num / den if den else ZERO


def _pct(num: Decimal, den: Decimal) -> Decimal:
    return num / den * HUNDRED if den > 0 else ZERO


def _streak(trades: Sequence[Trade]) -> str:
    """Run of identical outcomes at the end of `trades`, e.g. W4 or L2."""
    mode: Optional[str] = None
    count = 0
    for t in reversed(trades):
        outcome = "W" if t.is_win else "L"
        if mode is None:
            mode, count = outcome, 1
        elif outcome == mode:
            count += 1
        else:
            break
    return f"{mode}{count}" if mode else STREAK_NONE


def _histogram(values: Sequence[Decimal]) -> List[ChartPoint]:
    """PnL distribution in k = clamp(ceil(sqrt(n)), 5, 14) equal-width bins."""
    if not values:
        return []
    lo, hi = min(values), max(values)
    k = max(5, min(14, math.ceil(math.sqrt(len(values)))))
    step = (hi - lo) / k or Decimal(1)
    counts = [0] * k
    for v in values:
        idx = int((v - lo) / step)
        counts[min(max(idx, 0), k - 1)] += 1
    return [ChartPoint(x=i, y=Decimal(c)) for i, c in enumerate(counts)]


def _walk_days(
    start: date,
    end: date,
    by_day: Dict[date, List[Trade]],
    equity_start: Decimal,
    current_balance: Decimal,
    limits: RiskLimits,
) -> List[DailyRow]:
    rows: List[DailyRow] = []
    equity = peak = equity_start
    # Offsets from `start`; stepping past `end` would overflow at date.max
    for offset in range((end - start).days + 1):
        day = start + timedelta(days=offset)
        todays = by_day.get(day, [])
        day_pnl = sum((t.net_pnl for t in todays), ZERO)
        equity += day_pnl
        peak = max(peak, equity)
        wins = sum(1 for t in todays if t.is_win)
        rows.append(DailyRow(
            day=day,
            trades=todays,
            day_pnl=day_pnl,
            wins=wins,
            losses=len(todays) - wins,
            equity=equity,
            peak=peak,
            drawdown=equity - peak,
            pct_cumulative=_pct(equity - equity_start, equity_start),
            trade_loss_violations=sum(1 for t in todays if limits.trade_loss_exceeds(t.net_pnl, current_balance)),
            day_loss_violation=1 if limits.day_loss_exceeds(day_pnl, current_balance) else 0,
        ))
    return rows


def compute_kpis(
    trades: Sequence[Trade],
    cashflows: Sequence[Cashflow],
    start: date,
    end: date,
    starting_balance: Any,
    current_balance: Any,
    limits: Optional[RiskLimits] = None,
    tz: Optional[tzinfo] = None,
) -> KpiReport:
    """
    Compute the period indicators for the inclusive local-date window
    [start, end].

    Equity at the start of the window is the starting balance plus the net
    PnL of trades closed before the window plus the cashflows dated before
    it. Only closed trades count; open trades have no PnL yet.
    """
    limits = limits or RiskLimits()
    sb = as_decimal(starting_balance)
    cb = as_decimal(current_balance)

    closed = [t for t in trades if t.is_closed and t.closed_at is not None]
    closed_day = {id(t): local_day(t.closed_at, tz) for t in closed}
    cash_day = {id(c): local_day(c.ts, tz) for c in cashflows}

    pnl_before = sum((t.net_pnl for t in closed if closed_day[id(t)] < start), ZERO)
    cash_before = sum((as_decimal(c.amount) for c in cashflows if cash_day[id(c)] < start), ZERO)
    equity_start = sb + pnl_before + cash_before

    in_window = sorted(
        (t for t in closed if start <= closed_day[id(t)] <= end),
        key=lambda t: as_utc(t.closed_at),
    )
    cash_in_window = sum(
        (as_decimal(c.amount) for c in cashflows if start <= cash_day[id(c)] <= end), ZERO
    )

    by_day: Dict[date, List[Trade]] = {}
    for t in in_window:
        by_day.setdefault(closed_day[id(t)], []).append(t)

    days = _walk_days(start, end, by_day, equity_start, cb, limits)

    # --- Period aggregates ---
    pnls = [t.net_pnl for t in in_window]
    pnl = sum(pnls, ZERO)
    equity_end = equity_start + pnl + cash_in_window
    ret_pct = _pct(equity_end - equity_start, equity_start)

    trades_count = len(in_window)
    wins = sum(1 for t in in_window if t.is_win)
    win_rate = _pct(Decimal(wins), Decimal(trades_count)) if trades_count else ZERO
    expectancy = _ratio(pnl, Decimal(trades_count))

    gross_profit = sum((p for p in pnls if p > 0), ZERO)
    gross_loss_abs = abs(sum((p for p in pnls if p < 0), ZERO))
    if gross_loss_abs:
        profit_factor: KpiNumber = gross_profit / gross_loss_abs
    elif gross_profit > 0:
        profit_factor = UNBOUNDED
    else:
        profit_factor = ZERO

    max_dd = min([d.drawdown for d in days] + [ZERO])

    sessions = [d for d in days if d.has_trades]
    avg_per_session = _ratio(sum((d.day_pnl for d in sessions), ZERO), Decimal(len(sessions)))

    streak = _streak(in_window)
    risk_violations = sum(d.violations for d in days)

    # --- Chart series ---
    pnl_line = [ChartPoint(0, ZERO)]
    acc = ZERO
    for i, p in enumerate(pnls, start=1):
        acc += p
        pnl_line.append(ChartPoint(i, acc))
    if len(pnl_line) == 1:
        pnl_line.append(ChartPoint(1, ZERO))

    win_line = []
    running_wins = 0
    for i, t in enumerate(in_window, start=1):
        running_wins += 1 if t.is_win else 0
        win_line.append(ChartPoint(i, Decimal(running_wins) / Decimal(i) * HUNDRED))

    charts: Dict[str, List[ChartPoint]] = {
        "pnl": pnl_line,
        "retPct": [ChartPoint(d.label, d.pct_cumulative) for d in days],
        "tradesCount": [ChartPoint(d.label, Decimal(len(d.trades))) for d in days],
        "winRate": win_line,
        "expectancy": _histogram(pnls),
        "profitFactor": [ChartPoint("Gross +", gross_profit), ChartPoint("Gross -", -gross_loss_abs)],
        "maxDD": [ChartPoint(d.label, d.drawdown) for d in days],
        "avgPerSession": [ChartPoint(d.label, d.day_pnl) for d in days],
        "streak": [
            ChartPoint(i, Decimal(1) if t.is_win else Decimal(-1))
            for i, t in enumerate(in_window[-STREAK_WINDOW:], start=1)
        ],
        "riskViolations": [ChartPoint(d.label, Decimal(d.violations)) for d in days],
    }

    items = [
        KpiValue("pnl", "Period PnL", pnl, "Sum of the net PnL of trades closed in the period.",
                 tone="pos" if pnl >= 0 else "neg"),
        KpiValue("retPct", "% Return", ret_pct, "Percent change of equity over the period, relative to its start.",
                 tone="pos" if ret_pct >= 0 else "neg", suffix="%"),
        KpiValue("tradesCount", "Trades", trades_count, "Trades closed within the period."),
        KpiValue("winRate", "Win rate", win_rate, "Share of trades with PnL >= 0.", suffix="%"),
        KpiValue("expectancy", "Expectancy/trade", expectancy, "Average PnL per trade in the period."),
        KpiValue("profitFactor", "Profit factor", profit_factor, "Gross profit / |gross loss| in the period."),
        KpiValue("maxDD", "Max drawdown", max_dd, "Worst gap between equity and its running peak in the period.",
                 tone="neg" if max_dd < 0 else None),
        KpiValue("avgPerSession", "Average per session", avg_per_session, "Average daily PnL over days with trades."),
        KpiValue("streak", "Current streak", streak, "Current run of wins (W) or losses (L) in the latest trades."),
        KpiValue("riskViolations", "Risk violations", risk_violations,
                 f"Trades losing more than {limits.max_trade_loss_pct}% and days losing more than "
                 f"{limits.max_day_loss_pct}% of the current balance."),
    ]

    log.debug(
        f"KPIs {start}..{end}: trades={trades_count} pnl={pnl} equity_start={equity_start}"
    )
    return KpiReport(items=items, charts=charts, days=days, equity_start=equity_start, equity_end=equity_end)


class KpiService:
    """Binds the engine to the risk limits and time zone of each account.

    The configured values apply to accounts that have not set their own.
    """

    def __init__(self, limits: Optional[RiskLimits] = None, tz: Optional[tzinfo] = None):
        self.limits = limits or RiskLimits()
        self.tz = tz

    def tz_for(self, account: Optional[UserAccount]) -> Optional[tzinfo]:
        return account.zone(self.tz) if account is not None else self.tz

    def limits_for(self, account: Optional[UserAccount]) -> RiskLimits:
        if account is None or account.risk_limits is None:
            return self.limits
        return account.risk_limits

    def report(self, snapshot: LedgerSnapshot, start: date, end: date) -> KpiReport:
        account = snapshot.account
        return compute_kpis(
            snapshot.trades,
            snapshot.cashflows,
            start,
            end,
            account.starting_balance,
            account.balance,
            limits=self.limits_for(account),
            tz=self.tz_for(account),
        )
