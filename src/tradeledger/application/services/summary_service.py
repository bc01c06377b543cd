# src/tradeledger/application/services/summary_service.py

import logging
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence, Tuple

from tradeledger.config import settings
from tradeledger.domain.entities import LedgerSnapshot, Trade, UserAccount
from tradeledger.domain.timeframe import month_range
from tradeledger.domain.value_objects import RiskLimits, ZERO, HUNDRED, month_key
from .kpi_service import local_day

log = logging.getLogger(__name__)


@dataclass
class MonthSummary:
    key: str
    pnl: Decimal
    pct_vs_start: Decimal
    win_rate: Decimal
    trades_count: int
    best_day: Optional[Tuple[date, Decimal]]
    worst_day: Optional[Tuple[date, Decimal]]
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


@dataclass
class MonthRow:
    month: int
    pnl: Decimal
    trades_count: int
    win_rate: Decimal


@dataclass
class TodayRisk:
    day: date
    pnl_today: Decimal
    trades_today: int
    max_day_loss: Decimal
    loss_used: Decimal
    loss_used_pct: Decimal
    day_goal: Decimal
    goal_hit: Decimal
    goal_hit_pct: Decimal


def _closed_between(trades: Sequence[Trade], start: date, end: date, tz: Optional[tzinfo]) -> List[Trade]:
    picked = [
        t for t in trades
        if t.is_closed and t.closed_at is not None and start <= local_day(t.closed_at, tz) <= end
    ]
    return sorted(picked, key=lambda t: t.closed_at)


def _win_rate(trades: Sequence[Trade]) -> Decimal:
    if not trades:
        return ZERO
    wins = sum(1 for t in trades if t.is_win)
    return Decimal(wins) / Decimal(len(trades)) * HUNDRED


class SummaryService:
    """
    Month, year and same-day views built on top of the journal history:
    month summary with payout projection, per-month annual breakdown and the
    daily loss-limit / daily goal progress.
    """

    def __init__(
        self,
        limits: Optional[RiskLimits] = None,
        payout_rate: Optional[Decimal] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.limits = limits or RiskLimits()
        self.payout_rate = settings.PAYOUT_RATE if payout_rate is None else payout_rate
        self.tz = tz

    def _zone(self, tz: Optional[tzinfo]) -> Optional[tzinfo]:
        return tz if tz is not None else self.tz

    def tz_for(self, account: Optional[UserAccount]) -> Optional[tzinfo]:
        """The account's own zone, else the configured one."""
        return account.zone(self.tz) if account is not None else self.tz

    def limits_for(self, account: Optional[UserAccount]) -> RiskLimits:
        if account is None or account.risk_limits is None:
            return self.limits
        return account.risk_limits

    def _today(self, today: Optional[date], tz: Optional[tzinfo]) -> date:
        return today or datetime.now(tz).date()

    def month_summary(self, snapshot: LedgerSnapshot, year: int, month: int,
                      today: Optional[date] = None, tz: Optional[tzinfo] = None) -> MonthSummary:
        tz = tz if tz is not None else self.tz_for(snapshot.account)
        key = month_key(year, month)
        window = month_range(year, month)
        today = self._today(today, tz)
        account = snapshot.account

        closed = _closed_between(snapshot.trades, window.start, window.end, tz)
        pnl = sum((t.net_pnl for t in closed), ZERO)
        start_balance = account.starting_balance or ZERO
        pct = pnl / start_balance * HUNDRED if start_balance > 0 else ZERO

        per_day = {}
        for t in closed:
            d = local_day(t.closed_at, tz)
            per_day[d] = per_day.get(d, ZERO) + t.net_pnl
        best = max(per_day.items(), key=lambda kv: kv[1]) if per_day else None
        worst = min(per_day.items(), key=lambda kv: kv[1]) if per_day else None

        if today in window:
            days_left = (window.end - today).days + 1
            days_elapsed = today.day
        elif today > window.end:
            days_left, days_elapsed = 0, len(window)
        else:
            days_left, days_elapsed = 0, 0

        sessions = len(per_day)
        session_rate = Decimal(sessions) / Decimal(days_elapsed) if days_elapsed else ZERO
        avg_per_session = pnl / Decimal(sessions) if sessions else ZERO
        remaining_sessions = (session_rate * days_left).quantize(Decimal("1"), ROUND_HALF_UP)
        projected_pnl = pnl + avg_per_session * remaining_sessions

        expenses = account.expenses_for(key)
        cashflow_total = sum(
            (c.amount for c in snapshot.cashflows if local_day(c.ts, tz) in window), ZERO
        )

        return MonthSummary(
            key=key,
            pnl=pnl,
            pct_vs_start=pct,
            win_rate=_win_rate(closed),
            trades_count=len(closed),
            best_day=best,
            worst_day=worst,
            avg_per_trade=pnl / Decimal(len(closed)) if closed else ZERO,
            days_left=days_left,
            cashflow_total=cashflow_total,
            expenses=expenses,
            sessions=sessions,
            days_elapsed=days_elapsed,
            session_rate=session_rate,
            avg_per_session=avg_per_session,
            payout_now=max(ZERO, (pnl - expenses) * self.payout_rate),
            projected_pnl=projected_pnl,
            projected_payout=max(ZERO, (projected_pnl - expenses) * self.payout_rate),
        )

    def annual_breakdown(self, trades: Sequence[Trade], year: int, tz: Optional[tzinfo] = None) -> List[MonthRow]:
        tz = self._zone(tz)
        rows = []
        for m in range(1, 13):
            window = month_range(year, m)
            closed = _closed_between(trades, window.start, window.end, tz)
            rows.append(MonthRow(
                month=m,
                pnl=sum((t.net_pnl for t in closed), ZERO),
                trades_count=len(closed),
                win_rate=_win_rate(closed),
            ))
        return rows

    def today_risk(self, trades: Sequence[Trade], balance: Decimal,
                   today: Optional[date] = None, tz: Optional[tzinfo] = None,
                   limits: Optional[RiskLimits] = None) -> TodayRisk:
        """How much of today's loss budget is used and how close the day goal is."""
        tz = self._zone(tz)
        limits = limits or self.limits
        today = self._today(today, tz)
        closed = _closed_between(trades, today, today, tz)
        pnl_today = sum((t.net_pnl for t in closed), ZERO)

        max_loss = limits.max_day_loss(balance)
        goal = limits.day_goal(balance)
        loss_used = min(max(-pnl_today, ZERO), max_loss)
        goal_hit = min(max(pnl_today, ZERO), goal)

        return TodayRisk(
            day=today,
            pnl_today=pnl_today,
            trades_today=len(closed),
            max_day_loss=max_loss,
            loss_used=loss_used,
            loss_used_pct=loss_used / max_loss * HUNDRED if max_loss > 0 else ZERO,
            day_goal=goal,
            goal_hit=goal_hit,
            goal_hit_pct=goal_hit / goal * HUNDRED if goal > 0 else ZERO,
        )
