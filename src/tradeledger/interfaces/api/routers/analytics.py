# src/tradeledger/interfaces/api/routers/analytics.py
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from tradeledger.application.services import AccountLedger, KpiService, SummaryService
from tradeledger.domain.timeframe import resolve_timeframe
from tradeledger.interfaces.api.deps import (
    CurrentUser, get_current_user, get_kpi_service, get_ledger, get_summary_service, require_api_key,
)
from tradeledger.interfaces.api.schemas import KpiReportOut, MonthRowOut, MonthSummaryOut, TodayRiskOut

router = APIRouter(prefix="/analytics", tags=["Analytics"], dependencies=[Depends(require_api_key)])


@router.get("/kpis", response_model=KpiReportOut)
async def kpis(
    timeframe: str = "month",
    anchor: Optional[date] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
    kpi_service: KpiService = Depends(get_kpi_service),
):
    """Indicators and chart series for the window of `timeframe` around `anchor` (today by default)."""
    snapshot = await ledger.snapshot(user.sub)
    anchor = anchor or datetime.now(kpi_service.tz_for(snapshot.account)).date()
    window = resolve_timeframe(timeframe, anchor, start, end)
    report = kpi_service.report(snapshot, window.start, window.end)
    return KpiReportOut.from_report(report, window.start, window.end)


@router.get("/month", response_model=MonthSummaryOut)
async def month_summary(
    year: int = Query(ge=1, le=9999),
    month: int = Query(ge=1, le=12),
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
    summary: SummaryService = Depends(get_summary_service),
):
    snapshot = await ledger.snapshot(user.sub)
    return summary.month_summary(snapshot, year, month)


@router.get("/year", response_model=List[MonthRowOut])
async def annual_breakdown(
    year: int = Query(ge=1, le=9999),
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
    summary: SummaryService = Depends(get_summary_service),
):
    snapshot = await ledger.snapshot(user.sub)
    return summary.annual_breakdown(snapshot.trades, year, tz=summary.tz_for(snapshot.account))


@router.get("/today", response_model=TodayRiskOut)
async def today_risk(
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
    summary: SummaryService = Depends(get_summary_service),
):
    snapshot = await ledger.snapshot(user.sub)
    account = snapshot.account
    return summary.today_risk(
        snapshot.trades, account.balance, tz=summary.tz_for(account), limits=summary.limits_for(account),
    )
