# src/tradeledger/application/services/__init__.py

from .ledger_service import AccountLedger
from .kpi_service import KpiService, compute_kpis
from .summary_service import SummaryService
from .risk_service import RiskService

__all__ = [
    "AccountLedger",
    "KpiService",
    "compute_kpis",
    "SummaryService",
    "RiskService",
]
