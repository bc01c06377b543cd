# src/tradeledger/boot.py

import logging
from datetime import tzinfo
from typing import Dict, Any, Optional

from sqlalchemy.orm import sessionmaker

from tradeledger.config import settings
from tradeledger.application.services import (
    AccountLedger,
    KpiService,
    SummaryService,
    RiskService,
)
from tradeledger.application.services.risk_service import default_limits, default_multipliers
from tradeledger.domain.value_objects import zone_from_name

log = logging.getLogger(__name__)


def local_zone(name: Optional[str] = None) -> Optional[tzinfo]:
    """Zone used for day bucketing; None means the host's local zone."""
    name = name or settings.LOCAL_TIMEZONE
    if not name:
        return None
    return zone_from_name(name)


def build_services(session_factory: Optional[sessionmaker] = None) -> Dict[str, Any]:
    """Build and wire all application services and dependencies."""
    log.info("Building application services...")
    services: Dict[str, Any] = {}

    try:
        tz = local_zone()
        limits = default_limits()
        risk_service = RiskService(multipliers=default_multipliers(), limits=limits)

        ledger = AccountLedger(
            session_factory=session_factory,
            risk_service=risk_service,
            max_attempts=settings.TX_MAX_ATTEMPTS,
        )

        services["tz"] = tz
        services["risk_service"] = risk_service
        services["ledger"] = ledger
        services["feed"] = ledger.feed
        services["kpi_service"] = KpiService(limits=limits, tz=tz)
        services["summary_service"] = SummaryService(limits=limits, payout_rate=settings.PAYOUT_RATE, tz=tz)

        log.info("All services built and wired successfully.")
        return services

    except Exception as e:
        log.critical(f"Service building failed: {e}", exc_info=True)
        raise
