# src/tradeledger/interfaces/api/deps.py

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from tradeledger.config import settings
from tradeledger.interfaces.api.security.auth import decode_token
from tradeledger.application.services import AccountLedger, KpiService, SummaryService

# --- Security & Auth Dependencies ---

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    """The authenticated caller; `sub` is the stable user id of the ledger."""
    sub: str
    email: Optional[str] = None


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> CurrentUser:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        payload = decode_token(creds.credentials)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )
    sub = str(payload.get("sub") or "").strip()
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return CurrentUser(sub=sub, email=payload.get("email"))


def require_api_key(x_api_key: str | None = Header(default=None)):
    if settings.API_KEY and x_api_key != settings.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True

# --- Service Dependencies ---

def _service(request: Request, name: str):
    services = request.app.state.services or {}
    service = services.get(name)
    if not service:
        raise HTTPException(status_code=503, detail=f"{name} is currently unavailable.")
    return service


def get_ledger(request: Request) -> AccountLedger:
    return _service(request, "ledger")


def get_kpi_service(request: Request) -> KpiService:
    return _service(request, "kpi_service")


def get_summary_service(request: Request) -> SummaryService:
    return _service(request, "summary_service")
