# src/tradeledger/interfaces/api/main.py
import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tradeledger.config import settings
from tradeledger.logging_conf import setup_logging
from tradeledger.boot import build_services
from tradeledger.domain.errors import (
    LedgerError, NotFound, InsufficientBalance, AlreadyOnboarded, TransactionConflict, InvalidInput,
)
from tradeledger.infrastructure.db.base import create_tables
from tradeledger.interfaces.api.metrics import router as metrics_router, REQUESTS, LATENCY
from tradeledger.interfaces.api.routers import account as account_router
from tradeledger.interfaces.api.routers import trades as trades_router
from tradeledger.interfaces.api.routers import cashflows as cashflows_router
from tradeledger.interfaces.api.routers import analytics as analytics_router

setup_logging()
log = logging.getLogger(__name__)

_STATUS_BY_ERROR = {
    NotFound: 404,
    InsufficientBalance: 409,
    AlreadyOnboarded: 409,
    TransactionConflict: 409,
    InvalidInput: 422,
}

# --- FastAPI App ---
app = FastAPI(title="TradeLedger API", version="1.0.0")
app.state.services = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    if not settings.METRICS_ENABLED:
        return await call_next(request)
    started = time.perf_counter()
    response = await call_next(request)
    LATENCY.observe(time.perf_counter() - started)
    REQUESTS.labels(request.method, str(response.status_code)).inc()
    return response


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    code = next((c for cls, c in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 400)
    log.info(f"{request.method} {request.url.path} -> {code}: {exc}")
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": exc.__class__.__name__})


@app.on_event("startup")
async def on_startup():
    log.info("Application startup sequence initiated...")
    create_tables()
    app.state.services = build_services()
    log.info("Application startup complete.")


@app.get("/")
def root(): return {"message": "TradeLedger API Running"}

@app.get("/health")
def health_check(): return {"status": "ok"}

app.include_router(metrics_router)
app.include_router(account_router.router)
app.include_router(trades_router.router)
app.include_router(cashflows_router.router)
app.include_router(analytics_router.router)
