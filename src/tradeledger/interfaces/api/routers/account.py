# src/tradeledger/interfaces/api/routers/account.py
from fastapi import APIRouter, Depends

from tradeledger.application.services import AccountLedger
from tradeledger.interfaces.api.deps import CurrentUser, get_current_user, get_ledger, require_api_key
from tradeledger.interfaces.api.schemas import (
    AccountOut, EnsureAccountIn, ExpenseIn, OnboardingIn, PreferencesIn, ResetIn,
)

router = APIRouter(prefix="/account", tags=["Account"], dependencies=[Depends(require_api_key)])


@router.post("", response_model=AccountOut)
async def ensure_account(
    body: EnsureAccountIn | None = None,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    """Create the caller's account on first use; returns the existing one otherwise."""
    email = (body.email if body else None) or user.email
    return AccountOut.model_validate(await ledger.ensure_account(user.sub, email=email))


@router.get("", response_model=AccountOut)
async def get_account(user: CurrentUser = Depends(get_current_user), ledger: AccountLedger = Depends(get_ledger)):
    return AccountOut.model_validate(await ledger.get_account(user.sub))


@router.post("/onboarding", response_model=AccountOut)
async def save_onboarding(
    body: OnboardingIn,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    return AccountOut.model_validate(await ledger.save_onboarding(user.sub, body.starting_balance, body.currency))


@router.post("/reset", response_model=AccountOut)
async def reset_account(
    body: ResetIn,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    """Deletes every trade and cashflow of the caller."""
    return AccountOut.model_validate(await ledger.reset_account(user.sub, body.new_starting_balance, body.currency))


@router.post("/expenses", response_model=AccountOut)
async def add_month_expense(
    body: ExpenseIn,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    return AccountOut.model_validate(await ledger.add_month_expense(user.sub, body.year, body.month, body.delta))


@router.patch("/preferences", response_model=AccountOut)
async def update_preferences(
    body: PreferencesIn,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    """Per-account risk limits, sizing multipliers and time zone."""
    account = await ledger.update_preferences(
        user.sub,
        risk_limits=body.risk_limits,
        multipliers=body.multipliers,
        time_zone=body.time_zone,
        clear=body.clear,
    )
    return AccountOut.model_validate(account)
