# src/tradeledger/interfaces/api/routers/cashflows.py
from typing import List

from fastapi import APIRouter, Depends, status

from tradeledger.application.services import AccountLedger
from tradeledger.interfaces.api.deps import CurrentUser, get_current_user, get_ledger, require_api_key
from tradeledger.interfaces.api.schemas import CashflowIn, CashflowOut, DeletedOut

router = APIRouter(prefix="/cashflows", tags=["Cashflows"], dependencies=[Depends(require_api_key)])


@router.get("", response_model=List[CashflowOut])
async def list_cashflows(user: CurrentUser = Depends(get_current_user), ledger: AccountLedger = Depends(get_ledger)):
    return await ledger.list_cashflows(user.sub)


@router.post("", response_model=CashflowOut, status_code=status.HTTP_201_CREATED)
async def add_cashflow(
    body: CashflowIn,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    """Positive amounts are deposits, negative ones withdrawals."""
    return await ledger.add_cashflow(user.sub, body.amount, body.note)


@router.delete("/{cashflow_id}", response_model=DeletedOut)
async def delete_cashflow(
    cashflow_id: str,
    missing_ok: bool = True,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    deleted = await ledger.delete_cashflow(user.sub, cashflow_id, missing_ok=missing_ok)
    return DeletedOut(deleted=deleted)
