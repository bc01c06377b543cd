# src/tradeledger/interfaces/api/routers/trades.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from tradeledger.application.services import AccountLedger
from tradeledger.interfaces.api.deps import CurrentUser, get_current_user, get_ledger, require_api_key
from tradeledger.interfaces.api.schemas import DeletedOut, TradeCloseIn, TradeIn, TradeOut, TradePatch

router = APIRouter(prefix="/trades", tags=["Trades"], dependencies=[Depends(require_api_key)])


@router.get("", response_model=List[TradeOut])
async def list_trades(
    opened_from: Optional[datetime] = None,
    opened_to: Optional[datetime] = None,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    return await ledger.list_trades(user.sub, opened_from=opened_from, opened_to=opened_to)


@router.post("", response_model=TradeOut, status_code=status.HTTP_201_CREATED)
async def open_trade(
    body: TradeIn,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    return await ledger.open_trade(user.sub, body.model_dump())


@router.post("/{trade_id}/close", response_model=TradeOut)
async def close_trade(
    trade_id: str,
    body: TradeCloseIn,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    return await ledger.close_trade(user.sub, trade_id, body.gross_pnl)


@router.patch("/{trade_id}", response_model=TradeOut)
async def edit_trade(
    trade_id: str,
    body: TradePatch,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    return await ledger.edit_trade(user.sub, trade_id, body.model_dump(exclude_unset=True))


@router.delete("/{trade_id}", response_model=DeletedOut)
async def delete_trade(
    trade_id: str,
    missing_ok: bool = True,
    user: CurrentUser = Depends(get_current_user),
    ledger: AccountLedger = Depends(get_ledger),
):
    deleted = await ledger.delete_trade(user.sub, trade_id, missing_ok=missing_ok)
    return DeletedOut(deleted=deleted)
