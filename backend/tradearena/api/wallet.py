"""
Wallet API routes
Real-money balance, ledger history and withdrawals.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.database import get_session
from tradearena.core.dependencies import get_current_user_id
from tradearena.models.wallet import AmountRequest, BalanceResponse, LedgerEntryResponse
from tradearena.services.wallet_ledger import WalletLedger

router = APIRouter()


def format_inr(paise: int) -> str:
    sign = "-" if paise < 0 else ""
    return f"{sign}₹{abs(paise) / 100:,.2f}"


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Current balance, summed from the ledger."""
    balance = await WalletLedger(session).get_balance(user_id)
    return BalanceResponse(user_id=user_id, balance=balance, formatted=format_inr(balance))


@router.get("/history", response_model=list[LedgerEntryResponse])
async def get_history(
    limit: int = Query(default=50, ge=1, le=500),
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    return await WalletLedger(session).history(user_id, limit)


@router.post("/withdraw", response_model=LedgerEntryResponse, status_code=201)
async def withdraw(
    body: AmountRequest,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    return await WalletLedger(session).withdraw(user_id, body.amount, body.reference)
