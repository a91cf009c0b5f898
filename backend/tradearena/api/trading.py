"""
Trading API routes
Contest trade placement, closing, trade history and the virtual wallet.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.config import settings
from tradearena.core.database import get_session
from tradearena.core.dependencies import get_current_user_id, get_price_oracle
from tradearena.core.security import limiter
from tradearena.models.trade import TradeCreate, TradeResponse, TradeStatus
from tradearena.models.wallet import VirtualWallet, VirtualWalletResponse
from tradearena.services.price_oracle import PriceOracle
from tradearena.services.virtual_trading import VirtualTradingLedger

router = APIRouter()


def wallet_response(wallet: VirtualWallet) -> VirtualWalletResponse:
    return VirtualWalletResponse(
        contest_id=wallet.contest_id,
        user_id=wallet.user_id,
        starting_balance=wallet.starting_balance,
        base_balance=wallet.base_balance,
        invested_amount=wallet.invested_amount,
        realized_pnl=wallet.realized_pnl,
        unrealized_pnl=wallet.unrealized_pnl,
        net_worth=wallet.net_worth,
        available_cash=wallet.available_cash,
        total_pnl=wallet.total_pnl,
        updated_at=wallet.updated_at,
    )


# ============================================================================
# TRADES
# ============================================================================

@router.post("/contests/{contest_id}/trades", response_model=TradeResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT_TRADING)
async def open_trade(
    request: Request,
    contest_id: UUID,
    order: TradeCreate,
    user_id: UUID = Depends(get_current_user_id),
    oracle: PriceOracle = Depends(get_price_oracle),
    session: AsyncSession = Depends(get_session),
):
    """Buy an option contract. Without an explicit price the latest quote is used."""
    price = order.price
    if price is None:
        price = await oracle.get_price(order.symbol)
        if price is None:
            raise HTTPException(status_code=503, detail=f"Price unavailable for {order.symbol}")

    return await VirtualTradingLedger(session).open_trade(
        user_id, contest_id, order.symbol, order.quantity, price
    )


@router.post("/trades/{trade_id}/close", response_model=TradeResponse)
@limiter.limit(settings.RATE_LIMIT_TRADING)
async def close_trade(
    request: Request,
    trade_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    oracle: PriceOracle = Depends(get_price_oracle),
    session: AsyncSession = Depends(get_session),
):
    """Close at the freshest available quote, or the last mark if none."""
    ledger = VirtualTradingLedger(session)
    trade = await ledger.get_trade(trade_id)
    if trade.user_id != user_id:
        raise HTTPException(status_code=404, detail="Trade not found")

    price = await oracle.get_price(trade.symbol)
    return await ledger.close_trade(trade_id, user_id=user_id, price=price)


@router.get("/contests/{contest_id}/trades", response_model=list[TradeResponse])
async def list_trades(
    contest_id: UUID,
    status: Optional[TradeStatus] = None,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    return await VirtualTradingLedger(session).list_trades(contest_id, user_id, status)


# ============================================================================
# VIRTUAL WALLET
# ============================================================================

@router.get("/contests/{contest_id}/wallet", response_model=VirtualWalletResponse)
async def get_virtual_wallet(
    contest_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    wallet = await VirtualTradingLedger(session).get_wallet(contest_id, user_id)
    return wallet_response(wallet)
