"""
Admin API routes
Contest definition and lifecycle, price ticks, gateway deposits and the
scheduler sweep for external cron.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.database import get_session
from tradearena.core.dependencies import get_price_oracle, get_static_oracle, require_admin
from tradearena.models.contest import (
    ContestCreate,
    ContestFinancials,
    ContestResponse,
    ContestStatus,
    ContestUpdate,
)
from tradearena.models.trade import PriceTick, TradeResponse
from tradearena.models.wallet import AmountRequest, LedgerEntryResponse
from tradearena.services.contest_registry import ContestRegistry
from tradearena.services.price_oracle import PriceOracle, StaticPriceOracle
from tradearena.services.scheduler import run_sweep
from tradearena.services.virtual_trading import VirtualTradingLedger
from tradearena.services.wallet_ledger import WalletLedger

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


# ============================================================================
# CONTESTS
# ============================================================================

@router.get("/contests", response_model=list[ContestResponse])
async def list_contests(
    status: Optional[ContestStatus] = None,
    session: AsyncSession = Depends(get_session),
):
    """List all contests, drafts included"""
    return await ContestRegistry(session).list_contests(status=status)


@router.post("/contests", response_model=ContestResponse, status_code=201)
async def create_contest(contest_data: ContestCreate, session: AsyncSession = Depends(get_session)):
    """Create a new contest in DRAFT"""
    return await ContestRegistry(session).create(contest_data)


@router.patch("/contests/{contest_id}", response_model=ContestResponse)
async def update_contest(
    contest_id: UUID,
    changes: ContestUpdate,
    session: AsyncSession = Depends(get_session),
):
    return await ContestRegistry(session).update(contest_id, changes)


@router.post("/contests/{contest_id}/publish", response_model=ContestResponse)
async def publish_contest(contest_id: UUID, session: AsyncSession = Depends(get_session)):
    return await ContestRegistry(session).publish(contest_id)


@router.post("/contests/{contest_id}/cancel", response_model=ContestResponse)
async def cancel_contest(contest_id: UUID, session: AsyncSession = Depends(get_session)):
    """Cancel and refund every participant's entry fee"""
    return await ContestRegistry(session).cancel(contest_id)


@router.get("/contests/{contest_id}/financials", response_model=ContestFinancials)
async def contest_financials(contest_id: UUID, session: AsyncSession = Depends(get_session)):
    return await ContestRegistry(session).financials(contest_id)


@router.post("/sweep")
async def sweep(
    oracle: PriceOracle = Depends(get_price_oracle),
    session: AsyncSession = Depends(get_session),
):
    """Run one scheduler sweep now"""
    result = await run_sweep(session, oracle=oracle)
    return {
        "activated": [str(cid) for cid in result.activated],
        "liquidated": {str(cid): n for cid, n in result.liquidated.items()},
        "completed": [str(cid) for cid in result.completed],
        "marked": result.marked,
    }


# ============================================================================
# PRICES
# ============================================================================

@router.post("/trades/{trade_id}/price", response_model=TradeResponse)
async def apply_price_tick(
    trade_id: UUID,
    tick: PriceTick,
    session: AsyncSession = Depends(get_session),
):
    return await VirtualTradingLedger(session).update_price(trade_id, tick.price, tick.as_of)


@router.put("/prices/{symbol}")
async def set_fallback_price(
    symbol: str,
    tick: PriceTick,
    oracle: StaticPriceOracle = Depends(get_static_oracle),
):
    """Set the fallback quote used when the market data cache has none"""
    oracle.set_price(symbol, tick.price)
    return {"symbol": symbol.upper(), "price": tick.price}


# ============================================================================
# PAYMENTS
# ============================================================================

@router.post("/wallet/{user_id}/deposit", response_model=LedgerEntryResponse, status_code=201)
async def deposit(
    user_id: UUID,
    body: AmountRequest,
    session: AsyncSession = Depends(get_session),
):
    """Payment gateway confirmation. The gateway reference makes retries safe."""
    return await WalletLedger(session).deposit(user_id, body.amount, body.reference)
