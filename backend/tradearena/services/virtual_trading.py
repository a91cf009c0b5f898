"""
Virtual Trading Ledger

Opens, marks and settles simulated option trades against a participant's
contest-scoped virtual wallet.

CRITICAL INVARIANTS:
1. base_balance + invested_amount == starting_balance + realized_pnl
2. A trade moves OPEN -> CLOSED exactly once (conditional UPDATE)
3. unrealized_pnl is always the sum of pnl over the wallet's OPEN trades
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import func, select, update
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.clock import as_naive_utc, utcnow
from tradearena.core.errors import (
    AlreadyClosed,
    ContestNotActive,
    InsufficientFunds,
    InvalidAmount,
    MarketClosed,
    NotFound,
    PositionLimitExceeded,
    TradeLimitExceeded,
)
from tradearena.core.locks import KeyedLocks, get_locks, vwallet_key
from tradearena.models.contest import Contest, ContestStatus
from tradearena.models.trade import CloseReason, Trade, TradeStatus
from tradearena.models.wallet import VirtualWallet
from tradearena.services.market_hours import is_market_open
from tradearena.services.price_oracle import PriceOracle

logger = logging.getLogger(__name__)


class VirtualTradingLedger:
    """Per (user, contest) simulated trading with exact integer settlement"""

    def __init__(self, db: AsyncSession, locks: Optional[KeyedLocks] = None):
        self.db = db
        self.locks = locks or get_locks()

    # ========================================================================
    # READS
    # ========================================================================

    async def get_wallet(self, contest_id: UUID, user_id: UUID) -> VirtualWallet:
        stmt = (
            select(VirtualWallet)
            .where(VirtualWallet.contest_id == contest_id, VirtualWallet.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        wallet = result.scalar_one_or_none()
        if not wallet:
            raise NotFound("Participation", f"{contest_id}/{user_id}")
        return wallet

    async def get_trade(self, trade_id: UUID) -> Trade:
        stmt = select(Trade).where(Trade.id == trade_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        trade = result.scalar_one_or_none()
        if not trade:
            raise NotFound("Trade", trade_id)
        return trade

    async def list_trades(
        self,
        contest_id: UUID,
        user_id: Optional[UUID] = None,
        status: Optional[TradeStatus] = None,
    ) -> list[Trade]:
        stmt = select(Trade).where(Trade.contest_id == contest_id)
        if user_id is not None:
            stmt = stmt.where(Trade.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Trade.status == TradeStatus(status).value)
        stmt = stmt.order_by(Trade.opened_at, Trade.id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # OPEN
    # ========================================================================

    async def open_trade(
        self,
        user_id: UUID,
        contest_id: UUID,
        symbol: str,
        quantity: int,
        price: int,
        now: Optional[datetime] = None,
    ) -> Trade:
        self._validate_trade_params(symbol, quantity, price)
        now = as_naive_utc(now or utcnow())
        cost = quantity * price

        async with self.locks.hold(vwallet_key(contest_id, user_id)):
            try:
                contest = await self._get_contest(contest_id)
                wallet = await self.get_wallet(contest_id, user_id)

                if contest.status != ContestStatus.ACTIVE.value:
                    raise ContestNotActive(
                        f"Contest is not active (status: {contest.status})",
                        contest_id=contest_id,
                        status=contest.status,
                    )
                if now >= contest.end_date or not is_market_open(contest, now):
                    raise MarketClosed(
                        "Market is closed for this contest",
                        contest_id=contest_id,
                        trading_hours=f"{contest.trading_hours_start}-{contest.trading_hours_end}",
                    )

                trades = await self.list_trades(contest_id, user_id)
                if len(trades) >= contest.max_trades_per_user:
                    raise TradeLimitExceeded(
                        f"Maximum of {contest.max_trades_per_user} trades allowed per contest",
                        limit=contest.max_trades_per_user,
                    )

                open_positions = sum(1 for t in trades if t.is_open)
                if open_positions >= contest.max_open_positions:
                    raise PositionLimitExceeded(
                        f"Maximum of {contest.max_open_positions} open positions allowed",
                        limit=contest.max_open_positions,
                    )

                if cost > wallet.available_cash:
                    raise InsufficientFunds(
                        f"Insufficient virtual balance. Required: {cost}, Available: {wallet.available_cash}",
                        required=cost,
                        available=wallet.available_cash,
                    )

                size_limit = Decimal(wallet.net_worth) * Decimal(str(contest.max_position_size_pct)) / 100
                if cost > size_limit:
                    raise PositionLimitExceeded(
                        f"Trade value {cost} exceeds {contest.max_position_size_pct}% of net worth",
                        required=cost,
                        limit=int(size_limit),
                    )

                wallet.base_balance -= cost
                wallet.invested_amount += cost
                wallet.updated_at = now

                trade = Trade(
                    contest_id=contest_id,
                    user_id=user_id,
                    symbol=symbol.upper(),
                    quantity=quantity,
                    entry_price=price,
                    current_price=price,
                    price_updated_at=now,
                    status=TradeStatus.OPEN.value,
                    pnl=0,
                    opened_at=now,
                )
                self.db.add(trade)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            f"Trade opened: {trade.id} user={user_id} contest={contest_id} "
            f"{quantity} x {trade.symbol} @ {price}"
        )
        return trade

    # ========================================================================
    # MARK
    # ========================================================================

    async def update_price(
        self, trade_id: UUID, price: int, as_of: Optional[datetime] = None
    ) -> Trade:
        """Re-mark an open trade. Ticks older than the last applied one are ignored."""
        if isinstance(price, bool) or not isinstance(price, int) or price < 0:
            raise InvalidAmount(f"Price must be a non-negative integer, got {price!r}", price=price)

        trade = await self.get_trade(trade_id)
        async with self.locks.hold(vwallet_key(trade.contest_id, trade.user_id)):
            try:
                trade = await self.get_trade(trade_id)
                if not trade.is_open:
                    raise AlreadyClosed(f"Trade already closed: {trade_id}", trade_id=trade_id)

                tick_time = as_naive_utc(as_of) if as_of else utcnow()
                if tick_time < trade.price_updated_at:
                    logger.debug(f"Stale tick ignored for trade {trade_id}")
                    return trade

                wallet = await self.get_wallet(trade.contest_id, trade.user_id)
                self._apply_mark(trade, price, tick_time)
                await self._refresh_unrealized(wallet)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return trade

    async def mark_to_market(
        self, contest_id: UUID, oracle: PriceOracle, now: Optional[datetime] = None
    ) -> int:
        """Apply the oracle's latest quote to every open trade in the contest"""
        now = as_naive_utc(now or utcnow())
        open_trades = await self.list_trades(contest_id, status=TradeStatus.OPEN)

        quotes: dict[str, Optional[int]] = {}
        for symbol in {t.symbol for t in open_trades}:
            quotes[symbol] = await oracle.get_price(symbol)

        # A failed update rolls back and expires every loaded trade
        targets = [(t.id, t.symbol) for t in open_trades]
        marked = 0
        for trade_id, symbol in targets:
            price = quotes.get(symbol)
            if price is None:
                continue
            try:
                await self.update_price(trade_id, price, as_of=now)
                marked += 1
            except AlreadyClosed:
                logger.debug(f"Trade {trade_id} closed before it could be marked")
        return marked

    # ========================================================================
    # CLOSE
    # ========================================================================

    async def close_trade(
        self,
        trade_id: UUID,
        user_id: Optional[UUID] = None,
        price: Optional[int] = None,
        reason: CloseReason = CloseReason.MANUAL,
        now: Optional[datetime] = None,
    ) -> Trade:
        """
        Settle an open trade at its current mark (or at `price` when given).
        A second close of the same trade raises AlreadyClosed and moves no money.
        """
        now = as_naive_utc(now or utcnow())
        trade = await self.get_trade(trade_id)
        if user_id is not None and trade.user_id != user_id:
            raise NotFound("Trade", trade_id)

        async with self.locks.hold(vwallet_key(trade.contest_id, trade.user_id)):
            try:
                trade = await self.get_trade(trade_id)
                if not trade.is_open:
                    raise AlreadyClosed(f"Trade already closed: {trade_id}", trade_id=trade_id)
                wallet = await self.get_wallet(trade.contest_id, trade.user_id)
                if price is not None:
                    self._apply_mark(trade, price, now)
                await self._settle(trade, wallet, reason, now)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            f"Trade closed: {trade.id} user={trade.user_id} final_pnl={trade.final_pnl} "
            f"reason={trade.close_reason}"
        )
        return trade

    async def force_close_all(
        self,
        contest_id: UUID,
        reason: CloseReason = CloseReason.CONTEST_END,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Close every open trade in the contest at its current mark. Trades that
        another path closed first are skipped, never settled twice.
        """
        now = as_naive_utc(now or utcnow())
        stmt = select(Trade.user_id).where(
            Trade.contest_id == contest_id,
            Trade.status == TradeStatus.OPEN.value,
        ).distinct()
        result = await self.db.execute(stmt)
        user_ids = list(result.scalars().all())

        closed = 0
        for user_id in user_ids:
            async with self.locks.hold(vwallet_key(contest_id, user_id)):
                try:
                    wallet = await self.get_wallet(contest_id, user_id)
                    for trade in await self.list_trades(contest_id, user_id, TradeStatus.OPEN):
                        try:
                            await self._settle(trade, wallet, reason, now)
                            closed += 1
                        except AlreadyClosed:
                            logger.info(f"Trade {trade.id} already settled, skipping force-close")
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise

        if closed:
            logger.info(f"Force-closed {closed} trades in contest {contest_id} (reason={CloseReason(reason).value})")
        return closed

    # ========================================================================
    # INTERNALS (caller holds the vwallet lock and owns the commit)
    # ========================================================================

    def _validate_trade_params(self, symbol: str, quantity: int, price: int) -> None:
        if not symbol or len(symbol.strip()) < 3:
            raise InvalidAmount(f"Invalid symbol: {symbol!r}", symbol=symbol)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidAmount("Quantity must be a positive integer", quantity=quantity)
        if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
            raise InvalidAmount("Price must be a positive integer", price=price)

    async def _get_contest(self, contest_id: UUID) -> Contest:
        stmt = select(Contest).where(Contest.id == contest_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        contest = result.scalar_one_or_none()
        if not contest:
            raise NotFound("Contest", contest_id)
        return contest

    def _apply_mark(self, trade: Trade, price: int, as_of: datetime) -> None:
        # Long-only: every trade is an option purchase
        trade.current_price = price
        trade.pnl = (price - trade.entry_price) * trade.quantity
        trade.price_updated_at = as_of

    async def _refresh_unrealized(self, wallet: VirtualWallet) -> None:
        await self.db.flush()
        stmt = select(func.coalesce(func.sum(Trade.pnl), 0)).where(
            Trade.contest_id == wallet.contest_id,
            Trade.user_id == wallet.user_id,
            Trade.status == TradeStatus.OPEN.value,
        )
        result = await self.db.execute(stmt)
        wallet.unrealized_pnl = int(result.scalar_one())
        wallet.updated_at = utcnow()

    async def _settle(
        self, trade: Trade, wallet: VirtualWallet, reason: CloseReason, now: datetime
    ) -> None:
        await self.db.flush()
        final_pnl = trade.pnl
        stmt = (
            update(Trade)
            .where(Trade.id == trade.id, Trade.status == TradeStatus.OPEN.value)
            .values(
                status=TradeStatus.CLOSED.value,
                final_pnl=final_pnl,
                closing_price=trade.current_price,
                close_reason=CloseReason(reason).value,
                closed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            raise AlreadyClosed(f"Trade already closed: {trade.id}", trade_id=trade.id)
        await self.db.refresh(trade)

        # Reverse the open-time debit and book the P&L
        wallet.base_balance += trade.cost + final_pnl
        wallet.invested_amount -= trade.cost
        wallet.realized_pnl += final_pnl
        await self._refresh_unrealized(wallet)
