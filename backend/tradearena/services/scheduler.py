"""
Contest scheduler.

One sweep drives every time-based transition: UPCOMING contests whose start
has passed go ACTIVE, ACTIVE contests past today's market cutoff have their
open trades liquidated (once per market day), and ACTIVE contests past their
end date are completed and settled.

Runs as a background task in the app lifespan; the same sweep is exposed to
external cron through the admin API.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.clock import as_naive_utc, utcnow
from tradearena.core.config import settings
from tradearena.core.locks import KeyedLocks, contest_key, get_locks
from tradearena.models.contest import Contest, ContestStatus
from tradearena.models.trade import CloseReason
from tradearena.services.contest_registry import ContestRegistry
from tradearena.services.market_hours import is_past_cutoff, market_cutoff, market_day
from tradearena.services.price_oracle import PriceOracle
from tradearena.services.virtual_trading import VirtualTradingLedger

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    activated: list[UUID] = field(default_factory=list)
    liquidated: dict[UUID, int] = field(default_factory=dict)
    completed: list[UUID] = field(default_factory=list)
    marked: int = 0


async def run_sweep(
    db: AsyncSession,
    now: Optional[datetime] = None,
    oracle: Optional[PriceOracle] = None,
    locks: Optional[KeyedLocks] = None,
) -> SweepResult:
    """Run every due transition once, in lifecycle order"""
    now = as_naive_utc(now or utcnow())
    locks = locks or get_locks()
    registry = ContestRegistry(db, locks)
    trading = VirtualTradingLedger(db, locks)
    result = SweepResult()

    for contest in await registry.activate_due(now):
        result.activated.append(contest.id)

    # Refresh marks before any liquidation so trades close at the latest quote
    active = await registry.list_contests(status=ContestStatus.ACTIVE)
    if oracle is not None:
        for contest in active:
            result.marked += await trading.mark_to_market(contest.id, oracle, now)

    for contest in active:
        if now >= contest.end_date:
            continue
        closed = await liquidate_at_cutoff(db, contest.id, now, locks)
        if closed is not None:
            result.liquidated[contest.id] = closed

    for contest in await registry.complete_due(now):
        result.completed.append(contest.id)

    if result.activated or result.liquidated or result.completed:
        logger.info(
            f"Sweep at {now.isoformat()}: activated={len(result.activated)} "
            f"liquidated={sum(result.liquidated.values())} completed={len(result.completed)}"
        )
    return result


async def liquidate_at_cutoff(
    db: AsyncSession,
    contest_id: UUID,
    now: datetime,
    locks: Optional[KeyedLocks] = None,
) -> Optional[int]:
    """
    Force-close the contest's open trades if the market cutoff has passed and
    today's liquidation has not run yet. Returns None when nothing was due.
    """
    locks = locks or get_locks()
    today = market_day(now).isoformat()

    async with locks.hold(contest_key(contest_id)):
        stmt = (
            select(Contest)
            .where(Contest.id == contest_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        contest = (await db.execute(stmt)).scalar_one()
        if contest.status != ContestStatus.ACTIVE.value:
            return None
        if not is_past_cutoff(contest, now) or contest.last_market_close_on == today:
            return None

        closed = await VirtualTradingLedger(db, locks).force_close_all(
            contest_id, CloseReason.MARKET_CLOSE, now
        )
        try:
            contest = (await db.execute(stmt)).scalar_one()
            contest.last_market_close_on = today
            contest.updated_at = now
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info(
        f"Market cutoff liquidation for contest {contest_id} "
        f"(cutoff {market_cutoff(contest, now):%Y-%m-%d %H:%M} UTC): {closed} trades closed"
    )
    return closed


class ContestScheduler:
    """
    Periodic sweep loop with its own session per run.
    Errors in one sweep are logged and the loop keeps going.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: Optional[int] = None,
        oracle_factory: Optional[Callable[[], Optional[PriceOracle]]] = None,
    ):
        self.session_factory = session_factory
        self.interval = interval or settings.SWEEP_INTERVAL_SECONDS
        self.oracle_factory = oracle_factory
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        oracle = self.oracle_factory() if self.oracle_factory else None
        async with self.session_factory() as session:
            return await run_sweep(session, now, oracle)

    async def _loop(self):
        while self.running:
            try:
                await self.run_sweep()
            except Exception as e:
                logger.error(f"Contest sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Contest scheduler started (every {self.interval}s)")

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Contest scheduler stopped")
