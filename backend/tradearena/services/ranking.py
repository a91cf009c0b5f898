"""
Ranking & Prize Projection Engine

Leaderboards are derived from stored state on every call and never cached.
Prizes for a completed contest are settled exactly once.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID
import logging

from sqlalchemy import select
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.clock import as_naive_utc, utcnow
from tradearena.core.errors import InvalidStatusTransition, NotFound
from tradearena.core.locks import KeyedLocks, contest_key, get_locks
from tradearena.models.contest import Contest, ContestStatus, Participation
from tradearena.models.leaderboard import LeaderboardEntry, LeaderboardResponse
from tradearena.models.trade import Trade
from tradearena.models.wallet import LedgerEntryType, VirtualWallet
from tradearena.services.scoring import score_trades
from tradearena.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)


def prize_key(contest_id: UUID, user_id: UUID) -> str:
    return f"contest_prize:{contest_id}:{user_id}"


@dataclass
class Standing:
    """Everything the ranking needs about one participant"""
    participation: Participation
    wallet: VirtualWallet
    trades: list[Trade] = field(default_factory=list)


def rank_standings(standings: Sequence[Standing], distribution: dict[int, int]) -> list[LeaderboardEntry]:
    """
    Order by pnl desc, points desc, joined_at asc, then user id, and assign
    ranks 1..n. Deterministic for a given input.
    """
    rows = []
    for standing in standings:
        wallet = standing.wallet
        trades = sorted(standing.trades, key=lambda t: (t.opened_at, str(t.id)))
        points = score_trades(trades, wallet.starting_balance)
        rows.append((standing, wallet.total_pnl, points))

    rows.sort(key=lambda row: (
        -row[1],
        -row[2],
        row[0].participation.joined_at,
        str(row[0].participation.user_id),
    ))

    entries = []
    for rank, (standing, pnl, points) in enumerate(rows, start=1):
        wallet = standing.wallet
        entries.append(
            LeaderboardEntry(
                user_id=standing.participation.user_id,
                rank=rank,
                points=points,
                pnl=pnl,
                realized_pnl=wallet.realized_pnl,
                unrealized_pnl=wallet.unrealized_pnl,
                trade_count=len(standing.trades),
                net_worth=wallet.net_worth,
                joined_at=standing.participation.joined_at,
                projected_prize=distribution.get(rank, 0),
            )
        )
    return entries


class RankingEngine:
    def __init__(self, db: AsyncSession, locks: Optional[KeyedLocks] = None):
        self.db = db
        self.locks = locks or get_locks()

    async def _get_contest(self, contest_id: UUID, for_update: bool = False) -> Contest:
        stmt = select(Contest).where(Contest.id == contest_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        contest = result.scalar_one_or_none()
        if not contest:
            raise NotFound("Contest", contest_id)
        return contest

    async def _load_standings(self, contest_id: UUID) -> list[Standing]:
        participations = (await self.db.execute(
            select(Participation)
            .where(Participation.contest_id == contest_id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        wallets = (await self.db.execute(
            select(VirtualWallet)
            .where(VirtualWallet.contest_id == contest_id)
            .execution_options(populate_existing=True)
        )).scalars().all()
        trades = (await self.db.execute(
            select(Trade)
            .where(Trade.contest_id == contest_id)
            .execution_options(populate_existing=True)
        )).scalars().all()

        wallets_by_user = {w.user_id: w for w in wallets}
        trades_by_user: dict[UUID, list[Trade]] = {}
        for trade in trades:
            trades_by_user.setdefault(trade.user_id, []).append(trade)

        return [
            Standing(p, wallets_by_user[p.user_id], trades_by_user.get(p.user_id, []))
            for p in participations
            if p.user_id in wallets_by_user
        ]

    async def compute_leaderboard(self, contest_id: UUID) -> list[LeaderboardEntry]:
        contest = await self._get_contest(contest_id)
        standings = await self._load_standings(contest_id)
        # Entry fees of a cancelled contest were refunded; nothing is paid out
        if contest.status == ContestStatus.CANCELLED.value:
            return rank_standings(standings, {})
        return rank_standings(standings, contest.distribution())

    async def settle_prizes(self, contest_id: UUID, now: Optional[datetime] = None) -> list[LeaderboardEntry]:
        """
        Record final ranks and credit prizes for a COMPLETED contest.

        Guarded twice: prizes_settled_at under the contest row lock, and one
        ledger idempotency key per (contest, user) prize credit.
        """
        now = as_naive_utc(now or utcnow())
        wallet = WalletLedger(self.db, self.locks)

        async with self.locks.hold(contest_key(contest_id)):
            try:
                contest = await self._get_contest(contest_id, for_update=True)
                if contest.status != ContestStatus.COMPLETED.value:
                    raise InvalidStatusTransition(
                        f"Prizes can only be settled for completed contests (status: {contest.status})",
                        contest_id=contest_id,
                        status=contest.status,
                    )

                standings = await self._load_standings(contest_id)
                entries = rank_standings(standings, contest.distribution())
                if contest.prizes_settled_at is not None:
                    return entries

                participations = {s.participation.user_id: s.participation for s in standings}
                paid = 0
                for entry in entries:
                    participation = participations[entry.user_id]
                    participation.final_rank = entry.rank
                    participation.prize_amount = entry.projected_prize
                    if entry.projected_prize > 0:
                        await wallet.credit(
                            entry.user_id,
                            entry.projected_prize,
                            LedgerEntryType.CONTEST_PRIZE,
                            reference_id=contest_id,
                            idempotency_key=prize_key(contest_id, entry.user_id),
                            description=f"Prize for rank {entry.rank}: {contest.name}",
                            commit=False,
                        )
                        paid += entry.projected_prize

                contest.total_prize_paid += paid
                contest.prizes_settled_at = now
                contest.updated_at = now
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(f"Prizes settled for contest {contest_id}: {paid} paid to {len(entries)} participants")
        return entries

    async def leaderboard(self, contest_id: UUID) -> LeaderboardResponse:
        """Live standings; a completed contest is settled on first view"""
        contest = await self._get_contest(contest_id)
        if contest.status == ContestStatus.COMPLETED.value and contest.prizes_settled_at is None:
            entries = await self.settle_prizes(contest_id)
        else:
            entries = await self.compute_leaderboard(contest_id)

        return LeaderboardResponse(
            contest_id=contest.id,
            status=contest.status,
            final=contest.status == ContestStatus.COMPLETED.value,
            prize_pool=0 if contest.status == ContestStatus.CANCELLED.value else contest.prize_pool,
            entries=entries,
        )
