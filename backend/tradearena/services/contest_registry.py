"""
Contest Registry

Owns contest definitions and the lifecycle state machine:

    DRAFT -> UPCOMING -> ACTIVE -> COMPLETED
      \\________\\__________\\-----> CANCELLED

Money is never moved here directly: refunds go through the wallet ledger,
trade settlement through the virtual trading ledger, prizes through ranking.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID
import logging

from sqlalchemy import select
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.clock import as_naive_utc, utcnow
from tradearena.core.config import settings
from tradearena.core.errors import InvalidContestSpec, InvalidStatusTransition, NotFound
from tradearena.core.locks import KeyedLocks, contest_key, get_locks
from tradearena.models.contest import (
    CANCELLABLE_STATUSES,
    JOINABLE_STATUSES,
    Contest,
    ContestCreate,
    ContestFinancials,
    ContestStatus,
    ContestType,
    ContestUpdate,
    Participation,
    TradingSettings,
)
from tradearena.models.trade import CloseReason
from tradearena.models.wallet import LedgerEntryType
from tradearena.services.market_hours import parse_hhmm
from tradearena.services.prize_pool import (
    auto_distribute,
    compute_prize_pool,
    normalize_distribution,
    require_valid_distribution,
)
from tradearena.services.ranking import RankingEngine
from tradearena.services.virtual_trading import VirtualTradingLedger
from tradearena.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)


def refund_key(contest_id: UUID, user_id: UUID) -> str:
    return f"contest_refund:{contest_id}:{user_id}"


def default_virtual_money(max_participants: int) -> int:
    if max_participants >= settings.MEGA_CONTEST_THRESHOLD:
        return settings.VIRTUAL_MONEY_MEGA
    return settings.VIRTUAL_MONEY_STANDARD


def default_prize_ranks(contest_type: ContestType, max_participants: int) -> int:
    if contest_type in (ContestType.WINNER_TAKES_ALL, ContestType.HEAD2HEAD):
        return 1
    return min(3, max_participants)


def derive_contest_fields(spec: ContestCreate) -> dict[str, Any]:
    """
    Validate a contest definition and fill in derived values.

    Returns the column values for a Contest row (everything except identity,
    status and timestamps).
    """
    contest_type = ContestType(spec.contest_type)
    start_date = as_naive_utc(spec.start_date)
    end_date = as_naive_utc(spec.end_date)
    if start_date >= end_date:
        raise InvalidContestSpec("Start date must be before end date", start_date=start_date, end_date=end_date)

    max_participants = spec.max_participants
    if max_participants < 1:
        raise InvalidContestSpec("max_participants must be at least 1", max_participants=max_participants)
    if contest_type == ContestType.HEAD2HEAD and max_participants != 2:
        raise InvalidContestSpec("Head-to-head contests have exactly 2 participants", max_participants=max_participants)
    min_participants = spec.min_participants if spec.min_participants is not None else min(2, max_participants)
    if not 1 <= min_participants <= max_participants:
        raise InvalidContestSpec(
            "min_participants must be between 1 and max_participants",
            min_participants=min_participants,
            max_participants=max_participants,
        )

    fee_pct = spec.platform_fee_pct if spec.platform_fee_pct is not None else settings.PLATFORM_FEE_PCT
    if not 0 <= fee_pct < 100:
        raise InvalidContestSpec("platform_fee_pct must be in [0, 100)", platform_fee_pct=fee_pct)

    entry_fee = 0 if contest_type == ContestType.FREE else spec.entry_fee

    virtual_money = spec.virtual_money_amount
    if virtual_money is None:
        virtual_money = default_virtual_money(max_participants)
    if virtual_money <= 0:
        raise InvalidContestSpec("virtual_money_amount must be positive", virtual_money_amount=virtual_money)

    trading = _resolve_trading_settings(spec.trading_settings or TradingSettings())

    # Prize pool
    prize_pool = compute_prize_pool(entry_fee, max_participants, fee_pct, contest_type)
    guaranteed = spec.guaranteed_prize_pool or 0
    if guaranteed:
        if contest_type != ContestType.GUARANTEED:
            raise InvalidContestSpec(
                "Only guaranteed contests may set guaranteed_prize_pool",
                contest_type=contest_type.value,
            )
        prize_pool = max(prize_pool, guaranteed)

    if spec.prize_distribution:
        distribution = normalize_distribution(spec.prize_distribution, prize_pool)
    else:
        ranks = spec.prize_ranks or default_prize_ranks(contest_type, max_participants)
        distribution = auto_distribute(prize_pool, ranks, contest_type)
    require_valid_distribution(distribution, prize_pool)

    return {
        "name": spec.name,
        "description": spec.description,
        "contest_type": contest_type.value,
        "category": spec.category,
        "entry_fee": entry_fee,
        "min_participants": min_participants,
        "max_participants": max_participants,
        "platform_fee_pct": float(fee_pct),
        "prize_pool": prize_pool,
        "guaranteed_prize_pool": guaranteed,
        "prize_distribution": {str(rank): amount for rank, amount in distribution.items()},
        "custom_distribution": bool(spec.prize_distribution),
        "virtual_money_amount": virtual_money,
        "start_date": start_date,
        "end_date": end_date,
        **trading,
    }


def _resolve_trading_settings(trading: TradingSettings) -> dict[str, Any]:
    resolved = {
        "max_trades_per_user": trading.max_trades_per_user or settings.DEFAULT_MAX_TRADES_PER_USER,
        "max_open_positions": trading.max_open_positions or settings.DEFAULT_MAX_OPEN_POSITIONS,
        "max_position_size_pct": trading.max_position_size_pct or settings.DEFAULT_MAX_POSITION_SIZE_PCT,
        "trading_hours_start": trading.trading_hours_start or settings.TRADING_HOURS_START,
        "trading_hours_end": trading.trading_hours_end or settings.TRADING_HOURS_END,
        "trading_days": sorted(set(
            trading.trading_days if trading.trading_days is not None else settings.TRADING_DAYS
        )),
    }

    if not 0 < resolved["max_position_size_pct"] <= 100:
        raise InvalidContestSpec(
            "max_position_size_pct must be in (0, 100]",
            max_position_size_pct=resolved["max_position_size_pct"],
        )
    if parse_hhmm(resolved["trading_hours_start"]) >= parse_hhmm(resolved["trading_hours_end"]):
        raise InvalidContestSpec(
            "Trading hours must open before they close",
            start=resolved["trading_hours_start"],
            end=resolved["trading_hours_end"],
        )
    days = resolved["trading_days"]
    if not days or any(day < 0 or day > 6 for day in days):
        raise InvalidContestSpec("trading_days must be weekday numbers 0-6", trading_days=days)
    return resolved


class ContestRegistry:
    """Contest definitions and lifecycle transitions"""

    def __init__(self, db: AsyncSession, locks: Optional[KeyedLocks] = None):
        self.db = db
        self.locks = locks or get_locks()

    # ========================================================================
    # READS
    # ========================================================================

    async def get(self, contest_id: UUID, for_update: bool = False) -> Contest:
        stmt = select(Contest).where(Contest.id == contest_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        contest = result.scalar_one_or_none()
        if not contest:
            raise NotFound("Contest", contest_id)
        return contest

    async def list_contests(
        self,
        status: Optional[ContestStatus] = None,
        published_only: bool = False,
        limit: int = 100,
    ) -> list[Contest]:
        stmt = select(Contest)
        if status is not None:
            stmt = stmt.where(Contest.status == ContestStatus(status).value)
        if published_only:
            stmt = stmt.where(Contest.is_published == True)  # noqa: E712
        stmt = stmt.order_by(Contest.start_date, Contest.id).limit(limit)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_capacity_remaining(self, contest_id: UUID) -> int:
        contest = await self.get(contest_id)
        return contest.capacity_remaining

    async def is_joinable(self, contest_id: UUID, now: Optional[datetime] = None) -> bool:
        now = as_naive_utc(now or utcnow())
        contest = await self.get(contest_id)
        return (
            contest.status in JOINABLE_STATUSES
            and contest.current_participants < contest.max_participants
            and now < contest.end_date
        )

    async def financials(self, contest_id: UUID) -> ContestFinancials:
        contest = await self.get(contest_id)
        return ContestFinancials(
            contest_id=contest.id,
            prize_pool=contest.prize_pool,
            total_allocated=sum(contest.distribution().values()),
            total_entry_fees=contest.total_entry_fees,
            total_refunded=contest.total_refunded,
            total_prize_paid=contest.total_prize_paid,
            platform_revenue=contest.total_entry_fees - contest.total_refunded - contest.total_prize_paid,
        )

    # ========================================================================
    # DEFINITION
    # ========================================================================

    async def create(self, spec: ContestCreate, created_by: Optional[UUID] = None) -> Contest:
        """Validate and store a new contest in DRAFT"""
        fields = derive_contest_fields(spec)
        contest = Contest(**fields, status=ContestStatus.DRAFT.value, created_by=created_by)
        self.db.add(contest)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Contest created: {contest.id} '{contest.name}' type={contest.contest_type} "
            f"pool={contest.prize_pool}"
        )
        return contest

    async def update(self, contest_id: UUID, changes: ContestUpdate) -> Contest:
        """
        Edit a DRAFT contest. The prize pool is re-derived.

        An auto-spread prize table is re-spread over the new pool; a custom
        table is kept as entered and must still fit the new pool unless
        prize_ranks asks for a fresh spread.
        """
        async with self.locks.hold(contest_key(contest_id)):
            try:
                contest = await self.get(contest_id, for_update=True)
                if contest.status != ContestStatus.DRAFT.value:
                    raise InvalidStatusTransition(
                        "Only draft contests can be edited",
                        contest_id=contest_id,
                        status=contest.status,
                    )

                data = self._spec_of(contest).model_dump()
                updates = changes.model_dump(exclude_unset=True)
                trading_updates = updates.pop("trading_settings", None)
                if trading_updates:
                    data["trading_settings"].update(
                        {k: v for k, v in trading_updates.items() if v is not None}
                    )
                respread = updates.get("prize_ranks") or not contest.custom_distribution
                if "prize_distribution" not in updates and respread:
                    data["prize_distribution"] = None
                    data["prize_ranks"] = updates.get("prize_ranks") or len(contest.distribution()) or None
                data.update(updates)

                fields = derive_contest_fields(ContestCreate.model_validate(data))
                for key, value in fields.items():
                    setattr(contest, key, value)
                contest.updated_at = utcnow()
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(f"Contest updated: {contest_id}")
        return contest

    def _spec_of(self, contest: Contest) -> ContestCreate:
        return ContestCreate(
            name=contest.name,
            description=contest.description,
            contest_type=ContestType(contest.contest_type),
            category=contest.category,
            entry_fee=contest.entry_fee,
            min_participants=contest.min_participants,
            max_participants=contest.max_participants,
            start_date=contest.start_date,
            end_date=contest.end_date,
            platform_fee_pct=contest.platform_fee_pct,
            virtual_money_amount=contest.virtual_money_amount,
            prize_distribution={"kind": "amount", "amounts": dict(contest.prize_distribution or {})},
            guaranteed_prize_pool=contest.guaranteed_prize_pool or None,
            trading_settings=TradingSettings(
                max_trades_per_user=contest.max_trades_per_user,
                max_open_positions=contest.max_open_positions,
                max_position_size_pct=contest.max_position_size_pct,
                trading_hours_start=contest.trading_hours_start,
                trading_hours_end=contest.trading_hours_end,
                trading_days=list(contest.trading_days or []),
            ),
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def publish(self, contest_id: UUID, now: Optional[datetime] = None) -> Contest:
        """DRAFT -> UPCOMING"""
        now = as_naive_utc(now or utcnow())
        async with self.locks.hold(contest_key(contest_id)):
            try:
                contest = await self.get(contest_id, for_update=True)
                if contest.status != ContestStatus.DRAFT.value:
                    raise InvalidStatusTransition(
                        f"Cannot publish a contest in status {contest.status}",
                        contest_id=contest_id,
                        status=contest.status,
                    )
                require_valid_distribution(contest.distribution(), contest.prize_pool)

                contest.status = ContestStatus.UPCOMING.value
                contest.is_published = True
                contest.published_at = now
                contest.updated_at = now
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(f"Contest published: {contest_id}")
        return contest

    async def cancel(self, contest_id: UUID, now: Optional[datetime] = None) -> Contest:
        """
        Cancel a contest that has not completed.

        Status flip and entry-fee refunds commit together; open trades are then
        force-closed. Refund ledger keys make a refund impossible to repeat.
        """
        now = as_naive_utc(now or utcnow())
        wallet = WalletLedger(self.db, self.locks)

        async with self.locks.hold(contest_key(contest_id)):
            try:
                contest = await self.get(contest_id, for_update=True)
                if contest.status not in CANCELLABLE_STATUSES:
                    raise InvalidStatusTransition(
                        f"Cannot cancel a contest in status {contest.status}",
                        contest_id=contest_id,
                        status=contest.status,
                    )

                stmt = select(Participation).where(Participation.contest_id == contest_id)
                participants = (await self.db.execute(stmt)).scalars().all()

                refunded = 0
                for participation in participants:
                    if participation.entry_fee_paid <= 0:
                        continue
                    await wallet.credit(
                        participation.user_id,
                        participation.entry_fee_paid,
                        LedgerEntryType.CONTEST_REFUND,
                        reference_id=contest_id,
                        idempotency_key=refund_key(contest_id, participation.user_id),
                        description=f"Refund: {contest.name} cancelled",
                        commit=False,
                    )
                    refunded += participation.entry_fee_paid

                contest.status = ContestStatus.CANCELLED.value
                contest.cancelled_at = now
                contest.updated_at = now
                contest.total_refunded += refunded
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

            closed = await VirtualTradingLedger(self.db, self.locks).force_close_all(
                contest_id, CloseReason.CONTEST_CANCELLED, now
            )

        logger.info(
            f"Contest cancelled: {contest_id} refunded={refunded} to {len(participants)} participants, "
            f"{closed} trades closed"
        )
        return contest

    async def activate_due(self, now: Optional[datetime] = None) -> list[Contest]:
        """UPCOMING -> ACTIVE for every published contest whose start has passed"""
        now = as_naive_utc(now or utcnow())
        stmt = select(Contest.id).where(
            Contest.status == ContestStatus.UPCOMING.value,
            Contest.is_published == True,  # noqa: E712
            Contest.start_date <= now,
        )
        due = list((await self.db.execute(stmt)).scalars().all())

        activated = []
        for contest_id in due:
            async with self.locks.hold(contest_key(contest_id)):
                try:
                    contest = await self.get(contest_id, for_update=True)
                    if contest.status != ContestStatus.UPCOMING.value:
                        continue
                    if contest.current_participants < contest.min_participants:
                        logger.warning(
                            f"Contest {contest_id} starting below minimum participants "
                            f"({contest.current_participants}/{contest.min_participants})"
                        )
                    contest.status = ContestStatus.ACTIVE.value
                    contest.updated_at = now
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise
            activated.append(contest)
            logger.info(f"Contest activated: {contest_id}")
        return activated

    async def complete(self, contest_id: UUID, now: Optional[datetime] = None) -> Contest:
        """
        ACTIVE -> COMPLETED once the end date has passed: liquidate every open
        trade, flip the status, then settle prizes from the final standings.
        """
        now = as_naive_utc(now or utcnow())
        async with self.locks.hold(contest_key(contest_id)):
            contest = await self.get(contest_id)
            if contest.status != ContestStatus.ACTIVE.value:
                raise InvalidStatusTransition(
                    f"Cannot complete a contest in status {contest.status}",
                    contest_id=contest_id,
                    status=contest.status,
                )
            if now < contest.end_date:
                raise InvalidStatusTransition(
                    "Contest has not reached its end date",
                    contest_id=contest_id,
                    end_date=contest.end_date,
                )

            await VirtualTradingLedger(self.db, self.locks).force_close_all(
                contest_id, CloseReason.CONTEST_END, now
            )

            try:
                contest = await self.get(contest_id, for_update=True)
                contest.status = ContestStatus.COMPLETED.value
                contest.completed_at = now
                contest.updated_at = now
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

            await RankingEngine(self.db, self.locks).settle_prizes(contest_id, now)

        logger.info(f"Contest completed: {contest_id}")
        return await self.get(contest_id)

    async def complete_due(self, now: Optional[datetime] = None) -> list[Contest]:
        """Complete every ACTIVE contest past its end date; retry any unsettled prizes"""
        now = as_naive_utc(now or utcnow())
        stmt = select(Contest.id).where(
            Contest.status == ContestStatus.ACTIVE.value,
            Contest.end_date <= now,
        )
        due = list((await self.db.execute(stmt)).scalars().all())
        completed = [await self.complete(contest_id, now) for contest_id in due]

        stmt = select(Contest.id).where(
            Contest.status == ContestStatus.COMPLETED.value,
            Contest.prizes_settled_at.is_(None),
        )
        for contest_id in (await self.db.execute(stmt)).scalars().all():
            logger.warning(f"Contest {contest_id} completed without prize settlement, settling now")
            await RankingEngine(self.db, self.locks).settle_prizes(contest_id, now)
        return completed
