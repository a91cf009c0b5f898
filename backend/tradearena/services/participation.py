"""
Participation Manager

Admits a user into a contest: entry-fee debit, capacity increment,
participation row and virtual wallet are one transaction. Either all of them
happen or none do.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.clock import as_naive_utc, utcnow
from tradearena.core.errors import AlreadyJoined, ContestFull, ContestNotJoinable, NotFound
from tradearena.core.locks import KeyedLocks, contest_key, get_locks, wallet_key
from tradearena.models.contest import Contest, JOINABLE_STATUSES, Participation
from tradearena.models.wallet import LedgerEntryType, VirtualWallet
from tradearena.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)


def entry_key(contest_id: UUID, user_id: UUID) -> str:
    return f"contest_entry:{contest_id}:{user_id}"


def is_duplicate_participation(exc: IntegrityError) -> bool:
    """True when the violated constraint is the one-entry-per-user rule"""
    message = str(exc.orig)
    return (
        "uq_participation_contest_user" in message
        or "participations.contest_id, participations.user_id" in message
    )


class ParticipationManager:
    def __init__(self, db: AsyncSession, locks: Optional[KeyedLocks] = None):
        self.db = db
        self.locks = locks or get_locks()
        self.wallet = WalletLedger(db, self.locks)

    async def join_contest(
        self, user_id: UUID, contest_id: UUID, now: Optional[datetime] = None
    ) -> Participation:
        """
        Join a contest.

        Checks run in this order: contest exists and is joinable, user not
        already in, capacity left, wallet covers the fee. The capacity
        increment is a conditional UPDATE so a lost race still fails cleanly.
        """
        now = as_naive_utc(now or utcnow())

        async with self.locks.hold(contest_key(contest_id), wallet_key(user_id)):
            try:
                stmt = (
                    select(Contest)
                    .where(Contest.id == contest_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                result = await self.db.execute(stmt)
                contest = result.scalar_one_or_none()
                if not contest:
                    raise NotFound("Contest", contest_id)

                if contest.status not in JOINABLE_STATUSES or now >= contest.end_date:
                    raise ContestNotJoinable(
                        f"Contest is not open for joining (status: {contest.status})",
                        contest_id=contest_id,
                        status=contest.status,
                    )

                if await self.get_participation(contest_id, user_id):
                    raise AlreadyJoined("You have already joined this contest", contest_id=contest_id)

                if contest.current_participants >= contest.max_participants:
                    raise ContestFull(
                        f"Contest is full ({contest.max_participants} participants)",
                        contest_id=contest_id,
                        max_participants=contest.max_participants,
                    )

                fee = contest.entry_fee
                if fee > 0:
                    await self.wallet.debit(
                        user_id,
                        fee,
                        LedgerEntryType.CONTEST_ENTRY,
                        reference_id=contest_id,
                        idempotency_key=entry_key(contest_id, user_id),
                        description=f"Entry fee: {contest.name}",
                        commit=False,
                    )

                # Storage-level capacity guard
                capacity = (
                    update(Contest)
                    .where(
                        Contest.id == contest_id,
                        Contest.current_participants < Contest.max_participants,
                        Contest.status.in_(JOINABLE_STATUSES),
                    )
                    .values(
                        current_participants=Contest.current_participants + 1,
                        total_entry_fees=Contest.total_entry_fees + fee,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                result = await self.db.execute(capacity)
                if result.rowcount != 1:
                    raise ContestFull("Contest filled up while joining", contest_id=contest_id)

                participation = Participation(
                    contest_id=contest_id,
                    user_id=user_id,
                    joined_at=now,
                    entry_fee_paid=fee,
                )
                self.db.add(participation)
                await self.db.flush()

                self.db.add(
                    VirtualWallet(
                        participation_id=participation.id,
                        contest_id=contest_id,
                        user_id=user_id,
                        starting_balance=contest.virtual_money_amount,
                        base_balance=contest.virtual_money_amount,
                        updated_at=now,
                    )
                )
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                if is_duplicate_participation(e):
                    raise AlreadyJoined("You have already joined this contest", contest_id=contest_id)
                raise
            except Exception:
                await self.db.rollback()
                raise

        logger.info(f"User {user_id} joined contest {contest_id} (fee={fee})")
        return participation

    async def get_participation(self, contest_id: UUID, user_id: UUID) -> Optional[Participation]:
        stmt = select(Participation).where(
            Participation.contest_id == contest_id,
            Participation.user_id == user_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_participants(self, contest_id: UUID) -> list[Participation]:
        stmt = (
            select(Participation)
            .where(Participation.contest_id == contest_id)
            .order_by(Participation.joined_at, Participation.user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_user_contests(self, user_id: UUID) -> list[Contest]:
        """Contests the user has joined, most recent start first"""
        stmt = (
            select(Contest)
            .join(Participation, Participation.contest_id == Contest.id)
            .where(Participation.user_id == user_id)
            .order_by(Contest.start_date.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
