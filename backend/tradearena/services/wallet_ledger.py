"""
Wallet Ledger Service

Real-money wallet as an append-only ledger. A user's balance is the sum of
their entries and is recomputed on every read. Debits check and append while
holding the user's wallet lock and a row lock on the wallet account, so two
concurrent debits can never both pass the same balance check.
"""

from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tradearena.core.config import settings
from tradearena.core.errors import InsufficientFunds, InvalidAmount
from tradearena.core.locks import KeyedLocks, get_locks, wallet_key
from tradearena.models.wallet import LedgerEntryType, WalletAccount, WalletLedgerEntry

logger = logging.getLogger(__name__)


class WalletLedger:
    """
    Real-money wallet operations.

    debit/credit take commit=False when they are one step of a larger unit of
    work (contest entry, refunds, prizes); the caller then owns the commit and
    must already hold the wallet lock for the user.
    """

    def __init__(self, db: AsyncSession, locks: Optional[KeyedLocks] = None):
        self.db = db
        self.locks = locks or get_locks()

    async def get_balance(self, user_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(WalletLedgerEntry.amount), 0)).where(
            WalletLedgerEntry.user_id == user_id
        )
        result = await self.db.execute(stmt)
        return int(result.scalar_one())

    async def history(self, user_id: UUID, limit: int = 50) -> list[WalletLedgerEntry]:
        stmt = (
            select(WalletLedgerEntry)
            .where(WalletLedgerEntry.user_id == user_id)
            .order_by(WalletLedgerEntry.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def debit(
        self,
        user_id: UUID,
        amount: int,
        reason: LedgerEntryType | str,
        *,
        reference_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        commit: bool = True,
    ) -> WalletLedgerEntry:
        """Append a negative entry. Raises InsufficientFunds if balance < amount."""
        self._validate_amount(amount)
        async with self.locks.hold(wallet_key(user_id)):
            try:
                existing = await self._find_by_key(idempotency_key)
                if existing:
                    return existing

                await self._lock_account(user_id)
                balance = await self.get_balance(user_id)
                if balance < amount:
                    raise InsufficientFunds(
                        f"Insufficient balance. Required: {amount}, Available: {balance}",
                        user_id=user_id,
                        required=amount,
                        available=balance,
                    )

                entry = await self._append(
                    user_id, -amount, reason, reference_id, idempotency_key, description
                )
                if commit:
                    await self.db.commit()
            except Exception:
                if commit:
                    await self.db.rollback()
                raise

        logger.info(f"Wallet debit: user={user_id} amount={amount} reason={_reason(reason)}")
        return entry

    async def credit(
        self,
        user_id: UUID,
        amount: int,
        reason: LedgerEntryType | str,
        *,
        reference_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        commit: bool = True,
    ) -> WalletLedgerEntry:
        """Append a positive entry. Credits have no upper bound."""
        self._validate_amount(amount)
        async with self.locks.hold(wallet_key(user_id)):
            try:
                existing = await self._find_by_key(idempotency_key)
                if existing:
                    return existing

                await self._lock_account(user_id)
                entry = await self._append(
                    user_id, amount, reason, reference_id, idempotency_key, description
                )
                if commit:
                    await self.db.commit()
            except Exception:
                if commit:
                    await self.db.rollback()
                raise

        logger.info(f"Wallet credit: user={user_id} amount={amount} reason={_reason(reason)}")
        return entry

    async def deposit(
        self, user_id: UUID, amount: int, reference: Optional[str] = None
    ) -> WalletLedgerEntry:
        """Entry point for confirmed gateway payments. A gateway reference makes replays no-ops."""
        return await self.credit(
            user_id,
            amount,
            LedgerEntryType.DEPOSIT,
            idempotency_key=f"deposit:{reference}" if reference else None,
            description="Wallet deposit",
        )

    async def withdraw(
        self, user_id: UUID, amount: int, reference: Optional[str] = None
    ) -> WalletLedgerEntry:
        if amount < settings.MIN_WITHDRAWAL:
            raise InvalidAmount(
                f"Minimum withdrawal amount is {settings.MIN_WITHDRAWAL}",
                amount=amount,
                minimum=settings.MIN_WITHDRAWAL,
            )
        return await self.debit(
            user_id,
            amount,
            LedgerEntryType.WITHDRAWAL,
            idempotency_key=f"withdrawal:{reference}" if reference else None,
            description="Wallet withdrawal",
        )

    # ------------------------------------------------------------------------

    def _validate_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}", amount=amount)

    async def _find_by_key(self, idempotency_key: Optional[str]) -> Optional[WalletLedgerEntry]:
        if not idempotency_key:
            return None
        stmt = select(WalletLedgerEntry).where(WalletLedgerEntry.idempotency_key == idempotency_key)
        result = await self.db.execute(stmt)
        entry = result.scalar_one_or_none()
        if entry:
            logger.info(f"Ledger replay ignored: key={idempotency_key} entry={entry.id}")
        return entry

    async def _lock_account(self, user_id: UUID) -> WalletAccount:
        """Row-lock the user's account, creating it on first use"""
        stmt = select(WalletAccount).where(WalletAccount.user_id == user_id).with_for_update()
        result = await self.db.execute(stmt)
        account = result.scalar_one_or_none()
        if not account:
            account = WalletAccount(user_id=user_id)
            self.db.add(account)
            await self.db.flush()
        return account

    async def _append(
        self,
        user_id: UUID,
        amount: int,
        reason: LedgerEntryType | str,
        reference_id: Optional[UUID],
        idempotency_key: Optional[str],
        description: Optional[str],
    ) -> WalletLedgerEntry:
        entry = WalletLedgerEntry(
            user_id=user_id,
            entry_type=_reason(reason),
            amount=amount,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            description=description,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry


def _reason(reason: LedgerEntryType | str) -> str:
    return reason.value if isinstance(reason, LedgerEntryType) else str(reason)
