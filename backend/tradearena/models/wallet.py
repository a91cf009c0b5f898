"""
Wallet models: WalletAccount, WalletLedgerEntry, VirtualWallet
Maps to: wallet_accounts, wallet_ledger_entries, virtual_wallets tables
"""

from sqlmodel import SQLModel, Field
from sqlalchemy import DateTime, UniqueConstraint
from typing import Optional
from datetime import datetime
from uuid import UUID, uuid4
from enum import Enum

from tradearena.core.clock import utcnow


# ============================================================================
# ENUMS
# ============================================================================

class LedgerEntryType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    CONTEST_ENTRY = "contest_entry"
    CONTEST_REFUND = "contest_refund"
    CONTEST_PRIZE = "contest_prize"
    ADMIN_ADJUSTMENT = "admin_adjustment"


# ============================================================================
# REAL-MONEY WALLET
# ============================================================================

class WalletAccount(SQLModel, table=True):
    """
    Anchor row per user. The balance is never stored here: it is the sum of
    the user's ledger entries. Debits lock this row FOR UPDATE.
    """
    __tablename__ = "wallet_accounts"

    user_id: UUID = Field(primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class WalletLedgerEntry(SQLModel, table=True):
    """Append-only real-money movement (paise); credits > 0, debits < 0"""
    __tablename__ = "wallet_ledger_entries"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="wallet_accounts.user_id", index=True)

    entry_type: str = Field(max_length=50)
    amount: int

    reference_id: Optional[UUID] = Field(default=None, index=True)
    idempotency_key: Optional[str] = Field(default=None, unique=True, max_length=200)
    description: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# ============================================================================
# CONTEST-SCOPED VIRTUAL WALLET
# ============================================================================

class VirtualWallet(SQLModel, table=True):
    """
    Simulated cash for one participation (paise).

    Conservation: base_balance + invested_amount == starting_balance + realized_pnl
    """
    __tablename__ = "virtual_wallets"
    __table_args__ = (
        UniqueConstraint("contest_id", "user_id", name="uq_virtual_wallet_contest_user"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    participation_id: UUID = Field(foreign_key="participations.id", unique=True)
    contest_id: UUID = Field(foreign_key="contests.id", index=True)
    user_id: UUID = Field(index=True)

    starting_balance: int
    base_balance: int           # cash not committed to open positions
    invested_amount: int = Field(default=0)   # cost basis of open positions
    realized_pnl: int = Field(default=0)
    unrealized_pnl: int = Field(default=0)

    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def net_worth(self) -> int:
        return self.base_balance + self.invested_amount + self.unrealized_pnl

    @property
    def available_cash(self) -> int:
        return self.base_balance + self.unrealized_pnl

    @property
    def total_pnl(self) -> int:
        return self.realized_pnl + self.unrealized_pnl


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class AmountRequest(SQLModel):
    """Deposit / withdrawal request (paise)"""
    amount: int = Field(gt=0)
    reference: Optional[str] = Field(default=None, max_length=200)


class LedgerEntryResponse(SQLModel):
    id: UUID
    entry_type: str
    amount: int
    reference_id: Optional[UUID] = None
    description: Optional[str] = None
    created_at: datetime


class BalanceResponse(SQLModel):
    user_id: UUID
    balance: int
    currency: str = "INR"
    formatted: str


class VirtualWalletResponse(SQLModel):
    contest_id: UUID
    user_id: UUID
    starting_balance: int
    base_balance: int
    invested_amount: int
    realized_pnl: int
    unrealized_pnl: int
    net_worth: int
    available_cash: int
    total_pnl: int
    updated_at: datetime
