"""
Contest models: Contest, Participation
Maps to: contests, participations tables
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from sqlmodel import Field, SQLModel

from tradearena.core.clock import utcnow


# ============================================================================
# ENUMS
# ============================================================================

class ContestType(str, Enum):
    FREE = "free"
    PAID = "paid"
    HEAD2HEAD = "head2head"
    GUARANTEED = "guaranteed"
    WINNER_TAKES_ALL = "winner_takes_all"


class ContestStatus(str, Enum):
    DRAFT = "draft"
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


JOINABLE_STATUSES = (ContestStatus.UPCOMING.value, ContestStatus.ACTIVE.value)
CANCELLABLE_STATUSES = (
    ContestStatus.DRAFT.value,
    ContestStatus.UPCOMING.value,
    ContestStatus.ACTIVE.value,
)


# ============================================================================
# CONTEST MODEL
# ============================================================================

class Contest(SQLModel, table=True):
    """Trading contest with entry fee, capacity and prize table (money in paise)"""
    __tablename__ = "contests"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(index=True, max_length=200)
    description: Optional[str] = Field(default=None)
    contest_type: str = Field(max_length=50)
    status: str = Field(default=ContestStatus.DRAFT.value, max_length=50, index=True)
    category: str = Field(default="nifty50", max_length=50)

    entry_fee: int = Field(default=0, ge=0)
    min_participants: int = Field(default=2, ge=1)
    max_participants: int = Field(ge=1)
    current_participants: int = Field(default=0, ge=0)

    platform_fee_pct: float = Field(default=10.0)
    prize_pool: int = Field(default=0, ge=0)
    guaranteed_prize_pool: int = Field(default=0, ge=0)
    # rank (as string, JSON keys) -> absolute amount
    prize_distribution: dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    # False when the table was spread automatically from the pool
    custom_distribution: bool = Field(default=False)

    virtual_money_amount: int = Field(gt=0)
    max_trades_per_user: int = Field(default=10, ge=1)
    max_open_positions: int = Field(default=3, ge=1)
    max_position_size_pct: float = Field(default=50.0)
    trading_hours_start: str = Field(default="09:15", max_length=5)
    trading_hours_end: str = Field(default="15:30", max_length=5)
    trading_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4], sa_column=Column(JSON))

    is_published: bool = Field(default=False)
    start_date: datetime = Field(sa_type=DateTime)
    end_date: datetime = Field(sa_type=DateTime)
    created_by: Optional[UUID] = None

    # Financial summary
    total_entry_fees: int = Field(default=0)
    total_refunded: int = Field(default=0)
    total_prize_paid: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    published_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    prizes_settled_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_market_close_on: Optional[str] = Field(default=None, max_length=10)  # ISO date

    def distribution(self) -> dict[int, int]:
        """Prize table keyed by integer rank"""
        return {int(rank): int(amount) for rank, amount in (self.prize_distribution or {}).items()}

    @property
    def capacity_remaining(self) -> int:
        return max(0, self.max_participants - self.current_participants)


# ============================================================================
# PARTICIPATION MODEL
# ============================================================================

class Participation(SQLModel, table=True):
    """One user's entry into one contest"""
    __tablename__ = "participations"
    __table_args__ = (
        UniqueConstraint("contest_id", "user_id", name="uq_participation_contest_user"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    contest_id: UUID = Field(foreign_key="contests.id", index=True)
    user_id: UUID = Field(index=True)
    joined_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    entry_fee_paid: int = Field(default=0)

    # Filled at prize settlement
    final_rank: Optional[int] = None
    prize_amount: int = Field(default=0)


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class TradingSettings(SQLModel):
    max_trades_per_user: Optional[int] = Field(default=None, ge=1)
    max_open_positions: Optional[int] = Field(default=None, ge=1)
    max_position_size_pct: Optional[float] = Field(default=None, gt=0, le=100)
    trading_hours_start: Optional[str] = Field(default=None, max_length=5)
    trading_hours_end: Optional[str] = Field(default=None, max_length=5)
    trading_days: Optional[list[int]] = None


class ContestCreate(SQLModel):
    """Contest creation request"""
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    contest_type: ContestType
    category: str = Field(default="nifty50", max_length=50)
    entry_fee: int = Field(default=0, ge=0)
    min_participants: Optional[int] = None
    max_participants: int
    start_date: datetime
    end_date: datetime
    platform_fee_pct: Optional[float] = None
    virtual_money_amount: Optional[int] = None
    # Canonical {rank: amount} or a tagged legacy shape, see services.prize_pool
    prize_distribution: Optional[dict[str, Any]] = None
    prize_ranks: Optional[int] = Field(default=None, ge=1)
    guaranteed_prize_pool: Optional[int] = Field(default=None, ge=0)
    trading_settings: TradingSettings = Field(default_factory=TradingSettings)


class ContestUpdate(SQLModel):
    """Draft contest changes; unset fields are left alone"""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    entry_fee: Optional[int] = Field(default=None, ge=0)
    min_participants: Optional[int] = None
    max_participants: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    platform_fee_pct: Optional[float] = None
    virtual_money_amount: Optional[int] = None
    prize_distribution: Optional[dict[str, Any]] = None
    prize_ranks: Optional[int] = Field(default=None, ge=1)
    guaranteed_prize_pool: Optional[int] = Field(default=None, ge=0)
    trading_settings: Optional[TradingSettings] = None


class ContestResponse(SQLModel):
    """Contest response model"""
    id: UUID
    name: str
    description: Optional[str] = None
    contest_type: str
    status: str
    category: str
    entry_fee: int
    min_participants: int
    max_participants: int
    current_participants: int
    platform_fee_pct: float
    prize_pool: int
    guaranteed_prize_pool: int
    prize_distribution: dict[str, int]
    virtual_money_amount: int
    max_trades_per_user: int
    max_open_positions: int
    max_position_size_pct: float
    trading_hours_start: str
    trading_hours_end: str
    trading_days: list[int]
    is_published: bool
    start_date: datetime
    end_date: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    prizes_settled_at: Optional[datetime] = None


class ParticipationResponse(SQLModel):
    id: UUID
    contest_id: UUID
    user_id: UUID
    joined_at: datetime
    entry_fee_paid: int
    final_rank: Optional[int] = None
    prize_amount: int


class ContestFinancials(SQLModel):
    contest_id: UUID
    prize_pool: int
    total_allocated: int
    total_entry_fees: int
    total_refunded: int
    total_prize_paid: int
    platform_revenue: int
