"""
Trading models: Trade
Maps to: contest_trades table
"""

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from uuid import UUID, uuid4
from enum import Enum

from tradearena.core.clock import utcnow


# ============================================================================
# ENUMS
# ============================================================================

class TradeSide(str, Enum):
    BUY = "buy"


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(str, Enum):
    MANUAL = "manual"
    MARKET_CLOSE = "market_close"
    CONTEST_END = "contest_end"
    CONTEST_CANCELLED = "contest_cancelled"


# ============================================================================
# TRADE MODEL
# ============================================================================

class Trade(SQLModel, table=True):
    """
    Simulated option purchase inside a contest (prices and P&L in paise).
    Long-only; rows are never deleted.
    """
    __tablename__ = "contest_trades"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    contest_id: UUID = Field(foreign_key="contests.id", index=True)
    user_id: UUID = Field(index=True)

    symbol: str = Field(max_length=50)
    side: str = Field(default=TradeSide.BUY.value, max_length=10)
    quantity: int
    entry_price: int
    current_price: int
    price_updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    status: str = Field(default=TradeStatus.OPEN.value, max_length=10, index=True)
    pnl: int = Field(default=0)
    final_pnl: Optional[int] = None
    closing_price: Optional[int] = None
    close_reason: Optional[str] = Field(default=None, max_length=30)

    opened_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    closed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    @property
    def cost(self) -> int:
        """What was debited from the virtual wallet at open"""
        return self.quantity * self.entry_price

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN.value

    @property
    def effective_pnl(self) -> int:
        """Final P&L once closed, live P&L while open"""
        if self.final_pnl is not None:
            return self.final_pnl
        return self.pnl


# ============================================================================
# REQUEST/RESPONSE MODELS (Pydantic, not DB tables)
# ============================================================================

class TradeCreate(SQLModel):
    """Trade placement request. price is optional: the quoted price is used when absent."""
    symbol: str = Field(min_length=3, max_length=50)
    quantity: int = Field(gt=0)
    price: Optional[int] = Field(default=None, gt=0)


class PriceTick(SQLModel):
    price: int = Field(ge=0)
    as_of: Optional[datetime] = None


class TradeResponse(SQLModel):
    id: UUID
    contest_id: UUID
    user_id: UUID
    symbol: str
    side: str
    quantity: int
    entry_price: int
    current_price: int
    status: str
    pnl: int
    final_pnl: Optional[int] = None
    closing_price: Optional[int] = None
    close_reason: Optional[str] = None
    opened_at: datetime
    closed_at: Optional[datetime] = None
