"""
Leaderboard models (derived, never stored)
"""

from datetime import datetime
from uuid import UUID

from sqlmodel import SQLModel


class LeaderboardEntry(SQLModel):
    """One ranked participant. Ranked by pnl; points are shown alongside."""
    user_id: UUID
    rank: int
    points: int
    pnl: int
    realized_pnl: int
    unrealized_pnl: int
    trade_count: int
    net_worth: int
    joined_at: datetime
    projected_prize: int


class LeaderboardResponse(SQLModel):
    contest_id: UUID
    status: str
    final: bool
    prize_pool: int
    entries: list[LeaderboardEntry]
