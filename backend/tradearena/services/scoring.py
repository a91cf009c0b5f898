"""
Contest points.

Points are a secondary score shown on the leaderboard and used as the first
tie-breaker after P&L. Pure functions only.
"""

from dataclasses import dataclass
from typing import Iterable, Protocol


class ScoredTrade(Protocol):
    @property
    def effective_pnl(self) -> int: ...


@dataclass(frozen=True)
class PointRules:
    profitable_trade: int = 10
    per_profit_percent: int = 2
    per_trade_placed: int = 2
    activity_cap: int = 30
    streak_bonus: int = 5
    streak_bonus_cap: int = 25
    losing_trade: int = -5


DEFAULT_RULES = PointRules()


def score_trades(
    trades: Iterable[ScoredTrade],
    starting_balance: int,
    rules: PointRules = DEFAULT_RULES,
) -> int:
    """
    Score a participant's trades, given in the order they were opened.

    Closed trades count with their final P&L, open ones with the live mark.
    """
    trades = list(trades)
    points = 0
    streak = 0
    streak_points = 0

    for trade in trades:
        pnl = trade.effective_pnl
        if pnl > 0:
            points += rules.profitable_trade
            if starting_balance > 0:
                points += rules.per_profit_percent * (pnl * 100 // starting_balance)
            streak += 1
            if streak >= 2 and streak_points < rules.streak_bonus_cap:
                bonus = min(rules.streak_bonus, rules.streak_bonus_cap - streak_points)
                points += bonus
                streak_points += bonus
        else:
            points += rules.losing_trade
            streak = 0

    points += min(rules.activity_cap, rules.per_trade_placed * len(trades))
    return points
