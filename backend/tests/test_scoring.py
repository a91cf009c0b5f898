"""
test_scoring.py - Contest points
"""

from dataclasses import dataclass

from hypothesis import given, strategies as st

from tradearena.services.scoring import score_trades

STARTING = 5000000


@dataclass
class T:
    effective_pnl: int


class TestScoreTrades:

    def test_no_trades_no_points(self):
        assert score_trades([], STARTING) == 0

    def test_single_profitable_trade(self):
        # +10 base, 1% profit -> +2, one trade placed -> +2
        assert score_trades([T(50000)], STARTING) == 14

    def test_losing_and_flat_trades_cost_points(self):
        # -5 each, +4 activity
        assert score_trades([T(-100), T(0)], STARTING) == -6

    def test_streak_bonus_from_second_consecutive_win(self):
        # Wins of under 1%: +10 each, +5 on the 2nd and 3rd, +6 activity
        assert score_trades([T(1), T(1), T(1)], STARTING) == 46

    def test_loss_resets_streak(self):
        # W L W: no bonus
        assert score_trades([T(1), T(-1), T(1)], STARTING) == 10 - 5 + 10 + 6

    def test_streak_bonus_is_capped(self):
        wins = [T(1)] * 10
        # 10 x 10 base, bonus capped at 25, activity capped at 20
        assert score_trades(wins, STARTING) == 100 + 25 + 20

    def test_activity_points_are_capped(self):
        trades = [T(0)] * 20
        assert score_trades(trades, STARTING) == -100 + 30

    def test_profit_percent_is_floored(self):
        # 1.99% -> 1 whole percent
        assert score_trades([T(99500)], STARTING) == 10 + 2 + 2

    @given(st.lists(st.integers(min_value=-10**7, max_value=0), max_size=30))
    def test_losing_run_scores_penalty_plus_activity(self, pnls):
        n = len(pnls)
        assert score_trades([T(p) for p in pnls], STARTING) == -5 * n + min(30, 2 * n)

    @given(st.lists(st.integers(min_value=1, max_value=10**7), min_size=1, max_size=30))
    def test_every_win_earns_at_least_base_points(self, pnls):
        assert score_trades([T(p) for p in pnls], STARTING) >= 10 * len(pnls)
