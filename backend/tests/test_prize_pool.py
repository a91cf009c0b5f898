"""
test_prize_pool.py - Prize pool derivation, distribution validation and defaults
"""

import pytest
from hypothesis import given, strategies as st

from tradearena.core.errors import InvalidDistribution
from tradearena.models.contest import ContestType
from tradearena.services.prize_pool import (
    auto_distribute,
    compute_prize_pool,
    normalize_distribution,
    require_valid_distribution,
    validate_distribution,
)


class TestComputePrizePool:

    def test_platform_cut_is_taken(self):
        # ₹100 x 100 players, 10% cut
        assert compute_prize_pool(10000, 100, 10) == 900000

    def test_free_contest_has_no_pool(self):
        assert compute_prize_pool(10000, 100, 10, ContestType.FREE) == 0

    def test_result_is_floored(self):
        # 333 * 3 * 0.85 = 849.15
        assert compute_prize_pool(333, 3, 15) == 849

    def test_zero_fee_percent_keeps_everything(self):
        assert compute_prize_pool(5000, 2, 0) == 10000

    @given(
        fee=st.integers(min_value=0, max_value=10_000_000),
        players=st.integers(min_value=1, max_value=100_000),
        pct=st.integers(min_value=0, max_value=99),
    )
    def test_pool_never_exceeds_collected_fees(self, fee, players, pct):
        pool = compute_prize_pool(fee, players, pct)
        assert 0 <= pool <= fee * players


class TestValidateDistribution:

    def test_exact_allocation_is_valid(self):
        check = validate_distribution({1: 6000, 2: 3000}, 9000)
        assert check.valid
        assert check.total_allocated == 9000
        assert check.unallocated == 0

    def test_under_allocation_is_valid_with_remainder(self):
        check = validate_distribution({1: 5000}, 9000)
        assert check.valid
        assert check.unallocated == 4000

    def test_over_allocation_is_invalid(self):
        check = validate_distribution({1: 6000, 2: 4000}, 9000)
        assert not check.valid
        assert check.errors

    def test_negative_amount_is_invalid(self):
        assert not validate_distribution({1: -1}, 100).valid

    def test_non_positive_rank_is_invalid(self):
        assert not validate_distribution({0: 10}, 100).valid

    def test_string_ranks_are_accepted(self):
        assert validate_distribution({"1": 70, "2": 30}, 100).valid

    def test_require_raises_on_over_allocation(self):
        with pytest.raises(InvalidDistribution):
            require_valid_distribution({1: 101}, 100)


class TestAutoDistribute:

    def test_winner_takes_all(self):
        assert auto_distribute(9000, 3, ContestType.WINNER_TAKES_ALL) == {1: 9000}

    def test_three_ranks(self):
        assert auto_distribute(10000, 3) == {1: 6000, 2: 3000, 3: 1000}

    def test_five_ranks(self):
        assert auto_distribute(10000, 5) == {1: 4500, 2: 2500, 3: 1500, 4: 1000, 5: 500}

    def test_large_field_splits_remaining_twenty_percent(self):
        dist = auto_distribute(100000, 10)
        assert [dist[r] for r in range(1, 6)] == [40000, 20000, 10000, 7000, 3000]
        assert all(dist[r] == 4000 for r in range(6, 11))

    def test_flooring_remainder_is_left_unallocated(self):
        dist = auto_distribute(1001, 3)
        assert dist == {1: 600, 2: 300, 3: 100}
        assert sum(dist.values()) == 1000

    def test_empty_pool_distributes_nothing(self):
        assert auto_distribute(0, 3) == {}

    @given(
        pool=st.integers(min_value=0, max_value=10**10),
        ranks=st.integers(min_value=1, max_value=200),
    )
    def test_auto_distribution_is_always_valid(self, pool, ranks):
        dist = auto_distribute(pool, ranks)
        assert validate_distribution(dist, pool).valid
        assert all(amount >= 0 for amount in dist.values())


class TestNormalizeDistribution:

    def test_untagged_map(self):
        assert normalize_distribution({"2": 300, "1": 700}, 1000) == {1: 700, 2: 300}

    def test_percent_shape_floors(self):
        raw = {"kind": "percent", "percentages": {"1": 50, "2": 33.3}}
        assert normalize_distribution(raw, 1001) == {1: 500, 2: 333}

    def test_rank_list_expands_ranges_and_parses_prizes(self):
        raw = {
            "kind": "rank_list",
            "entries": [
                {"rank": "1", "prize": "₹5,000"},
                {"rank": "2-4", "prize": "1000"},
            ],
        }
        assert normalize_distribution(raw, 10000) == {1: 5000, 2: 1000, 3: 1000, 4: 1000}

    def test_rank_listed_twice_is_rejected(self):
        raw = {"kind": "rank_list", "entries": [{"rank": "1-2", "prize": 10}, {"rank": "2", "prize": 5}]}
        with pytest.raises(InvalidDistribution):
            normalize_distribution(raw, 100)

    def test_unknown_kind_is_rejected(self):
        with pytest.raises(InvalidDistribution):
            normalize_distribution({"kind": "lottery"}, 100)
