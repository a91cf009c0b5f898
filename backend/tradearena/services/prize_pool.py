"""
Prize Pool Calculator

Derives the prize pool from entry fees and the platform cut, validates a
proposed rank -> amount distribution against it, and builds default
distributions from fixed percentage tables.

All amounts are integer paise and every division floors.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Mapping
import logging
import re

from tradearena.core.errors import InvalidDistribution
from tradearena.models.contest import ContestType

logger = logging.getLogger(__name__)

# Percentages by number of paid ranks
PERCENT_TABLES: dict[int, list[int]] = {
    1: [100],
    2: [70, 30],
    3: [60, 30, 10],
    4: [50, 25, 15, 10],
    5: [45, 25, 15, 10, 5],
}
# More than five ranks: fixed top five, the rest share what is left
LARGE_FIELD_TOP = [40, 20, 10, 7, 3]
LARGE_FIELD_REST_PCT = 20


@dataclass
class DistributionCheck:
    valid: bool
    total_allocated: int
    unallocated: int
    errors: list[str] = field(default_factory=list)


def compute_prize_pool(
    entry_fee: int,
    max_participants: int,
    platform_fee_pct: float | Decimal = 10,
    contest_type: ContestType | str = ContestType.PAID,
) -> int:
    """floor(entry_fee * max_participants * (1 - platform_fee_pct / 100)); 0 for free contests"""
    if contest_type == ContestType.FREE:
        return 0
    gross = Decimal(entry_fee) * Decimal(max_participants)
    keep = (Decimal(100) - Decimal(str(platform_fee_pct))) / Decimal(100)
    pool = (gross * keep).to_integral_value(rounding=ROUND_FLOOR)
    return max(0, int(pool))


def validate_distribution(distribution: Mapping[Any, Any], prize_pool: int) -> DistributionCheck:
    """
    Valid iff every rank is a positive integer, every amount is a non-negative
    integer and the total does not exceed the pool. Leaving part of the pool
    unallocated is allowed.
    """
    errors: list[str] = []
    total = 0

    for raw_rank, raw_amount in distribution.items():
        try:
            rank = int(raw_rank)
        except (TypeError, ValueError):
            errors.append(f"Rank {raw_rank!r} is not an integer")
            continue
        if rank < 1:
            errors.append(f"Rank {rank} must be positive")
        if isinstance(raw_amount, bool) or not isinstance(raw_amount, int):
            errors.append(f"Amount for rank {rank} must be an integer")
            continue
        if raw_amount < 0:
            errors.append(f"Amount for rank {rank} is negative")
        total += raw_amount

    if total > prize_pool:
        errors.append(f"Distribution allocates {total} but the prize pool is {prize_pool}")

    unallocated = prize_pool - total
    if not errors and unallocated > 0:
        logger.warning(f"Prize distribution leaves {unallocated} of {prize_pool} unallocated")

    return DistributionCheck(
        valid=not errors,
        total_allocated=total,
        unallocated=unallocated,
        errors=errors,
    )


def require_valid_distribution(distribution: Mapping[Any, Any], prize_pool: int) -> DistributionCheck:
    check = validate_distribution(distribution, prize_pool)
    if not check.valid:
        raise InvalidDistribution(
            "; ".join(check.errors),
            prize_pool=prize_pool,
            total_allocated=check.total_allocated,
        )
    return check


def auto_distribute(
    prize_pool: int,
    num_ranks: int,
    contest_type: ContestType | str = ContestType.PAID,
) -> dict[int, int]:
    """Default prize table. Flooring remainders are left unallocated."""
    if prize_pool <= 0 or num_ranks <= 0:
        return {}
    if contest_type == ContestType.WINNER_TAKES_ALL:
        return {1: prize_pool}

    if num_ranks in PERCENT_TABLES:
        return {
            rank: prize_pool * pct // 100
            for rank, pct in enumerate(PERCENT_TABLES[num_ranks], start=1)
        }

    distribution = {
        rank: prize_pool * pct // 100
        for rank, pct in enumerate(LARGE_FIELD_TOP, start=1)
    }
    rest = num_ranks - len(LARGE_FIELD_TOP)
    share = prize_pool * LARGE_FIELD_REST_PCT // (100 * rest)
    for rank in range(len(LARGE_FIELD_TOP) + 1, num_ranks + 1):
        distribution[rank] = share
    return distribution


# ============================================================================
# INGESTION OF LEGACY DISTRIBUTION SHAPES
# ============================================================================

_RANK_RANGE = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+))?\s*$")


def _parse_prize_string(value: Any) -> int:
    """'₹1,000' / '1000' / 1000 -> 1000"""
    if isinstance(value, bool):
        raise InvalidDistribution(f"Invalid prize amount: {value!r}")
    if isinstance(value, int):
        return value
    digits = re.sub(r"[^\d]", "", str(value))
    if not digits:
        raise InvalidDistribution(f"Invalid prize amount: {value!r}")
    return int(digits)


def _parse_rank_range(value: Any) -> range:
    match = _RANK_RANGE.match(str(value))
    if not match:
        raise InvalidDistribution(f"Invalid rank: {value!r}")
    first = int(match.group(1))
    last = int(match.group(2) or first)
    if first < 1 or last < first:
        raise InvalidDistribution(f"Invalid rank range: {value!r}")
    return range(first, last + 1)


def normalize_distribution(raw: Mapping[str, Any], prize_pool: int) -> dict[int, int]:
    """
    Convert any accepted distribution shape to the canonical rank -> amount map.

    Accepted shapes (tagged by "kind"):
      {"kind": "amount", "amounts": {"1": 6000, "2": 3000}}
      {"kind": "percent", "percentages": {"1": 50, "2": 30}}
      {"kind": "rank_list", "entries": [{"rank": "1", "prize": "₹5,000"},
                                        {"rank": "2-5", "prize": "1000"}]}
    An untagged mapping is read as rank -> amount.
    """
    kind = raw.get("kind")

    if kind is None:
        amounts = raw
    elif kind == "amount":
        amounts = raw.get("amounts") or {}
    elif kind == "percent":
        percentages = raw.get("percentages") or {}
        amounts = {}
        for rank, pct in percentages.items():
            try:
                share = Decimal(str(pct))
            except ArithmeticError:
                raise InvalidDistribution(f"Invalid percentage for rank {rank}: {pct!r}")
            if share < 0 or share > 100:
                raise InvalidDistribution(f"Percentage for rank {rank} out of range: {pct}")
            amounts[rank] = int((Decimal(prize_pool) * share / 100).to_integral_value(rounding=ROUND_FLOOR))
    elif kind == "rank_list":
        amounts = {}
        for entry in raw.get("entries") or []:
            prize = _parse_prize_string(entry.get("prize"))
            for rank in _parse_rank_range(entry.get("rank")):
                if rank in amounts:
                    raise InvalidDistribution(f"Rank {rank} listed more than once")
                amounts[rank] = prize
    else:
        raise InvalidDistribution(f"Unknown distribution kind: {kind!r}")

    normalized: dict[int, int] = {}
    for rank, amount in amounts.items():
        try:
            normalized[int(rank)] = _parse_prize_string(amount) if isinstance(amount, str) else amount
        except (TypeError, ValueError):
            raise InvalidDistribution(f"Invalid rank: {rank!r}")
    return dict(sorted(normalized.items()))
