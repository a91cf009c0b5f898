"""
Market hours for contest trading.

Contest windows are stored as local "HH:MM" strings and weekday numbers
(Monday = 0) and evaluated in the configured market time zone.
"""

from datetime import datetime, date, time, UTC
from zoneinfo import ZoneInfo

from tradearena.core.clock import as_naive_utc
from tradearena.core.config import settings
from tradearena.core.errors import InvalidContestSpec
from tradearena.models.contest import Contest


def parse_hhmm(value: str) -> time:
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except (ValueError, AttributeError):
        raise InvalidContestSpec(f"Invalid trading time {value!r}, expected HH:MM", value=value)


def market_zone() -> ZoneInfo:
    return ZoneInfo(settings.MARKET_TIMEZONE)


def to_market_time(now: datetime) -> datetime:
    return as_naive_utc(now).replace(tzinfo=UTC).astimezone(market_zone())


def is_trading_day(contest: Contest, now: datetime) -> bool:
    return to_market_time(now).weekday() in (contest.trading_days or [])


def is_market_open(contest: Contest, now: datetime) -> bool:
    local = to_market_time(now)
    if not is_trading_day(contest, now):
        return False
    opens = parse_hhmm(contest.trading_hours_start)
    cutoff = parse_hhmm(contest.trading_hours_end)
    return opens <= local.time() < cutoff


def market_day(now: datetime) -> date:
    return to_market_time(now).date()


def is_past_cutoff(contest: Contest, now: datetime) -> bool:
    """True once the local clock reaches today's cutoff on a trading day"""
    local = to_market_time(now)
    if not is_trading_day(contest, now):
        return False
    return local.time() >= parse_hhmm(contest.trading_hours_end)


def market_cutoff(contest: Contest, now: datetime) -> datetime:
    """Today's cutoff (local market date) as naive UTC"""
    local_day = market_day(now)
    cutoff = datetime.combine(local_day, parse_hhmm(contest.trading_hours_end), tzinfo=market_zone())
    return as_naive_utc(cutoff)
