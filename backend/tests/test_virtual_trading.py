"""
test_virtual_trading.py - Opening, marking and settling contest trades

Conservation checked throughout:
    base_balance + invested_amount == starting_balance + realized_pnl
"""

import asyncio
import tempfile
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from hypothesis import given, settings, strategies as st

from factories import AFTER_CUTOFF, MARKET_OPEN, WEEKEND, contest_spec, create_contest, joined_user
from tradearena.core.database import create_engine, create_session_factory, init_db
from tradearena.core.errors import (
    AlreadyClosed,
    ArenaError,
    ContestNotActive,
    InsufficientFunds,
    MarketClosed,
    NotFound,
    PositionLimitExceeded,
    TradeLimitExceeded,
)
from tradearena.core.locks import KeyedLocks
from tradearena.models.contest import TradingSettings
from tradearena.models.trade import CloseReason, TradeStatus
from tradearena.services.price_oracle import StaticPriceOracle
from tradearena.services.virtual_trading import VirtualTradingLedger

SYMBOL = "NIFTY22500CE"


def assert_conserved(wallet):
    assert wallet.base_balance + wallet.invested_amount == wallet.starting_balance + wallet.realized_pnl


@pytest.fixture
async def contest(session, locks):
    return await create_contest(session, locks)


@pytest.fixture
async def trader(session, locks, contest):
    return await joined_user(session, locks, contest)


class TestOpenTrade:

    async def test_open_moves_cash_into_positions(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        trade = await trading.open_trade(trader, contest.id, SYMBOL, 50, 10000, MARKET_OPEN)

        assert trade.status == TradeStatus.OPEN.value
        assert trade.pnl == 0
        assert trade.current_price == 10000

        wallet = await trading.get_wallet(contest.id, trader)
        assert wallet.base_balance == 4500000
        assert wallet.invested_amount == 500000
        assert wallet.net_worth == 5000000
        assert_conserved(wallet)

    async def test_cost_above_available_cash_is_rejected(self, session, locks):
        spec = contest_spec(trading_settings=TradingSettings(max_position_size_pct=100))
        contest = await create_contest(session, locks, spec=spec)
        contest_id = contest.id
        user = await joined_user(session, locks, contest)
        trading = VirtualTradingLedger(session, locks)

        with pytest.raises(InsufficientFunds):
            await trading.open_trade(user, contest_id, SYMBOL, 501, 10000, MARKET_OPEN)

        wallet = await trading.get_wallet(contest_id, user)
        assert wallet.base_balance == 5000000
        assert await trading.list_trades(contest_id, user) == []

    async def test_position_size_cap(self, session, locks, contest, trader):
        # Default cap is 50% of net worth: 2,500,000
        contest_id = contest.id
        trading = VirtualTradingLedger(session, locks)
        with pytest.raises(PositionLimitExceeded):
            await trading.open_trade(trader, contest_id, SYMBOL, 251, 10000, MARKET_OPEN)
        await trading.open_trade(trader, contest_id, SYMBOL, 250, 10000, MARKET_OPEN)

    async def test_open_position_limit(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        for _ in range(3):
            await trading.open_trade(trader, contest.id, SYMBOL, 1, 1000, MARKET_OPEN)
        with pytest.raises(PositionLimitExceeded):
            await trading.open_trade(trader, contest.id, SYMBOL, 1, 1000, MARKET_OPEN)

    async def test_trade_limit_counts_closed_trades(self, session, locks):
        spec = contest_spec(trading_settings=TradingSettings(max_trades_per_user=2))
        contest = await create_contest(session, locks, spec=spec)
        user = await joined_user(session, locks, contest)
        trading = VirtualTradingLedger(session, locks)

        first = await trading.open_trade(user, contest.id, SYMBOL, 1, 1000, MARKET_OPEN)
        await trading.close_trade(first.id, now=MARKET_OPEN)
        await trading.open_trade(user, contest.id, SYMBOL, 1, 1000, MARKET_OPEN)

        with pytest.raises(TradeLimitExceeded):
            await trading.open_trade(user, contest.id, SYMBOL, 1, 1000, MARKET_OPEN)

    @pytest.mark.parametrize("when", [AFTER_CUTOFF, WEEKEND, MARKET_OPEN - timedelta(hours=2)])
    async def test_market_closed(self, session, locks, contest, trader, when):
        with pytest.raises(MarketClosed):
            await VirtualTradingLedger(session, locks).open_trade(trader, contest.id, SYMBOL, 1, 1000, when)

    async def test_upcoming_contest_rejects_trades(self, session, locks):
        contest = await create_contest(session, locks, spec=contest_spec(start=MARKET_OPEN + timedelta(days=1)))
        user = await joined_user(session, locks, contest)
        with pytest.raises(ContestNotActive):
            await VirtualTradingLedger(session, locks).open_trade(user, contest.id, SYMBOL, 1, 1000, MARKET_OPEN)

    async def test_non_participant(self, session, locks, contest):
        with pytest.raises(NotFound):
            await VirtualTradingLedger(session, locks).open_trade(uuid4(), contest.id, SYMBOL, 1, 1000, MARKET_OPEN)


class TestMarking:

    async def test_price_update_moves_unrealized_pnl(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        trade = await trading.open_trade(trader, contest.id, SYMBOL, 50, 10000, MARKET_OPEN)

        trade = await trading.update_price(trade.id, 12000, MARKET_OPEN + timedelta(minutes=1))
        assert trade.pnl == 100000

        wallet = await trading.get_wallet(contest.id, trader)
        assert wallet.unrealized_pnl == 100000
        assert wallet.net_worth == 5100000
        assert wallet.available_cash == 4600000
        assert_conserved(wallet)

    async def test_stale_tick_is_ignored(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        trade = await trading.open_trade(trader, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)

        await trading.update_price(trade.id, 15000, MARKET_OPEN + timedelta(minutes=5))
        trade = await trading.update_price(trade.id, 9000, MARKET_OPEN + timedelta(minutes=1))

        assert trade.current_price == 15000
        assert trade.pnl == 50000

    async def test_unrealized_is_sum_over_open_trades(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        t1 = await trading.open_trade(trader, contest.id, "BANKNIFTY48000PE", 10, 10000, MARKET_OPEN)
        t2 = await trading.open_trade(trader, contest.id, SYMBOL, 10, 5000, MARKET_OPEN)
        tick = MARKET_OPEN + timedelta(minutes=1)

        await trading.update_price(t1.id, 11000, tick)
        await trading.update_price(t2.id, 4000, tick)
        assert (await trading.get_wallet(contest.id, trader)).unrealized_pnl == 0

        await trading.close_trade(t1.id, now=tick)
        wallet = await trading.get_wallet(contest.id, trader)
        assert wallet.realized_pnl == 10000
        assert wallet.unrealized_pnl == -10000
        assert_conserved(wallet)

    async def test_mark_to_market_uses_oracle_quotes(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        quoted = await trading.open_trade(trader, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)
        unquoted = await trading.open_trade(trader, contest.id, "FINNIFTY21000CE", 10, 10000, MARKET_OPEN)

        oracle = StaticPriceOracle({SYMBOL: 10500})
        marked = await trading.mark_to_market(contest.id, oracle, MARKET_OPEN + timedelta(minutes=1))

        assert marked == 1
        assert (await trading.get_trade(quoted.id)).pnl == 5000
        assert (await trading.get_trade(unquoted.id)).current_price == 10000

    async def test_mark_to_market_skips_trade_closed_meanwhile(
        self, session, session_factory, locks, contest, trader
    ):
        trading = VirtualTradingLedger(session, locks)
        first = await trading.open_trade(trader, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)
        second = await trading.open_trade(trader, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)
        contest_id, closed_id, open_id = contest.id, first.id, second.id

        class ClosingOracle:
            """Quotes a price after another request has closed one of the trades"""

            async def get_price(self, symbol):
                async with session_factory() as other:
                    await VirtualTradingLedger(other, locks).close_trade(closed_id, now=MARKET_OPEN)
                return 12000

        marked = await trading.mark_to_market(contest_id, ClosingOracle(), MARKET_OPEN + timedelta(minutes=1))

        assert marked == 1
        assert (await trading.get_trade(open_id)).pnl == 20000
        closed = await trading.get_trade(closed_id)
        assert closed.status == TradeStatus.CLOSED.value
        assert closed.final_pnl == 0
        wallet = await trading.get_wallet(contest_id, trader)
        assert wallet.unrealized_pnl == 20000
        assert_conserved(wallet)

    async def test_closed_trade_cannot_be_marked(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        trade = await trading.open_trade(trader, contest.id, SYMBOL, 1, 1000, MARKET_OPEN)
        await trading.close_trade(trade.id, now=MARKET_OPEN)
        with pytest.raises(AlreadyClosed):
            await trading.update_price(trade.id, 2000)


class TestClose:

    async def test_close_realizes_pnl(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        trade = await trading.open_trade(trader, contest.id, SYMBOL, 50, 10000, MARKET_OPEN)
        await trading.update_price(trade.id, 12000, MARKET_OPEN + timedelta(minutes=1))

        trade = await trading.close_trade(trade.id, user_id=trader, now=MARKET_OPEN + timedelta(minutes=2))

        assert trade.status == TradeStatus.CLOSED.value
        assert trade.final_pnl == 100000
        assert trade.closing_price == 12000
        assert trade.close_reason == CloseReason.MANUAL.value

        wallet = await trading.get_wallet(contest.id, trader)
        assert wallet.base_balance == 5100000
        assert wallet.invested_amount == 0
        assert wallet.realized_pnl == 100000
        assert wallet.unrealized_pnl == 0
        assert_conserved(wallet)

    async def test_close_at_explicit_price(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        trade = await trading.open_trade(trader, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)
        trade = await trading.close_trade(trade.id, price=7000, now=MARKET_OPEN)
        assert trade.final_pnl == -30000
        wallet = await trading.get_wallet(contest.id, trader)
        assert wallet.base_balance == 4970000
        assert_conserved(wallet)

    async def test_second_close_is_rejected_and_moves_nothing(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        contest_id = contest.id
        trade = await trading.open_trade(trader, contest_id, SYMBOL, 10, 10000, MARKET_OPEN)
        trade_id = trade.id
        await trading.close_trade(trade_id, price=11000, now=MARKET_OPEN)
        before = (await trading.get_wallet(contest_id, trader)).base_balance

        with pytest.raises(AlreadyClosed):
            await trading.close_trade(trade_id, now=MARKET_OPEN)
        assert (await trading.get_wallet(contest_id, trader)).base_balance == before

    async def test_other_users_trade_is_not_found(self, session, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        trade = await trading.open_trade(trader, contest.id, SYMBOL, 1, 1000, MARKET_OPEN)
        with pytest.raises(NotFound):
            await trading.close_trade(trade.id, user_id=uuid4())

    async def test_concurrent_closes_settle_once(self, session, session_factory, locks, contest, trader):
        trading = VirtualTradingLedger(session, locks)
        trade = await trading.open_trade(trader, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)
        await trading.update_price(trade.id, 13000, MARKET_OPEN)

        async def close():
            async with session_factory() as s:
                try:
                    await VirtualTradingLedger(s, locks).close_trade(trade.id, now=MARKET_OPEN)
                    return True
                except AlreadyClosed:
                    return False

        async def force():
            async with session_factory() as s:
                return await VirtualTradingLedger(s, locks).force_close_all(
                    contest.id, CloseReason.MARKET_CLOSE, MARKET_OPEN
                )

        manual, forced = await asyncio.gather(close(), force())
        assert int(manual) + forced == 1

        async with session_factory() as s:
            wallet = await VirtualTradingLedger(s, locks).get_wallet(contest.id, trader)
            assert wallet.realized_pnl == 30000
            assert wallet.base_balance == 5030000
            assert_conserved(wallet)


class TestForceClose:

    async def test_force_close_all_closes_every_open_trade(self, session, locks, contest, trader):
        other = await joined_user(session, locks, contest)
        trading = VirtualTradingLedger(session, locks)
        await trading.open_trade(trader, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)
        await trading.open_trade(trader, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)
        done = await trading.open_trade(other, contest.id, SYMBOL, 10, 10000, MARKET_OPEN)
        await trading.close_trade(done.id, now=MARKET_OPEN)

        closed = await trading.force_close_all(contest.id, CloseReason.CONTEST_END, MARKET_OPEN)

        assert closed == 2
        assert await trading.list_trades(contest.id, status=TradeStatus.OPEN) == []
        for user in (trader, other):
            wallet = await trading.get_wallet(contest.id, user)
            assert wallet.invested_amount == 0
            assert wallet.base_balance == 5000000
            assert_conserved(wallet)

        assert await trading.force_close_all(contest.id, CloseReason.CONTEST_END, MARKET_OPEN) == 0


# =============================================================================
# CONSERVATION OVER ARBITRARY SEQUENCES
# =============================================================================

trade_op = st.one_of(
    st.tuples(st.just("open"), st.integers(min_value=1, max_value=20), st.integers(min_value=100, max_value=20000)),
    st.tuples(st.just("mark"), st.integers(min_value=0, max_value=9), st.integers(min_value=0, max_value=40000)),
    st.tuples(st.just("close"), st.integers(min_value=0, max_value=9), st.none() | st.integers(min_value=0, max_value=40000)),
)


async def replay(ops):
    """Run one op sequence against a fresh database and check the wallet after every step"""
    with tempfile.TemporaryDirectory() as tmp:
        engine = create_engine(f"sqlite+aiosqlite:///{Path(tmp) / 'arena.db'}")
        await init_db(engine)
        locks = KeyedLocks()
        try:
            async with create_session_factory(engine)() as session:
                spec = contest_spec(trading_settings=TradingSettings(
                    max_trades_per_user=50, max_open_positions=10, max_position_size_pct=100,
                ))
                contest = await create_contest(session, locks, spec=spec)
                contest_id = contest.id
                user = await joined_user(session, locks, contest)
                trading = VirtualTradingLedger(session, locks)
                trade_ids = []

                for step, (op, arg, price) in enumerate(ops, start=1):
                    tick = MARKET_OPEN + timedelta(minutes=step)
                    try:
                        if op == "open":
                            trade = await trading.open_trade(user, contest_id, SYMBOL, arg, price, tick)
                            trade_ids.append(trade.id)
                        elif trade_ids and op == "mark":
                            await trading.update_price(trade_ids[arg % len(trade_ids)], price, tick)
                        elif trade_ids and op == "close":
                            await trading.close_trade(trade_ids[arg % len(trade_ids)], price=price, now=tick)
                    except ArenaError:
                        pass

                    wallet = await trading.get_wallet(contest_id, user)
                    open_trades = await trading.list_trades(contest_id, user, TradeStatus.OPEN)
                    assert_conserved(wallet)
                    assert wallet.unrealized_pnl == sum(t.pnl for t in open_trades)
                    assert wallet.invested_amount == sum(t.entry_price * t.quantity for t in open_trades)
                    assert wallet.net_worth == wallet.starting_balance + wallet.realized_pnl + wallet.unrealized_pnl
        finally:
            await engine.dispose()


class TestConservationProperty:

    @given(st.lists(trade_op, min_size=1, max_size=25))
    @settings(max_examples=25, deadline=None)
    def test_money_is_conserved_over_any_sequence(self, ops):
        asyncio.run(replay(ops))
