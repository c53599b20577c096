import asyncio
import json

import pytest

from scalpbot.config import Settings, TradingConfig
from scalpbot.domain import DOWN, UP, EntryIntent, Market, PatternKey, PositionState
from scalpbot.engine.trader import Trader
from scalpbot.execution.manager import FillResult, OrderStatus
from scalpbot.infra import RuntimeEventLogger

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeAdapter:
    def __init__(self, *, buy_matched: bool = True, sell_ok: bool = True, sell_fill: float | None = None):
        self.buy_matched = buy_matched
        self.sell_ok = sell_ok
        self.sell_fill = sell_fill
        self.cancelled: list[str] = []
        self.sells = 0
        self.shares: dict[str, float] = {}

    async def buy(self, token_id: str, stake: float, limit_price: float) -> FillResult:
        return FillResult(True, order_id=f"buy-{token_id}", exec_price=limit_price, shares=stake / limit_price)

    async def sell(self, token_id: str, shares: float, limit_price: float, urgent: bool) -> FillResult:
        self.sells += 1
        if not self.sell_ok:
            return FillResult(False, error="no_bid_liquidity")
        filled = min(shares, self.sell_fill) if self.sell_fill else shares
        return FillResult(True, order_id=f"sell-{self.sells}", exec_price=limit_price, shares=filled)

    async def verify_filled(self, order_id: str) -> OrderStatus:
        if order_id.startswith("buy-") and not self.buy_matched:
            return OrderStatus(matched=False)
        return OrderStatus(matched=True)

    async def cancel(self, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return True

    async def balance(self) -> float | None:
        return None

    async def position_shares(self, token_id: str) -> float | None:
        return self.shares.get(token_id)


def _settings(data_dir: str, bankroll: float = 10.0, **kw) -> Settings:
    base = dict(
        dry_run=True,
        data_dir=data_dir,
        log_level="INFO",
        dashboard_enabled=False,
        dashboard_port=8080,
        starting_bankroll=bankroll,
        max_positions=3,
        daily_loss_limit=6.0,
        assets=("BTC", "ETH", "SOL"),
        timeframes=("5m", "15m", "1h", "4h", "1d"),
        fast_interval=1.5,
        full_interval=30.0,
        snapshot_interval=5.0,
        verify_delay=0.0,
        order_timeout=5.0,
        auto_daily_entry=False,
    )
    base.update(kw)
    return Settings(**base)


def _market(mid: str = "m1", *, timeframe: str = "15m", up: float = 0.5, secs_left: float = 600) -> Market:
    return Market(
        id=mid,
        asset="BTC",
        timeframe=timeframe,
        end_time=NOW + secs_left,
        up_token=f"{mid}-up",
        down_token=f"{mid}-down",
        up_price=up,
        down_price=round(1 - up, 4),
    )


def _intent(market: Market, stake: float) -> EntryIntent:
    return EntryIntent(
        market=market,
        side=UP,
        token_id=market.up_token,
        price=market.up_price,
        stake=stake,
        tier="SMALL",
        conviction=0.4,
        pattern_key=PatternKey("BTC", UP, "bull-mid"),
        reason="bull-mid",
        target_pct=0.12,
        model_prob=0.6,
        kelly=0.05,
        signal_strength=0.5,
    )


def _trader(tmp_path, adapter: FakeAdapter | None = None, bankroll: float = 10.0, **kw) -> Trader:
    return Trader(
        _settings(str(tmp_path), bankroll, **kw),
        adapter or FakeAdapter(),
        cfg=TradingConfig(),
        events=RuntimeEventLogger(str(tmp_path)),
        clock=FakeClock(),
    )


def _events(tmp_path) -> list[dict]:
    path = tmp_path / "runtime_events.jsonl"
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_stake_above_bankroll_is_rejected(tmp_path) -> None:
    trader = _trader(tmp_path, bankroll=3.0)
    pos, reason = asyncio.run(trader.try_enter(_intent(_market(), 5.0), NOW))
    assert pos is None
    assert reason == "stake_exceeds_bankroll"
    assert trader.state.open_count() == 0
    assert trader.state.bankroll == 3.0
    assert any(e["event"] == "entry.rejected" for e in _events(tmp_path))


def test_unmatched_entry_is_cancelled(tmp_path) -> None:
    adapter = FakeAdapter(buy_matched=False)
    trader = _trader(tmp_path, adapter)
    pos, reason = asyncio.run(trader.try_enter(_intent(_market(), 2.0), NOW))
    assert pos is None
    assert reason == "not_filled"
    assert adapter.cancelled == ["buy-m1-up"]
    assert trader.state.open_count() == 0
    assert trader.state.bankroll == 10.0
    assert trader.state.exec_stats.failures == 1
    assert trader.state.exec_stats.fills == 0


def test_filled_entry_opens_position(tmp_path) -> None:
    trader = _trader(tmp_path)
    pos, reason = asyncio.run(trader.try_enter(_intent(_market(), 2.0), NOW))
    assert reason == "ok"
    assert pos.entry_price > 0.5
    assert trader.state.bankroll == 8.0
    assert trader.state.exec_stats.fills == 1
    assert trader.logs[-1]["category"] == "ENTRY"
    assert any(e["event"] == "entry.filled" for e in _events(tmp_path))


def test_failed_exit_keeps_position(tmp_path) -> None:
    adapter = FakeAdapter(sell_ok=False)
    trader = _trader(tmp_path, adapter)

    async def run() -> None:
        await trader.try_enter(_intent(_market(), 2.0), NOW)
        trader.set_markets([_market(up=0.3)], NOW)
        closed = await trader.manage_positions(NOW + 10)
        assert closed == []
        assert trader.state.open_count() == 1
        assert trader.position_manager.exit_failures == 1
        assert trader.state.bankroll == 8.0

        adapter.sell_ok = True
        closed = await trader.manage_positions(NOW + 11)
        assert len(closed) == 1
        assert closed[0].reason == "STOP"
        assert closed[0].state == PositionState.CLOSED_STOP.value

    asyncio.run(run())
    assert trader.state.open_count() == 0
    assert trader.state.bankroll < 8.0 + 2.0
    assert any(e["event"] == "exit.failed" for e in _events(tmp_path))


def test_partial_exit_keeps_unsold_shares_open(tmp_path) -> None:
    adapter = FakeAdapter(sell_fill=1.0)
    trader = _trader(tmp_path, adapter)

    async def run() -> None:
        pos, _ = await trader.try_enter(_intent(_market(), 2.0), NOW)
        shares = pos.size
        trader.set_markets([_market(up=0.3)], NOW)
        closed = await trader.manage_positions(NOW + 10)
        assert closed == []
        assert trader.state.open_count() == 1
        assert pos.size == pytest.approx(shares - 1.0)
        assert pos.cost_basis == pytest.approx(2.0 * (shares - 1.0) / shares)
        # one share sold at the mark less the default half spread
        assert trader.state.bankroll == pytest.approx(8.0 + 0.295)

        adapter.sell_fill = None
        closed = await trader.manage_positions(NOW + 11)
        assert len(closed) == 1
        assert closed[0].reason == "STOP"
        assert closed[0].pnl == pytest.approx((0.295 - 0.505) * shares)

    asyncio.run(run())
    assert trader.state.open_count() == 0
    assert trader.state.bankroll == pytest.approx(10.0 + (0.295 - 0.505) * 2.0 / 0.505)
    events = [e["event"] for e in _events(tmp_path)]
    assert events.count("exit.partial") == 1
    assert events.count("exit.closed") == 1


def test_expired_position_settles(tmp_path) -> None:
    trader = _trader(tmp_path)

    async def run() -> None:
        await trader.try_enter(_intent(_market(secs_left=120), 2.0), NOW)
        trader.set_markets([_market(up=0.9, secs_left=120)], NOW)
        trader.clock.now = NOW + 200
        return await trader.manage_positions(NOW + 200)

    closed = asyncio.run(run())
    assert len(closed) == 1
    assert closed[0].exit_price == 0.95
    assert closed[0].state == PositionState.CLOSED_RESOLVED.value


def test_tick_skips_when_busy(tmp_path) -> None:
    trader = _trader(tmp_path)

    async def run() -> tuple[str, str]:
        async with trader.tick_lock:
            busy = await trader.fast_tick()
        free = await trader.fast_tick()
        return busy, free

    busy, free = asyncio.run(run())
    assert busy == "skipped"
    assert free == "ok"
    assert trader.skipped_ticks == 1
    assert trader.ticks == 1


def test_tick_error_is_recorded(tmp_path) -> None:
    trader = _trader(tmp_path)

    async def boom(now: float) -> None:
        raise RuntimeError("feed exploded")

    status = asyncio.run(trader._guarded("fast", boom))
    assert status == "error"
    assert "feed exploded" in trader.last_error
    assert not trader.tick_lock.locked()


def test_manual_trade(tmp_path) -> None:
    trader = _trader(tmp_path, bankroll=3.0)
    trader.set_markets([_market("m15", timeframe="15m"), _market("m1h", timeframe="1h", secs_left=1800)], NOW)

    assert asyncio.run(trader.manual_trade("DOGE", UP, 1.0)) == (False, "unknown asset DOGE")
    assert not asyncio.run(trader.manual_trade("BTC", "SIDEWAYS", 1.0))[0]
    ok, msg = asyncio.run(trader.manual_trade("btc", "up", 5.0))
    assert not ok
    assert "exceeds bankroll" in msg

    ok, msg = asyncio.run(trader.manual_trade("BTC", DOWN, 1.0))
    assert ok, msg
    pos = trader.state.find("BTC", "1h")
    assert pos is not None
    assert pos.side == DOWN
    assert pos.entry_reason == "MANUAL"


def test_auto_daily_entry_buys_cheaper_side(tmp_path) -> None:
    trader = _trader(tmp_path, bankroll=20.0)
    trader.set_markets([_market("d1", timeframe="1d", up=0.7, secs_left=22 * 3600)], NOW)

    pos = asyncio.run(trader.auto_daily_entry(NOW))
    assert pos is not None
    assert pos.side == DOWN
    assert pos.entry_reason == "DAILY"
    assert trader.state.bankroll == pytest.approx(10.0)
    assert asyncio.run(trader.auto_daily_entry(NOW)) is None


def test_auto_daily_entry_needs_a_fresh_daily_market(tmp_path) -> None:
    trader = _trader(tmp_path, bankroll=20.0)
    trader.set_markets([_market("d1", timeframe="1d", up=0.7, secs_left=10 * 3600)], NOW)
    assert asyncio.run(trader.auto_daily_entry(NOW)) is None
    assert trader.state.open_count() == 0


def test_reconcile_closes_ghosts_and_syncs_size(tmp_path) -> None:
    adapter = FakeAdapter()
    trader = _trader(tmp_path, adapter, dry_run=False)

    async def run():
        await trader.try_enter(_intent(_market("a"), 2.0), NOW)
        other = _market("b", timeframe="1h", secs_left=1800)
        await trader.try_enter(_intent(other, 2.0), NOW)
        adapter.shares = {"a-up": 0.1, "b-up": 7.0}
        return await trader.reconcile(NOW + 5)

    ghosts = asyncio.run(run())
    assert [t.reason for t in ghosts] == ["GHOST"]
    assert ghosts[0].state == PositionState.CLOSED_FORCED.value
    assert ghosts[0].pnl == pytest.approx(-2.0)
    assert trader.state.positions["b"].size == 7.0
    assert not trader.state.has_market("a")


def test_arbitrage_is_reported_once(tmp_path) -> None:
    trader = _trader(tmp_path)
    cheap = Market(id="x", asset="ETH", timeframe="15m", end_time=NOW + 600, up_token="u", down_token="d", up_price=0.45, down_price=0.45)
    trader.set_markets([cheap, _market()], NOW)
    assert [m.id for m in trader.check_arbitrage()] == ["x"]
    trader.check_arbitrage()
    assert sum(1 for e in _events(tmp_path) if e["event"] == "market.arb") == 1


def test_feed_ticks_reach_price_history(tmp_path) -> None:
    from scalpbot.data.feeds import FeedChannel, Tick

    channel = FeedChannel()
    trader = Trader(_settings(str(tmp_path)), FakeAdapter(), channels=[channel], clock=FakeClock())
    channel.put(Tick("binance", "BTC", 60000.0, 1.0, NOW))
    channel.put(Tick("coinbase", "BTC", 60010.0, 0.0, NOW))
    channel.put(Tick("oracle", "BTC", 59990.0, 0.0, NOW, NOW - 20))
    assert trader.drain_feeds(NOW) == 3
    assert trader.prices.latest("BTC") == 60000.0
    assert trader.signals.oracle_price("BTC", NOW) == 59990.0
    assert trader.signals.oracle_lag("BTC") == 20.0
    assert trader.signals.predicted_price("BTC", NOW) == 60005.0


def test_stats_and_snapshot(tmp_path) -> None:
    trader = _trader(tmp_path)
    asyncio.run(trader.try_enter(_intent(_market(), 2.0), NOW))
    stats = trader.stats()
    assert stats["mode"] == "paper"
    assert stats["bankroll"] == 8.0
    assert stats["locked"] == 2.0
    assert len(stats["positions"]) == 1
    snap = trader.snapshot()
    assert snap["stats"]["execution"]["fills"] == 1
    json.dumps(snap)


def test_refresh_drops_token_history_for_departed_markets(tmp_path) -> None:
    trader = _trader(tmp_path)
    for i in range(50):
        trader.on_token_price(f"old{i}-up", 0.5, NOW - 60)
    trader.on_token_price("m1-up", 0.58, NOW - 4000)
    trader.on_token_price("m1-down", 0.41, NOW - 30)
    trader.arb_seen.update({"old1", "m1"})
    trader.set_markets([_market("m1", up=0.55)], NOW)
    asyncio.run(trader.refresh_markets(NOW))
    assert trader.token_prices.keys() == ["m1-down"]
    assert set(trader.marks()) == {"m1-up", "m1-down"}
    assert trader.arb_seen == {"m1"}
    assert trader.markets[0].up_price == 0.55
    assert trader.markets[0].down_price == 0.41


def test_refresh_reads_books_on_the_trader_clock(tmp_path) -> None:
    from scalpbot.data.books import OrderBook

    trader = _trader(tmp_path)
    trader.books.put("m1-up", OrderBook(mid=0.62, best_bid=0.61, best_ask=0.63, spread=0.02, bid_depth=50.0, ask_depth=50.0, ts=NOW - 5))
    trader.set_markets([_market("m1")], NOW)
    asyncio.run(trader.refresh_markets(NOW))
    assert trader.markets[0].up_price == 0.62
    assert trader.token_prices.latest("m1-up") == 0.62
    assert trader.books.get("m1-up") is not None
