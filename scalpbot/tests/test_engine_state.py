import pytest

from scalpbot.config.trading import TradingConfig
from scalpbot.domain import DOWN, UP, EntryIntent, InvariantViolation, Market, PatternKey, PositionState
from scalpbot.engine.state import EngineState, utc_day
from scalpbot.settlement import SettlementManager

NOW = 1_700_000_000.0


def _market(mid: str = "m1", asset: str = "BTC", timeframe: str = "15m") -> Market:
    return Market(
        id=mid,
        asset=asset,
        timeframe=timeframe,
        end_time=NOW + 600,
        up_token=f"{mid}-up",
        down_token=f"{mid}-down",
        up_price=0.5,
        down_price=0.5,
    )


def _intent(market: Market, stake: float = 2.0, side: str = UP) -> EntryIntent:
    return EntryIntent(
        market=market,
        side=side,
        token_id=market.token_for(side),
        price=0.5,
        stake=stake,
        tier="SMALL",
        conviction=0.4,
        pattern_key=PatternKey(market.asset, side, "bull-mid"),
        reason="bull-mid",
        target_pct=0.12,
        model_prob=0.6,
        kelly=0.05,
        signal_strength=0.5,
        crypto_price=60000.0,
    )


def _ledger(state: EngineState) -> float:
    return state.bankroll + state.locked + state.unrealized


def test_negative_bankroll_rejected() -> None:
    with pytest.raises(InvariantViolation):
        EngineState(-1.0)


def test_open_and_close_conserve_ledger() -> None:
    state = EngineState(10.0)
    pos = state.open_position(_intent(_market()), exec_price=0.5, shares=4.0, now=NOW)
    assert state.bankroll == 8.0
    assert state.locked == 2.0
    assert _ledger(state) == 10.0
    assert pos.target_profit == pytest.approx(2.0 * 0.12)

    pos.mark(0.6)
    assert _ledger(state) == pytest.approx(10.4)
    trade = state.close_position("m1", exit_price=0.6, state=PositionState.CLOSED_PROFIT, reason="PROFIT", now=NOW + 60)
    assert trade is not None
    assert trade.pnl == pytest.approx(0.4)
    assert state.bankroll == pytest.approx(10.4)
    assert state.open_count() == 0
    assert state.wins == 1
    assert state.total_pnl == pytest.approx(0.4)
    assert state.history[0] is trade
    assert state.probes.get(PatternKey("BTC", UP, "bull-mid")).wins == 1


def test_close_is_idempotent() -> None:
    state = EngineState(10.0)
    state.open_position(_intent(_market()), exec_price=0.5, shares=4.0, now=NOW)
    first = state.close_position("m1", exit_price=0.4, state=PositionState.CLOSED_STOP, reason="STOP", now=NOW)
    second = state.close_position("m1", exit_price=0.4, state=PositionState.CLOSED_STOP, reason="STOP", now=NOW)
    assert first is not None
    assert second is None
    assert state.bankroll == pytest.approx(9.6)
    assert state.losses == 1
    assert len(state.history) == 1


def test_close_requires_terminal_state() -> None:
    state = EngineState(10.0)
    state.open_position(_intent(_market()), exec_price=0.5, shares=4.0, now=NOW)
    with pytest.raises(InvariantViolation):
        state.close_position("m1", exit_price=0.5, state=PositionState.OPEN, reason="x", now=NOW)


def test_entry_contracts() -> None:
    state = EngineState(3.0, max_positions=2)
    assert state.check_entry(_intent(_market(), stake=5.0)) == "stake_exceeds_bankroll"
    assert state.check_entry(_intent(_market(), stake=0.0)) == "non_positive_stake"
    with pytest.raises(InvariantViolation):
        state.open_position(_intent(_market(), stake=5.0), exec_price=0.5, shares=10.0, now=NOW)
    assert state.bankroll == 3.0
    with pytest.raises(InvariantViolation):
        state.open_position(_intent(_market(), stake=1.0), exec_price=0.0, shares=0.0, now=NOW)


def test_partial_fill_charges_only_what_it_bought() -> None:
    state = EngineState(10.0)
    pos = state.open_position(_intent(_market(), stake=2.0), exec_price=0.5, shares=1.5, now=NOW)
    assert pos.cost_basis == pytest.approx(0.75)
    assert state.bankroll == pytest.approx(9.25)
    assert _ledger(state) == pytest.approx(10.0)


def test_reduce_position_keeps_the_rest_open() -> None:
    state = EngineState(10.0)
    pos = state.open_position(_intent(_market()), exec_price=0.5, shares=4.0, now=NOW)
    pos.mark(0.4)

    pnl = state.reduce_position("m1", shares=1.0, exit_price=0.4, now=NOW + 30)
    assert pnl == pytest.approx(-0.1)
    assert state.open_count() == 1
    assert pos.size == pytest.approx(3.0)
    assert pos.cost_basis == pytest.approx(1.5)
    assert pos.target_profit == pytest.approx(0.24 * 0.75)
    assert state.bankroll == pytest.approx(8.4)
    assert _ledger(state) == pytest.approx(9.6)
    assert state.wins == state.losses == 0
    assert len(state.history) == 0

    with pytest.raises(InvariantViolation):
        state.reduce_position("m1", shares=3.0, exit_price=0.4, now=NOW + 40)

    trade = state.close_position("m1", exit_price=0.4, state=PositionState.CLOSED_STOP, reason="STOP", now=NOW + 60)
    assert trade.pnl == pytest.approx(-0.4)
    assert trade.size == pytest.approx(3.0)
    assert state.bankroll == pytest.approx(9.6)
    assert state.total_pnl == pytest.approx(-0.4)
    assert state.losses == 1
    assert state.reduce_position("m1", shares=1.0, exit_price=0.4, now=NOW + 70) is None


def test_one_position_per_asset_and_timeframe() -> None:
    state = EngineState(10.0, max_positions=3)
    state.open_position(_intent(_market("m1")), exec_price=0.5, shares=4.0, now=NOW)
    assert state.check_entry(_intent(_market("m1"), stake=1.0, side=DOWN)) == "market_taken"
    assert state.check_entry(_intent(_market("m2"), stake=1.0)) == "slot_taken"
    assert state.check_entry(_intent(_market("m3", timeframe="1h"), stake=1.0)) == "ok"
    assert state.find("BTC", "15m").market_id == "m1"


def test_max_positions() -> None:
    state = EngineState(10.0, max_positions=2)
    state.open_position(_intent(_market("m1", "BTC"), stake=1.0), exec_price=0.5, shares=2.0, now=NOW)
    state.open_position(_intent(_market("m2", "ETH"), stake=1.0), exec_price=0.5, shares=2.0, now=NOW)
    assert state.check_entry(_intent(_market("m3", "SOL"), stake=1.0)) == "max_positions"


def test_settlement_pays_proxy_prices_once() -> None:
    state = EngineState(10.0)
    state.open_position(_intent(_market()), exec_price=0.5, shares=4.0, now=NOW)
    settlement = SettlementManager(state)
    result = settlement.settle_resolution("m1", True, NOW + 600)
    assert result.ok
    assert result.trade.exit_price == 0.95
    assert result.trade.state == PositionState.CLOSED_RESOLVED.value
    assert result.trade.reason == "WIN-RESOLVE"
    assert state.bankroll == pytest.approx(10.0 + (0.95 - 0.5) * 4)
    again = settlement.settle_resolution("m1", True, NOW + 601)
    assert not again.ok
    assert again.message == "not_open"
    assert state.bankroll == pytest.approx(11.8)


def test_losing_settlement() -> None:
    state = EngineState(10.0)
    state.open_position(_intent(_market()), exec_price=0.5, shares=4.0, now=NOW)
    result = SettlementManager(state).settle_resolution("m1", False, NOW + 600)
    assert result.trade.exit_price == 0.05
    assert result.trade.pnl == pytest.approx(-1.8)


def test_daily_roll_and_health() -> None:
    cfg = TradingConfig(health_window=4)
    state = EngineState(20.0, cfg=cfg)
    assert state.roll_day(NOW)
    assert not state.roll_day(NOW + 10)
    assert state.daily_date == utc_day(NOW)
    for i in range(4):
        m = _market(f"m{i}", asset=("BTC", "ETH", "SOL", "XRP")[i])
        state.open_position(_intent(m, stake=1.0), exec_price=0.5, shares=2.0, now=NOW)
        state.close_position(m.id, exit_price=0.2, state=PositionState.CLOSED_STOP, reason="STOP", now=NOW)
    assert not state.healthy()
    assert state.daily_pnl == pytest.approx(-2.4)
    assert state.roll_day(NOW + 86400)
    assert state.daily_pnl == 0.0


def test_snapshot_round_trip() -> None:
    state = EngineState(10.0)
    state.open_position(_intent(_market("m1")), exec_price=0.5, shares=4.0, now=NOW)
    state.open_position(_intent(_market("m2", "ETH"), stake=1.0), exec_price=0.5, shares=2.0, now=NOW)
    state.close_position("m2", exit_price=0.7, state=PositionState.CLOSED_PROFIT, reason="PROFIT", now=NOW)
    state.exec_stats.record_fill(0.01, 0.02)

    restored = EngineState.from_snapshot(state.to_snapshot())
    assert restored.bankroll == pytest.approx(state.bankroll)
    assert list(restored.positions) == ["m1"]
    pos = restored.positions["m1"]
    assert pos.pattern_key == PatternKey("BTC", UP, "bull-mid")
    assert pos.state is PositionState.OPEN
    assert restored.history[0].reason == "PROFIT"
    assert restored.wins == 1
    assert restored.exec_stats.fills == 1
    assert restored.probes.get(PatternKey("ETH", UP, "bull-mid")).samples == 1
