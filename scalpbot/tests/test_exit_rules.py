from scalpbot.config.trading import TradingConfig
from scalpbot.data.price_history import PriceHistoryStore
from scalpbot.domain import UP, Position, PositionState, Signal
from scalpbot.engine.exit_rules import (
    EXIT,
    HOLD,
    RESOLVE,
    ExitContext,
    ExitDecision,
    by_pnl_sign,
    evaluate_exit,
    flip_signal,
    stop_loss,
    trailing_stop,
)
from scalpbot.strategy.probability import BinaryProbabilityModel
from scalpbot.strategy.signals import SignalEngine

NOW = 1_700_000_000.0
CFG = TradingConfig()
MODEL = BinaryProbabilityModel(CFG)


def _position(
    timeframe: str,
    *,
    entry: float = 0.5,
    size: float = 2.0,
    current: float | None = None,
    secs_left: float = 600.0,
    age: float = 60.0,
    target: float = 0.1,
    crypto: float | None = None,
    reason: str = "bull-mid",
) -> Position:
    pos = Position(
        market_id="m1",
        asset="BTC",
        timeframe=timeframe,
        side=UP,
        token_id="tok-up",
        entry_price=entry,
        size=size,
        cost_basis=entry * size,
        target_profit=target,
        crypto_price_at_entry=crypto,
        opened_at=NOW - age,
        end_time=NOW + secs_left,
        entry_reason=reason,
        current_price=entry,
    )
    if current is not None:
        pos.mark(current)
    return pos


def _ctx(pos: Position, *, now: float = NOW, signals: SignalEngine | None = None) -> ExitContext:
    return ExitContext(pos, now=now, cfg=CFG, probability=MODEL, signals=signals)


def _signals(btc: float) -> SignalEngine:
    prices = PriceHistoryStore(clock=lambda: NOW)
    prices.record("BTC", btc, ts=NOW - 1)
    return SignalEngine(prices)


def test_daily_position_holds_through_loss() -> None:
    pos = _position("1d", current=0.35, secs_left=10 * 3600)
    assert abs(pos.unrealized_pnl + 0.30) < 1e-9
    decision = evaluate_exit(_ctx(pos))
    assert decision is not None
    assert decision.action == HOLD
    assert decision.reason == "HOLD-LOSS"


def test_daily_position_takes_profit_at_target() -> None:
    pos = _position("1d", current=0.73, secs_left=10 * 3600)
    assert abs(pos.unrealized_pnl - 0.46) < 1e-9
    decision = evaluate_exit(_ctx(pos))
    assert decision.action == EXIT
    assert decision.reason == "PROFIT-1D-45%"
    assert decision.state is PositionState.CLOSED_PROFIT


def test_daily_position_below_target_is_diamond_hold() -> None:
    pos = _position("1d", current=0.6, secs_left=10 * 3600)
    assert evaluate_exit(_ctx(pos)).reason == "DIAMOND"


def test_salvage_when_recovery_needs_too_many_sigmas() -> None:
    pos = _position("1h", current=0.2, secs_left=1200, crypto=61000.0)
    decision = evaluate_exit(_ctx(pos, signals=_signals(59000.0)))
    assert decision.action == EXIT
    assert decision.reason == "SALVAGE-SIGMA"
    assert decision.state is PositionState.CLOSED_SALVAGE
    assert decision.urgent


def test_resolution_at_expiry() -> None:
    won = evaluate_exit(_ctx(_position("15m", current=0.9, secs_left=0)))
    assert won.action == RESOLVE
    assert won.reason == "WIN-RESOLVE"
    assert won.state is PositionState.CLOSED_RESOLVED
    lost = evaluate_exit(_ctx(_position("15m", current=0.2, secs_left=-5)))
    assert lost.reason == "LOSS-RESOLVE"


def test_short_window_hold_before_expiry() -> None:
    assert evaluate_exit(_ctx(_position("5m", current=0.6, secs_left=100))).reason == "5M-HOLD"
    assert evaluate_exit(_ctx(_position("5m", current=0.05, secs_left=100))).reason == "5M-DEAD"


def test_force_zone_sells_with_penalty() -> None:
    decision = evaluate_exit(_ctx(_position("15m", current=0.4, secs_left=20)))
    assert decision.action == EXIT
    assert decision.reason == "LIQ-FORCE"
    assert decision.state is PositionState.CLOSED_FORCED
    assert decision.urgent
    assert decision.penalty_rate == CFG.slippage_penalty


def test_force_zone_holds_supported_long_position() -> None:
    decision = evaluate_exit(_ctx(_position("1h", current=0.9, secs_left=30)))
    assert decision.action == HOLD
    assert decision.reason == "RESOLVE-HOLD"
    assert evaluate_exit(_ctx(_position("1h", current=0.02, secs_left=30))).reason == "NO-BUYERS"


def test_long_profit_near_expiry_sells_when_unsupported() -> None:
    decision = evaluate_exit(_ctx(_position("1h", entry=0.3, current=0.5, secs_left=90)))
    assert decision.reason == "LIQ-SAFE"
    assert decision.state is PositionState.CLOSED_FORCED


def test_trailing_needs_minimum_peak() -> None:
    pos = _position("15m", current=0.5)
    pos.peak_gain = 0.015
    assert trailing_stop(_ctx(pos)) is None

    pos = _position("15m", current=0.525)
    pos.mark(0.505)
    decision = trailing_stop(_ctx(pos))
    assert decision is not None
    assert decision.reason == "TRAIL"
    assert decision.state is None


def test_profit_target_and_let_run() -> None:
    short = evaluate_exit(_ctx(_position("15m", current=0.6)))
    assert short.reason == "PROFIT"
    long = _position("1h", current=0.8, secs_left=1800, target=0.3)
    assert evaluate_exit(_ctx(long)) is None


def test_stop_loss_on_short_timeframe() -> None:
    decision = evaluate_exit(_ctx(_position("15m", current=0.4)))
    assert decision.action == EXIT
    assert decision.reason == "STOP"
    assert decision.state is PositionState.CLOSED_STOP


def test_stop_waits_out_latency_window() -> None:
    pos = _position("1h", current=0.3, secs_left=1800, crypto=60000.0)
    signals = _signals(60500.0)
    first = stop_loss(_ctx(pos, signals=signals))
    assert first.reason == "LATENCY-HOLD"
    assert pos.latency_hold_since == NOW
    assert stop_loss(_ctx(pos, now=NOW + 3, signals=signals)).action == HOLD
    final = stop_loss(_ctx(pos, now=NOW + 6, signals=signals))
    assert final.reason == "STOP"
    assert pos.latency_hold_since is None


def test_stale_short_position() -> None:
    pos = _position("15m", current=0.5, secs_left=600, age=2000)
    decision = evaluate_exit(_ctx(pos))
    assert decision.reason == "STALE"
    assert decision.state is PositionState.CLOSED_FORCED
    assert evaluate_exit(_ctx(_position("15m", current=0.5, age=60))) is None


def test_predictive_exit_when_token_caught_up() -> None:
    prices = PriceHistoryStore(clock=lambda: NOW)
    for i in range(301):
        prices.record("BTC", 60000.0 * (1 + 0.00005 * i), ts=NOW - 300 + i)
    signals = SignalEngine(prices)
    pos = _position("15m", current=0.95, reason="PRED:8%+bull-strong")
    decision = evaluate_exit(_ctx(pos, signals=signals))
    assert decision.reason == "PRED-EXIT"
    assert decision.state is PositionState.CLOSED_PROFIT


def test_evaluate_stops_at_first_decision() -> None:
    seen = []

    def first(ctx: ExitContext) -> ExitDecision | None:
        seen.append("first")
        return ExitDecision(HOLD, "custom")

    def second(ctx: ExitContext) -> ExitDecision | None:
        seen.append("second")
        return None

    assert evaluate_exit(_ctx(_position("15m")), (first, second)).reason == "custom"
    assert seen == ["first"]
    assert by_pnl_sign(0.0) is PositionState.CLOSED_PROFIT
    assert by_pnl_sign(-0.01) is PositionState.CLOSED_STOP


def _flip_ctx(pos: Position, signal: Signal) -> ExitContext:
    ctx = _ctx(pos)
    ctx.signal = signal
    return ctx


def test_flip_exits_losing_position_on_strong_reversal() -> None:
    bear = Signal(direction=-1, strength=0.8, reason="bear-strong")
    decision = flip_signal(_flip_ctx(_position("15m", current=0.45, age=60), bear))
    assert decision == ExitDecision(EXIT, "FLIP")


def test_flip_waits_for_minimum_hold_age() -> None:
    bear = Signal(direction=-1, strength=0.8, reason="bear-strong")
    # 15m positions must be held longer than 30s before a reversal can flip them
    assert flip_signal(_flip_ctx(_position("15m", current=0.45, age=20), bear)) is None
    assert flip_signal(_flip_ctx(_position("15m", current=0.45, age=30), bear)) is None
    assert flip_signal(_flip_ctx(_position("15m", current=0.45, age=31), bear)) is not None


def test_flip_ignores_weak_or_agreeing_signals_and_winners() -> None:
    pos = _position("15m", current=0.45, age=60)
    assert flip_signal(_flip_ctx(pos, Signal(direction=-1, strength=0.5, reason="bear-mid"))) is None
    assert flip_signal(_flip_ctx(pos, Signal(direction=1, strength=0.9, reason="bull-strong"))) is None
    winner = _position("15m", current=0.55, age=60)
    assert flip_signal(_flip_ctx(winner, Signal(direction=-1, strength=0.8, reason="bear-strong"))) is None
