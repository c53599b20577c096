"""Ordered exit rules for open positions.

Each rule takes an ``ExitContext`` and returns an ``ExitDecision`` or ``None``.
The first non-``None`` decision wins; a ``hold`` decision stops evaluation without
touching the position.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from functools import cached_property

from scalpbot.config.trading import TimeframeRules, TradingConfig
from scalpbot.data.price_history import PriceHistoryStore
from scalpbot.domain import Position, PositionState, PredictiveEdge, Signal, side_direction
from scalpbot.strategy.intelligence import ExitVerdict, MarketStructureAnalyzer
from scalpbot.strategy.probability import BinaryProbabilityModel, PriceSupport
from scalpbot.strategy.signals import SignalEngine

EXIT = "exit"
HOLD = "hold"
RESOLVE = "resolve"

SHORT_HOLD_SECS = 120.0
SHORT_HOLD_WIN = 0.55
SHORT_HOLD_DEAD = 0.10
NO_BUYERS_PRICE = 0.03
SALVAGE_TIERS = (
    # sigmas needed, minutes left under, min token price, tag
    (4.0, 60.0, 0.03, "SALVAGE-SIGMA"),
    (3.0, 30.0, 0.03, "SALVAGE-SIGMA"),
    (2.0, 15.0, 0.05, "SALVAGE-LAST"),
)
DAILY_DEAD_PRICE = 0.02
FLIP_STRENGTH = 0.6
FLAT_PNL = 0.005


@dataclass(frozen=True)
class ExitDecision:
    action: str
    reason: str
    state: PositionState | None = None
    urgent: bool = False
    penalty_rate: float = 0.0

    @property
    def closes(self) -> bool:
        return self.action in (EXIT, RESOLVE)


def by_pnl_sign(pnl: float) -> PositionState:
    return PositionState.CLOSED_PROFIT if pnl >= 0 else PositionState.CLOSED_STOP


class ExitContext:
    """Lazily computed inputs for one position on one tick."""

    def __init__(
        self,
        pos: Position,
        *,
        now: float,
        cfg: TradingConfig,
        probability: BinaryProbabilityModel,
        signals: SignalEngine | None = None,
        analyzer: MarketStructureAnalyzer | None = None,
        prices: PriceHistoryStore | None = None,
    ):
        self.pos = pos
        self.now = now
        self.cfg = cfg
        self.probability = probability
        self.signals = signals
        self.analyzer = analyzer
        self.prices = prices

    @cached_property
    def rules(self) -> TimeframeRules:
        return self.cfg.rules(self.pos.timeframe)

    @cached_property
    def secs_left(self) -> float:
        return self.pos.secs_left(self.now)

    @property
    def mins_left(self) -> float:
        return self.secs_left / 60.0

    @cached_property
    def is_long(self) -> bool:
        return self.cfg.is_long(self.pos.timeframe)

    @property
    def price(self) -> float:
        return self.pos.current_price

    @property
    def unrealized(self) -> float:
        return self.pos.unrealized_pnl

    @property
    def pnl_pct(self) -> float:
        return self.unrealized / (self.pos.cost_basis or 1.0)

    @cached_property
    def crypto_now(self) -> float | None:
        if self.signals is None:
            return None
        return self.signals.crypto_price(self.pos.asset, self.now)

    @cached_property
    def support(self) -> PriceSupport:
        return self.probability.price_support(self.pos, self.crypto_now, self.now)

    @cached_property
    def sigmas_needed(self) -> float:
        return self.probability.sigmas_needed(self.pos, self.support, max(self.secs_left, 1.0))

    @cached_property
    def signal(self) -> Signal:
        if self.signals is None:
            return Signal()
        return self.signals.signal(self.pos.asset, self.now)

    @cached_property
    def edge(self) -> PredictiveEdge:
        if self.signals is None:
            return PredictiveEdge()
        return self.signals.predictive_edge(self.pos.asset, self.pos.side, self.price, self.now)

    @cached_property
    def verdict(self) -> ExitVerdict:
        if self.analyzer is None or self.prices is None:
            return ExitVerdict()
        return self.analyzer.analyze_exit(
            self.pos.asset,
            self.pos.side,
            peak_gain=self.pos.peak_gain,
            unrealized=self.unrealized,
            history=self.prices.history(self.pos.asset),
        )

    @property
    def chart_hold(self) -> bool:
        chart = self.verdict.chart
        return chart.hold_signal and chart.confidence > 0.45

    def supported(self, above: float) -> bool:
        return self.support.supports and self.support.probability > above


Rule = Callable[[ExitContext], "ExitDecision | None"]


def resolve_at_expiry(ctx: ExitContext) -> ExitDecision | None:
    if ctx.secs_left > 0:
        return None
    won = ctx.supported(0.50)
    return ExitDecision(RESOLVE, "WIN-RESOLVE" if won else "LOSS-RESOLVE", PositionState.CLOSED_RESOLVED)


def hold_short_near_expiry(ctx: ExitContext) -> ExitDecision | None:
    if ctx.pos.timeframe != "5m" or not 0 < ctx.secs_left < SHORT_HOLD_SECS:
        return None
    if ctx.price > SHORT_HOLD_WIN:
        return ExitDecision(HOLD, "5M-HOLD")
    if ctx.price < SHORT_HOLD_DEAD:
        return ExitDecision(HOLD, "5M-DEAD")
    return None


def force_exit_zone(ctx: ExitContext) -> ExitDecision | None:
    if not 0 < ctx.secs_left < ctx.rules.force_exit_secs:
        return None
    if (ctx.is_long or ctx.pos.timeframe == "5m") and ctx.supported(0.55):
        return ExitDecision(HOLD, "RESOLVE-HOLD")
    if ctx.is_long and ctx.price < NO_BUYERS_PRICE:
        return ExitDecision(HOLD, "NO-BUYERS")
    return ExitDecision(
        EXIT,
        "LIQ-FORCE",
        PositionState.CLOSED_FORCED,
        urgent=True,
        penalty_rate=ctx.cfg.slippage_penalty,
    )


def salvage_sigma(ctx: ExitContext) -> ExitDecision | None:
    if not ctx.is_long or ctx.unrealized > 0 or ctx.sigmas_needed <= 0:
        return None
    for sigmas, mins, min_price, tag in SALVAGE_TIERS:
        if ctx.sigmas_needed > sigmas and ctx.mins_left < mins and ctx.price > min_price:
            return ExitDecision(EXIT, tag, PositionState.CLOSED_SALVAGE, urgent=True)
    if ctx.price < NO_BUYERS_PRICE:
        return ExitDecision(HOLD, "NO-BUYERS")
    return None


def long_profit_near_expiry(ctx: ExitContext) -> ExitDecision | None:
    if not ctx.is_long or ctx.unrealized <= 0 or ctx.secs_left >= ctx.rules.liquidity_exit_secs:
        return None
    if ctx.supported(0.75):
        return ExitDecision(HOLD, "RESOLVE-HOLD")
    return ExitDecision(EXIT, "LIQ-SAFE", PositionState.CLOSED_FORCED, urgent=True)


def never_sell_at_loss(ctx: ExitContext) -> ExitDecision | None:
    """Long timeframes ride out unrealized losses unless a salvage rule fired first."""
    if ctx.is_long and ctx.unrealized <= 0:
        return ExitDecision(HOLD, "HOLD-LOSS")
    return None


def daily_profit_or_dead(ctx: ExitContext) -> ExitDecision | None:
    if ctx.pos.timeframe != "1d":
        return None
    if ctx.pnl_pct >= ctx.rules.profit_target:
        return ExitDecision(EXIT, f"PROFIT-1D-{ctx.rules.profit_target * 100:.0f}%", PositionState.CLOSED_PROFIT)
    if ctx.price <= DAILY_DEAD_PRICE:
        return ExitDecision(EXIT, "DEAD-1D", PositionState.CLOSED_STOP)
    return ExitDecision(HOLD, "DIAMOND")


def predictive_exit(ctx: ExitContext) -> ExitDecision | None:
    if "PRED" in ctx.pos.entry_reason and ctx.unrealized > 0 and ctx.edge.catching_up:
        return ExitDecision(EXIT, "PRED-EXIT", PositionState.CLOSED_PROFIT)
    return None


def structure_exit(ctx: ExitContext) -> ExitDecision | None:
    verdict = ctx.verdict
    if not verdict.exit_now or ctx.unrealized == 0:
        return None
    if verdict.reason.startswith("chart-exit:") and verdict.chart.confidence > 0.6:
        return ExitDecision(EXIT, verdict.reason)
    if ctx.rules.hold_through_dips and ctx.supported(0.65):
        return None
    return ExitDecision(EXIT, f"MI-{verdict.reason}")


def profit_target(ctx: ExitContext) -> ExitDecision | None:
    target = ctx.pos.target_profit or ctx.pos.cost_basis * ctx.rules.profit_target
    if ctx.unrealized < target:
        return None
    if ctx.is_long and (ctx.chart_hold or (ctx.support.probability > 0.70 and ctx.unrealized < target * 2.5)):
        return None
    return ExitDecision(EXIT, "PROFIT", PositionState.CLOSED_PROFIT)


def trailing_stop(ctx: ExitContext) -> ExitDecision | None:
    peak = ctx.pos.peak_gain
    if peak <= ctx.cfg.trail_min_peak or ctx.unrealized >= peak * ctx.rules.trail_lock:
        return None
    if ctx.rules.hold_through_dips and (ctx.chart_hold or ctx.supported(0.60)):
        emergency = 0.05 if ctx.pos.timeframe in ("1d", "4h") else 0.10
        if ctx.unrealized < peak * emergency:
            return ExitDecision(EXIT, "TRAIL-WIDE")
        return None
    if ctx.verdict.hold_through:
        if ctx.unrealized < peak * 0.1:
            return ExitDecision(EXIT, "TRAIL-WIDE")
        return None
    return ExitDecision(EXIT, "TRAIL")


def flip_signal(ctx: ExitContext) -> ExitDecision | None:
    sig = ctx.signal
    reversed_ = sig.direction == -side_direction(ctx.pos.side) and sig.strength > FLIP_STRENGTH
    if not reversed_ or ctx.unrealized >= FLAT_PNL or ctx.pos.age(ctx.now) <= ctx.rules.min_flip_age:
        return None
    if ctx.rules.hold_through_dips and ctx.support.supports:
        return None
    return ExitDecision(EXIT, "FLIP")


def stop_loss(ctx: ExitContext) -> ExitDecision | None:
    """Adaptive stop; waits out a short venue lag when the underlying still agrees.

    Tracks the lag window on ``pos.latency_hold_since``.
    """
    pos = ctx.pos
    stop = ctx.rules.stop_loss
    if ctx.supported(0.70):
        stop *= 1.5
    elif not ctx.support.supports and ctx.support.probability < 0.40:
        stop *= 0.7

    if ctx.price >= pos.entry_price * (1 - stop):
        pos.latency_hold_since = None
        return None
    if ctx.rules.hold_through_dips and ctx.support.direction_match:
        if pos.latency_hold_since is None:
            pos.latency_hold_since = ctx.now
            return ExitDecision(HOLD, "LATENCY-HOLD")
        if ctx.now - pos.latency_hold_since <= ctx.cfg.latency_hold_secs:
            return ExitDecision(HOLD, "LATENCY-HOLD")
        pos.latency_hold_since = None
    return ExitDecision(EXIT, "STOP", PositionState.CLOSED_STOP, urgent=True)


def stale_position(ctx: ExitContext) -> ExitDecision | None:
    if ctx.is_long:
        return None
    if ctx.pos.age(ctx.now) > ctx.rules.stale_secs and abs(ctx.unrealized) < FLAT_PNL:
        return ExitDecision(EXIT, "STALE", PositionState.CLOSED_FORCED)
    return None


EXIT_RULES: tuple[Rule, ...] = (
    resolve_at_expiry,
    hold_short_near_expiry,
    force_exit_zone,
    salvage_sigma,
    long_profit_near_expiry,
    never_sell_at_loss,
    daily_profit_or_dead,
    predictive_exit,
    structure_exit,
    profit_target,
    trailing_stop,
    flip_signal,
    stop_loss,
    stale_position,
)


def evaluate_exit(ctx: ExitContext, rules: Sequence[Rule] = EXIT_RULES) -> ExitDecision | None:
    for rule in rules:
        decision = rule(ctx)
        if decision is not None:
            return decision
    return None
