from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from scalpbot.data.price_history import PriceObservation
from scalpbot.domain import DOWN, UP, side_direction
from scalpbot.strategy import structure as st
from scalpbot.strategy.patterns import ChartRead, analyze_chart

MIN_HISTORY = 30
ANALYSIS_TTL = 1.5
REENTRY_COOLDOWN = 45.0
EXIT_MEMORY = 120.0
MULT_FLOOR = 0.2
MULT_CEIL = 1.5


@dataclass(frozen=True)
class Adjustment:
    factor: float = 1.0
    tag: str = ""
    boost: bool = False
    veto: str = ""


NEUTRAL = Adjustment()


@dataclass(frozen=True)
class Reading:
    """Everything the entry checks look at for one (asset, side)."""

    side: str
    current: float
    regime: st.Regime
    levels: tuple[st.KeyLevel, ...]
    vwap: st.Vwap
    trap: st.Trap
    exhaustion: st.Exhaustion
    smart_money: st.SmartMoney
    momentum: st.MomentumQuality
    structure: st.StructureRead
    volume_node: st.VolumeNode
    price_action: st.PriceAction
    chart: ChartRead

    @property
    def direction(self) -> int:
        return side_direction(self.side)


@dataclass(frozen=True)
class EntryVerdict:
    veto: bool = False
    veto_reason: str = ""
    multiplier: float = 1.0
    boosts: tuple[str, ...] = ()
    penalties: tuple[str, ...] = ()
    reading: Reading | None = None

    @property
    def regime(self) -> str:
        return self.reading.regime.type if self.reading else "UNKNOWN"

    def summary(self) -> dict:
        out = {
            "veto": self.veto,
            "veto_reason": self.veto_reason,
            "multiplier": round(self.multiplier, 3),
            "boosts": list(self.boosts),
            "penalties": list(self.penalties),
            "regime": self.regime,
        }
        if self.reading:
            out["chart"] = {
                "patterns": [p.name for p in self.reading.chart.patterns],
                "bias": round(self.reading.chart.bias, 3),
                "reason": self.reading.chart.reason,
            }
        return out


@dataclass(frozen=True)
class ExitVerdict:
    hold_through: bool = False
    exit_now: bool = False
    reason: str = ""
    chart: ChartRead = field(default_factory=ChartRead)


# entry checks


def check_regime(r: Reading) -> Adjustment:
    regime = r.regime
    if regime.type == "MEAN_REVERTING":
        if r.direction == regime.direction:
            return Adjustment(0.4, "regime-mean-revert")
        return Adjustment(1.2, "regime-fade", boost=True)
    if regime.type == "CHOPPY":
        return Adjustment(0.6, "regime-choppy")
    if regime.trending:
        trend_dir = 1 if regime.type == "TRENDING_UP" else -1
        if r.direction == trend_dir:
            return Adjustment(1.15 + regime.confidence * 0.15, "with-trend", boost=True)
        veto = f"counter-trend-{regime.type}" if regime.confidence > 0.7 else ""
        return Adjustment(0.5, "counter-trend", veto=veto)
    return NEUTRAL


def check_trap(r: Reading) -> Adjustment:
    if not r.trap.is_trap:
        return NEUTRAL
    if r.trap.confidence > 0.6:
        first = r.trap.reasons[0] if r.trap.reasons else "unknown"
        return Adjustment(veto=f"trap-{first}")
    return Adjustment(1 - r.trap.confidence * 0.5, "trap-risk")


def check_exhaustion(r: Reading) -> Adjustment:
    ex = r.exhaustion
    first = ex.reasons[0] if ex.reasons else "unknown"
    if ex.level > 0.7 and r.direction == ex.direction:
        return Adjustment(veto=f"exhausted-move-{first}")
    if ex.level > 0.4 and r.direction == ex.direction:
        return Adjustment(1 - ex.level * 0.4, "partial-exhaust")
    if ex.level > 0.5 and r.direction != ex.direction:
        return Adjustment(1.1, "fade-exhaust", boost=True)
    return NEUTRAL


def check_structure(r: Reading) -> Adjustment:
    s = r.structure
    veto = ""
    if s.at_resistance and r.side == UP:
        veto = "entering-at-resistance"
    if s.at_support and r.side == DOWN:
        veto = "entering-at-support"
    if s.entry_quality < 0.3:
        return Adjustment(0.5, "poor-structure", veto=veto)
    if s.entry_quality > 0.7:
        return Adjustment(1.15, "good-structure", boost=True, veto=veto)
    return Adjustment(veto=veto)


def check_smart_money(r: Reading) -> Adjustment:
    sig = r.smart_money.signal
    if sig == 0:
        return NEUTRAL
    if (1 if sig > 0 else -1) == r.direction:
        return Adjustment(1.1 + abs(sig) * 0.2, "smart-money-agree", boost=True)
    if abs(sig) > 0.4:
        return Adjustment(0.6, "smart-money-disagree")
    return NEUTRAL


def check_momentum(r: Reading) -> Adjustment:
    q = r.momentum.quality
    if q < 0.3:
        return Adjustment(0.6, "weak-momentum")
    if q > 0.7:
        return Adjustment(1.1, "strong-momentum", boost=True)
    return NEUTRAL


def check_vwap(r: Reading) -> Adjustment:
    dev = r.vwap.deviation
    if abs(dev) <= 2.0:
        return NEUTRAL
    if r.direction == (1 if dev > 0 else -1):
        return Adjustment(0.6, "vwap-extended")
    return Adjustment(1.15, "vwap-reversion", boost=True)


def check_price_action(r: Reading) -> Adjustment:
    pa = r.price_action
    if pa.signal == 0:
        return NEUTRAL
    if (1 if pa.signal > 0 else -1) == r.direction:
        return Adjustment(1.1, pa.pattern, boost=True)
    if abs(pa.signal) > 0.5:
        return Adjustment(0.7, f"anti-{pa.pattern}")
    return NEUTRAL


def check_volume_node(r: Reading) -> Adjustment:
    node = r.volume_node
    if not node.at_node:
        return NEUTRAL
    if (r.side == UP and node.is_support) or (r.side == DOWN and node.is_resistance):
        return Adjustment(1.1, "vol-node-support", boost=True)
    return Adjustment(0.8, "vol-node-barrier")


def check_chart(r: Reading) -> Adjustment:
    chart = r.chart
    if not chart.patterns:
        return NEUTRAL
    aligned = chart.bias * r.direction
    if aligned > 0.3:
        return Adjustment(1.0 + min(chart.confidence * 0.3, 0.3), f"chart:{chart.reason}", boost=True)
    if aligned < -0.3:
        if chart.confidence > 0.65:
            return Adjustment(veto=f"chart-pattern-{chart.reason}")
        return Adjustment(1.0 - min(chart.confidence * 0.4, 0.35), f"chart:{chart.reason}")
    return NEUTRAL


ENTRY_CHECKS: tuple[Callable[[Reading], Adjustment], ...] = (
    check_regime,
    check_trap,
    check_exhaustion,
    check_structure,
    check_smart_money,
    check_momentum,
    check_vwap,
    check_price_action,
    check_volume_node,
    check_chart,
)


def combine(adjustments: Sequence[Adjustment], reading: Reading | None = None) -> EntryVerdict:
    mult = 1.0
    veto = ""
    boosts: list[str] = []
    penalties: list[str] = []
    for adj in adjustments:
        mult *= adj.factor
        if adj.veto:
            veto = adj.veto
        if adj.tag:
            (boosts if adj.boost else penalties).append(adj.tag)
    return EntryVerdict(
        veto=bool(veto),
        veto_reason=veto,
        multiplier=max(MULT_FLOOR, min(MULT_CEIL, mult)),
        boosts=tuple(boosts),
        penalties=tuple(penalties),
        reading=reading,
    )


class MarketStructureAnalyzer:
    """Entry veto and conviction multiplier from price structure, plus exit advice."""

    def __init__(
        self,
        *,
        ttl: float = ANALYSIS_TTL,
        reentry_cooldown: float = REENTRY_COOLDOWN,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.reentry_cooldown = reentry_cooldown
        self.clock = clock
        self._cache: dict[tuple[str, str], tuple[float, EntryVerdict]] = {}
        self._recent_exits: dict[str, float] = {}

    def read(self, asset: str, side: str, history: Sequence[PriceObservation]) -> Reading:
        current = history[-1].price
        swings = st.detect_swing_points(history)
        levels = tuple(st.build_key_levels(asset, current, swings))
        vwap = st.calculate_vwap(history)
        return Reading(
            side=side,
            current=current,
            regime=st.detect_regime(history),
            levels=levels,
            vwap=vwap,
            trap=st.detect_trap(side, history, levels),
            exhaustion=st.measure_exhaustion(history),
            smart_money=st.detect_smart_money(history),
            momentum=st.momentum_quality(history, side),
            structure=st.analyze_structure(side, current, levels, vwap),
            volume_node=st.volume_profile(history, current),
            price_action=st.detect_price_action(history),
            chart=analyze_chart(history, side),
        )

    def analyze(self, asset: str, side: str, history: Sequence[PriceObservation]) -> EntryVerdict:
        if len(history) < MIN_HISTORY:
            return EntryVerdict(penalties=("insufficient-data",))
        now = self.clock()
        key = (asset, side)
        cached = self._cache.get(key)
        if cached and now - cached[0] < self.ttl:
            return cached[1]

        reading = self.read(asset, side, history)
        verdict = combine([check(reading) for check in ENTRY_CHECKS], reading)
        self._cache[key] = (now, verdict)
        return verdict

    def analyze_exit(
        self,
        asset: str,
        side: str,
        *,
        peak_gain: float,
        unrealized: float,
        history: Sequence[PriceObservation],
    ) -> ExitVerdict:
        if len(history) < MIN_HISTORY:
            return ExitVerdict()
        want = side_direction(side)
        regime = st.detect_regime(history)
        exhaustion = st.measure_exhaustion(history)
        vwap = st.calculate_vwap(history)
        momentum = st.momentum_quality(history, side)

        hold = exit_now = False
        reason = ""
        trend_dir = (1 if regime.type == "TRENDING_UP" else -1) if regime.trending else 0

        if trend_dir == want and regime.confidence > 0.5:
            if unrealized > -0.02 and peak_gain > 0.01 and momentum.quality > 0.4:
                hold = True
                reason = "healthy-pullback-in-uptrend" if want > 0 else "healthy-pullback-in-downtrend"
        if exhaustion.level > 0.6 and exhaustion.direction == want and unrealized > 0:
            exit_now = True
            first = exhaustion.reasons[0] if exhaustion.reasons else "unknown"
            reason = f"exhaustion-take-profit-{first}"
        if trend_dir == -want and regime.confidence > 0.6:
            exit_now = True
            reason = "regime-changed-against-us"
        if abs(vwap.deviation) < 0.5 and unrealized > 0:
            exit_now = True
            reason = "vwap-mean-reversion-target"
        if momentum.quality < 0.2 and momentum.decelerating and unrealized < 0:
            exit_now = True
            reason = "momentum-dying"

        # chart patterns override the indicators above
        chart = analyze_chart(history, side)
        if chart.patterns:
            if chart.exit_signal and chart.confidence > 0.55:
                exit_now = True
                reason = f"chart-exit:{chart.reason}"
            if chart.hold_signal and chart.confidence > 0.45:
                hold = True
                if not reason:
                    reason = f"chart-hold:{chart.reason}"
        return ExitVerdict(hold_through=hold, exit_now=exit_now, reason=reason, chart=chart)

    def record_exit(self, market_id: str) -> None:
        now = self.clock()
        self._recent_exits[market_id] = now
        cutoff = now - EXIT_MEMORY
        for mid, ts in list(self._recent_exits.items()):
            if ts < cutoff:
                del self._recent_exits[mid]

    def can_reenter(self, market_id: str) -> bool:
        last = self._recent_exits.get(market_id)
        if last is None:
            return True
        return self.clock() - last > self.reentry_cooldown

    def clear(self) -> None:
        self._cache.clear()
