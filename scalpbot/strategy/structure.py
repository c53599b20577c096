from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field

from scalpbot.data.price_history import PriceObservation
from scalpbot.domain import UP, side_direction

SWING_LOOKBACK = 8
ROUND_LEVELS: dict[str, tuple[float, ...]] = {
    "BTC": (100, 250, 500, 1000, 5000, 10000),
    "ETH": (5, 10, 25, 50, 100, 500),
    "SOL": (0.5, 1, 2, 5, 10, 25),
}

History = Sequence[PriceObservation]


@dataclass(frozen=True)
class Regime:
    type: str = "UNKNOWN"
    confidence: float = 0.0
    direction: int = 0
    trend_strength: float = 0.0
    autocorr: float = 0.0
    hurst: float = 0.5
    acceleration: float = 0.0

    @property
    def trending(self) -> bool:
        return self.type.startswith("TRENDING")


@dataclass(frozen=True)
class Swing:
    price: float
    ts: float
    volume: float = 0.0


@dataclass(frozen=True)
class KeyLevel:
    price: float
    type: str
    source: str
    strength: float
    tests: int = 1


@dataclass(frozen=True)
class Vwap:
    vwap: float = 0.0
    deviation: float = 0.0
    sd: float = 0.0


@dataclass(frozen=True)
class Trap:
    is_trap: bool = False
    confidence: float = 0.0
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class Exhaustion:
    level: float = 0.0
    direction: int = 0
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class SmartMoney:
    signal: float = 0.0
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class MomentumQuality:
    quality: float = 0.5
    decelerating: bool = False


@dataclass(frozen=True)
class StructureRead:
    entry_quality: float = 0.5
    at_resistance: bool = False
    at_support: bool = False
    nearest_support: float | None = None
    nearest_resistance: float | None = None


@dataclass(frozen=True)
class VolumeNode:
    at_node: bool = False
    is_support: bool = False
    is_resistance: bool = False


@dataclass(frozen=True)
class PriceAction:
    signal: float = 0.0
    pattern: str = "none"


@dataclass(frozen=True)
class Swings:
    highs: list[Swing] = field(default_factory=list)
    lows: list[Swing] = field(default_factory=list)


def _mean(xs: Sequence[float]) -> float:
    return sum(xs) / len(xs) if xs else 0.0


def _sign(x: float) -> int:
    return 1 if x > 0 else -1 if x < 0 else 0


def estimate_hurst(returns: Sequence[float]) -> float:
    """Rescaled-range Hurst estimate, clamped to [0.1, 0.9]; 0.5 when undefined."""
    n = len(returns)
    if n < 8:
        return 0.5
    mean = _mean(returns)
    cum = 0.0
    hi, lo = -math.inf, math.inf
    for r in returns:
        cum += r - mean
        hi = max(hi, cum)
        lo = min(lo, cum)
    spread = hi - lo
    s = math.sqrt(sum((r - mean) ** 2 for r in returns) / n)
    if s <= 0 or spread <= 0:
        return 0.5
    return max(0.1, min(0.9, math.log(spread / s) / math.log(n)))


def detect_regime(history: History, step: int = 5) -> Regime:
    if len(history) < 60:
        return Regime()
    returns = []
    for i in range(step, len(history), step):
        prev = history[i - step].price
        if prev > 0:
            returns.append((history[i].price - prev) / prev)
    if len(returns) < 8:
        return Regime()

    mean = _mean(returns)
    variance = sum((r - mean) ** 2 for r in returns) / len(returns)
    std = math.sqrt(variance)
    trend_strength = abs(mean) / std if std > 0 else 0.0
    ac = sum(returns[i] * returns[i - 1] for i in range(1, len(returns))) / (len(returns) - 1)
    norm_ac = ac / variance if variance > 0 else 0.0
    hurst = estimate_hurst(returns)
    half = len(returns) // 2
    acceleration = _mean(returns[half:]) - _mean(returns[:half])
    direction = _sign(mean)

    kind, conf = "RANGING", 0.3
    if trend_strength > 0.25 and norm_ac > 0.05 and hurst > 0.52:
        kind = "TRENDING_UP" if direction > 0 else "TRENDING_DOWN"
        conf = min(1.0, (trend_strength * 2 + norm_ac + (hurst - 0.5) * 4) / 3)
    elif norm_ac < -0.08 or hurst < 0.42:
        kind = "MEAN_REVERTING"
        conf = min(1.0, (abs(norm_ac) * 2 + (0.5 - hurst) * 4) / 2)
    elif std > 0 and std > abs(mean) * 15 and variance > 1e-10:
        kind = "CHOPPY"
        ratio = std / abs(mean) if abs(mean) > 1e-8 else 0.0
        conf = min(0.8, ratio / 50)
    return Regime(
        type=kind,
        confidence=conf,
        direction=direction,
        trend_strength=trend_strength,
        autocorr=norm_ac,
        hurst=hurst,
        acceleration=acceleration,
    )


def detect_swing_points(history: History, lookback: int = SWING_LOOKBACK) -> Swings:
    highs: list[Swing] = []
    lows: list[Swing] = []
    if len(history) < lookback * 2 + 1:
        return Swings()
    for i in range(lookback, len(history) - lookback):
        price = history[i].price
        window = [history[j].price for j in range(i - lookback, i + lookback + 1) if j != i]
        if all(p < price for p in window):
            highs.append(Swing(price, history[i].ts, history[i].volume))
        if all(p > price for p in window):
            lows.append(Swing(price, history[i].ts, history[i].volume))
    return Swings(highs=highs[-15:], lows=lows[-15:])


def cluster_levels(levels: Sequence[KeyLevel], tolerance: float) -> list[KeyLevel]:
    """Merge levels closer than ``tolerance``; every extra test adds 0.1 strength."""
    if not levels:
        return []
    ordered = sorted(levels, key=lambda lv: lv.price)
    out: list[KeyLevel] = []
    group = [ordered[0]]

    def flush(g: list[KeyLevel]) -> None:
        out.append(KeyLevel(
            price=_mean([lv.price for lv in g]),
            type=g[0].type,
            source="cluster",
            strength=min(1.0, g[0].strength + len(g) * 0.1),
            tests=len(g),
        ))

    for lv in ordered[1:]:
        if lv.price - group[-1].price < tolerance:
            group.append(lv)
        else:
            flush(group)
            group = [lv]
    flush(group)
    return out


def build_key_levels(asset: str, current: float, swings: Swings) -> list[KeyLevel]:
    raw = [KeyLevel(h.price, "resistance", "swing", 0.7) for h in swings.highs]
    raw += [KeyLevel(lo.price, "support", "swing", 0.7) for lo in swings.lows]
    levels = cluster_levels(raw, current * 0.0005)

    steps = ROUND_LEVELS.get(asset, (1,))
    top = math.log2(steps[-1]) if steps[-1] > 1 else 1.0
    for step in steps:
        lower = math.floor(current / step) * step
        upper = lower + step
        strength = min(1.0, 0.3 + 0.5 * (math.log2(step) / top))
        dist_pct = (current - lower) / step
        if 0.1 < dist_pct < 0.9:
            levels.append(KeyLevel(lower, "support" if current > lower else "resistance", "round", strength))
            levels.append(KeyLevel(upper, "resistance" if current < upper else "support", "round", strength))

    levels.sort(key=lambda lv: abs(lv.price - current))
    return levels[:20]


def calculate_vwap(history: History) -> Vwap:
    if len(history) < 10:
        return Vwap()
    cum_pv = cum_v = 0.0
    sq = 0.0
    for o in history:
        vol = max(o.volume, 0.001)
        cum_pv += o.price * vol
        cum_v += vol
        sq += (o.price - cum_pv / cum_v) ** 2 * vol
    vwap = cum_pv / cum_v
    sd = math.sqrt(sq / cum_v)
    current = history[-1].price
    return Vwap(vwap=vwap, deviation=(current - vwap) / sd if sd > 0 else 0.0, sd=sd)


def _volume_spike(before: History, after: History) -> bool:
    before_avg = _mean([o.volume for o in before])
    after_max = max((o.volume for o in after), default=0.0)
    return before_avg > 0 and after_max > before_avg * 4


def detect_trap(side: str, history: History, levels: Sequence[KeyLevel]) -> Trap:
    if len(history) < 30:
        return Trap()
    current = history[-1].price
    recent30 = list(history[-30:])
    recent10 = list(history[-10:])
    recent60 = list(history[-60:])
    prices30 = [o.price for o in recent30]
    hi30, lo30 = max(prices30), min(prices30)
    score = 0.0
    reasons: list[str] = []

    for lv in levels[:8]:
        if side == UP and lv.type == "resistance":
            if hi30 > lv.price * 1.0002 and current < lv.price * 0.9998:
                score += 0.35 * lv.strength
                reasons.append("false-breakout-above")
                break
        if side != UP and lv.type == "support":
            if lo30 < lv.price * 0.9998 and current > lv.price * 1.0002:
                score += 0.35 * lv.strength
                reasons.append("false-breakdown-below")
                break

    last10_vol = sum(o.volume for o in recent10) / 10
    older20_vol = sum(o.volume for o in recent30[:20]) / 20
    if older20_vol > 0 and last10_vol < older20_vol * 0.5:
        score += 0.2
        reasons.append("low-vol-breakout")

    range30 = hi30 - lo30
    if range30 > 0:
        max_idx = prices30.index(hi30)
        min_idx = prices30.index(lo30)
        if side == UP and 3 < max_idx < 22:
            retrace = (hi30 - current) / range30
            if retrace > 0.6:
                score += 0.3 * retrace
                reasons.append("v-reversal-down")
        if side != UP and 3 < min_idx < 22:
            retrace = (current - lo30) / range30
            if retrace > 0.6:
                score += 0.3 * retrace
                reasons.append("v-reversal-up")

    if len(recent60) >= 40:
        last20 = recent60[-20:]
        prior20 = recent60[-40:-20]
        if _volume_spike(prior20, last20):
            spike_price = prior20[-1].price
            if abs(current - spike_price) / (range30 + 1e-10) > 0.5:
                score += 0.25
                reasons.append("stop-hunt")

    last5 = recent10[-5:]
    last5_vol = sum(o.volume for o in last5)
    last5_range = max(o.price for o in last5) - min(o.price for o in last5)
    if older20_vol > 0 and last5_vol > older20_vol * 10 and last5_range < (range30 / 6) * 0.3:
        score += 0.2
        reasons.append("absorption-detected")

    return Trap(is_trap=score >= 0.35, confidence=min(1.0, score), reasons=tuple(reasons))


def measure_exhaustion(history: History) -> Exhaustion:
    if len(history) < 40:
        return Exhaustion()
    recent = list(history[-60:])
    current = recent[-1].price
    start = recent[0].price
    direction = _sign((current - start) / start)
    level = 0.0
    reasons: list[str] = []

    best = run = 0
    prev_dir = 0
    for i in range(3, len(recent), 3):
        d = 1 if recent[i].price > recent[i - 3].price else -1
        if d == prev_dir and d == direction:
            run += 1
            best = max(best, run)
        else:
            run = 0
        prev_dir = d
    if best >= 8:
        level += 0.3
        reasons.append(f"{best * 3}s-no-pullback")
    elif best >= 5:
        level += 0.15
        reasons.append(f"{best * 3}s-run")

    n = len(recent)
    thirds = [recent[: n // 3], recent[n // 3: (n * 2) // 3], recent[(n * 2) // 3:]]
    vols = [_mean([o.volume for o in t]) for t in thirds]
    if vols[0] > 0 and vols[2] > vols[0] * 2 and vols[2] > vols[1] * 1.5:
        level += 0.25
        reasons.append("volume-climax")

    half = n // 2
    first_move = (recent[half].price - start) / start
    second_move = (current - recent[half].price) / recent[half].price
    if abs(first_move) > 0.0001 and _sign(first_move) == direction:
        decel = 1 - abs(second_move) / abs(first_move)
        if decel > 0.5:
            level += 0.2 * decel
            reasons.append("momentum-decelerating")

    vw = calculate_vwap(recent)
    if abs(vw.deviation) > 2.5:
        level += 0.15
        reasons.append(f"vwap-{abs(vw.deviation):.1f}sd")

    prices = [o.price for o in recent]
    mean = _mean(prices)
    sd = math.sqrt(sum((p - mean) ** 2 for p in prices) / n)
    if sd > 0 and abs(current - mean) > sd * 2.5:
        level += 0.1
        reasons.append("price-extended")

    return Exhaustion(level=min(1.0, level), direction=direction, reasons=tuple(reasons))


def detect_smart_money(history: History) -> SmartMoney:
    if len(history) < 30:
        return SmartMoney()
    recent = list(history[-30:])
    current = recent[-1].price
    prices = [o.price for o in recent]
    signal = 0.0
    reasons: list[str] = []

    avg_vol = _mean([o.volume for o in recent])
    last5 = recent[-5:]
    last5_vol = sum(o.volume for o in last5) / 5
    last5_avg = sum(o.price for o in last5) / 5
    prev5_avg = sum(o.price for o in recent[-10:-5]) / 5
    last5_range = max(o.price for o in last5) - min(o.price for o in last5)
    range_all = max(prices) - min(prices)
    avg_range = range_all / 6

    if avg_vol > 0 and last5_vol > avg_vol * 2.5 and avg_range > 0 and last5_range < avg_range * 0.4:
        position = (current - min(prices)) / range_all if range_all > 0 else 0.5
        if position < 0.35:
            signal += 0.5
            reasons.append("bullish-absorption")
        elif position > 0.65:
            signal -= 0.5
            reasons.append("bearish-absorption")

    if avg_vol > 0 and last5_vol > avg_vol * 3:
        d = 1 if last5_avg > prev5_avg else -1
        signal += d * 0.3
        reasons.append("aggressive-buying" if d > 0 else "aggressive-selling")

    up_vol = down_vol = 0.0
    for a, b in zip(recent, recent[1:]):
        if b.price > a.price:
            up_vol += b.volume
        elif b.price < a.price:
            down_vol += b.volume
    total = up_vol + down_vol
    if total > 0:
        delta = (up_vol - down_vol) / total
        price_dir = 1 if current > recent[0].price else -1
        if price_dir > 0 and delta < -0.2:
            signal -= 0.3
            reasons.append("bearish-delta-div")
        elif price_dir < 0 and delta > 0.2:
            signal += 0.3
            reasons.append("bullish-delta-div")

    return SmartMoney(signal=max(-1.0, min(1.0, signal)), reasons=tuple(reasons))


def momentum_quality(history: History, side: str) -> MomentumQuality:
    if len(history) < 30:
        return MomentumQuality()
    recent = list(history[-30:])
    want = side_direction(side)
    returns = [(recent[i].price - recent[i - 3].price) / recent[i - 3].price for i in range(3, len(recent), 3)]
    if len(returns) < 5:
        return MomentumQuality()

    quality = 0.5
    mean = _mean(returns)
    sd = math.sqrt(sum((r - mean) ** 2 for r in returns) / len(returns))
    correct = sum(1 for r in returns if _sign(r) == want) / len(returns)
    if correct > 0.65:
        quality += 0.2
    elif correct < 0.4:
        quality -= 0.2

    smoothness = abs(mean) / sd if sd > 0 else 0.0
    if smoothness > 0.5:
        quality += 0.15
    elif smoothness < 0.15:
        quality -= 0.15

    first_vol = sum(o.volume for o in recent[:15])
    second_vol = sum(o.volume for o in recent[15:])
    if first_vol > 0:
        growth = second_vol / first_vol
        if growth > 1.3:
            quality += 0.1
        elif growth < 0.5:
            quality -= 0.15

    half = len(returns) // 2
    first_mean = _mean(returns[:half])
    second_mean = _mean(returns[half:])
    decelerating = _sign(first_mean) == want and abs(second_mean) < abs(first_mean) * 0.5
    if decelerating:
        quality -= 0.15
    elif abs(second_mean) > abs(first_mean) * 1.2 and _sign(second_mean) == want:
        quality += 0.1

    return MomentumQuality(quality=max(0.0, min(1.0, quality)), decelerating=decelerating)


def analyze_structure(side: str, current: float, levels: Sequence[KeyLevel], vwap: Vwap) -> StructureRead:
    support = None
    resistance = None
    for lv in levels:
        if lv.type == "support" and lv.price < current and (support is None or lv.price > support):
            support = lv.price
        if lv.type == "resistance" and lv.price > current and (resistance is None or lv.price < resistance):
            resistance = lv.price

    quality = 0.5
    at_res = at_sup = False
    if support is not None and resistance is not None:
        span = resistance - support
        position = (current - support) / span if span > 0 else 0.5
        quality = 1 - position if side == UP else position
        at_res = position > 0.85
        at_sup = position < 0.15

    if vwap.vwap > 0:
        if (side == UP and current < vwap.vwap) or (side != UP and current > vwap.vwap):
            quality += 0.1

    return StructureRead(
        entry_quality=max(0.0, min(1.0, quality)),
        at_resistance=at_res,
        at_support=at_sup,
        nearest_support=support,
        nearest_resistance=resistance,
    )


def volume_profile(history: History, current: float) -> VolumeNode:
    if len(history) < 30 or current <= 0:
        return VolumeNode()
    bin_size = current * 0.0002
    bins: dict[float, float] = {}
    for o in history:
        key = round(o.price / bin_size) * bin_size
        bins[key] = bins.get(key, 0.0) + (o.volume or 1.0)
    volumes = sorted(bins.values(), reverse=True)
    threshold = volumes[int(len(volumes) * 0.25)] if volumes else 0.0
    here = round(current / bin_size) * bin_size
    at_node = threshold > 0 and bins.get(here, 0.0) >= threshold
    return VolumeNode(
        at_node=at_node,
        is_support=at_node and current > here,
        is_resistance=at_node and current < here,
    )


def detect_price_action(history: History) -> PriceAction:
    if len(history) < 40:
        return PriceAction()
    recent = list(history[-40:])
    current = recent[-1].price
    candles = []
    for i in range(0, len(recent) - 9, 10):
        bar = [o.price for o in recent[i:i + 10]]
        candles.append((bar[0], max(bar), min(bar), bar[-1]))
    if len(candles) < 3:
        return PriceAction()

    lo_, lh, ll, lc = candles[-1]
    po, ph, pl, pc = candles[-2]
    qo, qh, ql, qc = candles[-3]
    last_body = abs(lc - lo_)
    last_range = lh - ll
    prev_body = abs(pc - po)

    if pc < po and lc > lo_ and last_body > prev_body * 1.3 and lc > po and lo_ < pc:
        return PriceAction(0.6, "bullish-engulf")
    if pc > po and lc < lo_ and last_body > prev_body * 1.3 and lc < po and lo_ > pc:
        return PriceAction(-0.6, "bearish-engulf")

    upper_wick = lh - max(lo_, lc)
    lower_wick = min(lo_, lc) - ll
    if last_range > 0 and lower_wick > last_body * 2 and upper_wick < last_body * 0.5:
        return PriceAction(0.4, "hammer")
    if last_range > 0 and upper_wick > last_body * 2 and lower_wick < last_body * 0.5:
        return PriceAction(-0.4, "shooting-star")

    if len(candles) >= 4:
        tol = (qh + lh) / 2 * 0.0005
        if abs(qh - lh) < tol and pl < qh * 0.999 and current < pl:
            return PriceAction(-0.5, "double-top")
        if abs(ql - ll) < tol and ph > ql * 1.001 and current > ph:
            return PriceAction(0.5, "double-bottom")

    if lh > ph > qh and ll > pl > ql:
        return PriceAction(0.35, "hh-hl-uptrend")
    if lh < ph < qh and ll < pl < ql:
        return PriceAction(-0.35, "lh-ll-downtrend")

    if last_range > 0 and last_body < last_range * 0.1:
        avg = _mean([(c[0] + c[3]) / 2 for c in candles[:-1]])
        if current > avg * 1.001:
            return PriceAction(-0.25, "doji-at-top")
        if current < avg * 0.999:
            return PriceAction(0.25, "doji-at-bottom")
    return PriceAction()
