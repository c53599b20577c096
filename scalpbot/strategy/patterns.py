from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from scalpbot.data.price_history import PriceObservation
from scalpbot.domain import side_direction


@dataclass(frozen=True)
class Candle:
    open: float
    high: float
    low: float
    close: float
    volume: float
    ts: float


@dataclass(frozen=True)
class ChartPattern:
    name: str
    direction: int
    confidence: float
    weight: float


@dataclass(frozen=True)
class ChartRead:
    patterns: tuple[ChartPattern, ...] = ()
    bias: float = 0.0
    hold_signal: bool = False
    exit_signal: bool = False
    reason: str = "insufficient-data"
    confidence: float = 0.0


def build_candles(history: Sequence[PriceObservation], interval: float = 30.0) -> list[Candle]:
    candles: list[Candle] = []
    if not history:
        return candles
    start = history[0].ts
    bar: list[PriceObservation] = []

    def close_bar(b: list[PriceObservation]) -> Candle:
        prices = [o.price for o in b]
        return Candle(
            open=prices[0],
            high=max(prices),
            low=min(prices),
            close=prices[-1],
            volume=sum(o.volume for o in b),
            ts=b[0].ts,
        )

    for tick in history:
        if tick.ts - start >= interval and bar:
            candles.append(close_bar(bar))
            bar = []
            start = tick.ts
        bar.append(tick)
    if bar:
        candles.append(close_bar(bar))
    return candles


def linear_slope(ys: Sequence[float]) -> float:
    n = len(ys)
    if n < 3:
        return 0.0
    sx = sum(range(n))
    sy = sum(ys)
    sxy = sum(i * y for i, y in enumerate(ys))
    sx2 = sum(i * i for i in range(n))
    denom = n * sx2 - sx * sx
    if denom == 0:
        return 0.0
    return (n * sxy - sx * sy) / denom


def _local_extrema(candles: Sequence[Candle]) -> tuple[list[tuple[int, float]], list[tuple[int, float]]]:
    highs, lows = [], []
    for i in range(1, len(candles) - 1):
        c, a, b = candles[i], candles[i - 1], candles[i + 1]
        if c.high >= a.high and c.high >= b.high:
            highs.append((i, c.high))
        if c.low <= a.low and c.low <= b.low:
            lows.append((i, c.low))
    return highs, lows


def detect_head_and_shoulders(candles: Sequence[Candle]) -> ChartPattern | None:
    if len(candles) < 15:
        return None
    peaks: list[tuple[int, float]] = []
    troughs: list[tuple[int, float]] = []
    for i in range(2, len(candles) - 2):
        around = [candles[j] for j in (i - 2, i - 1, i + 1, i + 2)]
        if all(candles[i].high > c.high for c in around):
            peaks.append((i, candles[i].high))
        if all(candles[i].low < c.low for c in around):
            troughs.append((i, candles[i].low))
    current = candles[-1].close

    for i in range(len(peaks) - 2):
        ls, head, rs = peaks[i], peaks[i + 1], peaks[i + 2]
        if head[1] > ls[1] and head[1] > rs[1] and abs(ls[1] - rs[1]) < ls[1] * 0.003:
            neck = [t[1] for t in troughs if ls[0] < t[0] < rs[0]]
            neckline = sum(neck) / len(neck) if neck else min(ls[1], rs[1])
            if current < neckline:
                return ChartPattern("head-shoulders", -1, 0.75, 1.5)
            if rs[0] >= len(candles) - 5:
                return ChartPattern("head-shoulders-forming", -1, 0.45, 1.0)

    for i in range(len(troughs) - 2):
        ls, head, rs = troughs[i], troughs[i + 1], troughs[i + 2]
        if head[1] < ls[1] and head[1] < rs[1] and abs(ls[1] - rs[1]) < ls[1] * 0.003:
            neck = [p[1] for p in peaks if ls[0] < p[0] < rs[0]]
            neckline = sum(neck) / len(neck) if neck else max(ls[1], rs[1])
            if current > neckline:
                return ChartPattern("inv-head-shoulders", 1, 0.75, 1.5)
            if rs[0] >= len(candles) - 5:
                return ChartPattern("inv-hs-forming", 1, 0.45, 1.0)
    return None


def detect_double_top_bottom(candles: Sequence[Candle]) -> ChartPattern | None:
    recent = list(candles[-20:])
    if len(recent) < 10:
        return None
    highs, lows = _local_extrema(recent)
    current = recent[-1].close

    if len(highs) >= 2:
        (i1, h1), (i2, h2) = highs[-2], highs[-1]
        if abs(h1 - h2) < h1 * 0.002 and i2 - i1 >= 3:
            valley = min(c.low for c in recent[i1:i2 + 1])
            if current < valley:
                return ChartPattern("double-top", -1, 0.7, 1.3)
            if current < (h1 + h2) / 2:
                return ChartPattern("double-top-forming", -1, 0.4, 0.8)

    if len(lows) >= 2:
        (i1, l1), (i2, l2) = lows[-2], lows[-1]
        if abs(l1 - l2) < l1 * 0.002 and i2 - i1 >= 3:
            peak = max(c.high for c in recent[i1:i2 + 1])
            if current > peak:
                return ChartPattern("double-bottom", 1, 0.7, 1.3)
            if current > (l1 + l2) / 2:
                return ChartPattern("double-bottom-forming", 1, 0.4, 0.8)
    return None


def detect_triple_top_bottom(candles: Sequence[Candle]) -> ChartPattern | None:
    if len(candles) < 15:
        return None
    recent = list(candles[-30:])
    highs, lows = _local_extrema(recent)
    current = recent[-1].close

    if len(highs) >= 3:
        trio = highs[-3:]
        avg = sum(p for _, p in trio) / 3
        if all(abs(p - avg) < avg * 0.003 for _, p in trio):
            support = min(c.low for c in recent[trio[0][0]:trio[2][0] + 1])
            if current < support:
                return ChartPattern("triple-top", -1, 0.8, 1.5)

    if len(lows) >= 3:
        trio = lows[-3:]
        avg = sum(p for _, p in trio) / 3
        if all(abs(p - avg) < avg * 0.003 for _, p in trio):
            resistance = max(c.high for c in recent[trio[0][0]:trio[2][0] + 1])
            if current > resistance:
                return ChartPattern("triple-bottom", 1, 0.8, 1.5)
    return None


def _normalized_slopes(recent: Sequence[Candle]) -> tuple[float, float]:
    avg = sum((c.high + c.low) / 2 for c in recent) / len(recent)
    return linear_slope([c.high for c in recent]) / avg, linear_slope([c.low for c in recent]) / avg


def detect_channel(candles: Sequence[Candle]) -> ChartPattern | None:
    if len(candles) < 12:
        return None
    recent = list(candles[-20:])
    high_slope, low_slope = _normalized_slopes(recent)
    diff = abs(high_slope - low_slope)
    avg_slope = (high_slope + low_slope) / 2
    if diff >= abs(avg_slope) * 0.5 + 0.0001:
        return None
    if avg_slope > 0.0003:
        return ChartPattern("ascending-channel", 1, 0.55, 0.8)
    if avg_slope < -0.0003:
        return ChartPattern("descending-channel", -1, 0.55, 0.8)
    return ChartPattern("range-channel", 0, 0.4, 0.3)


def detect_triangle(candles: Sequence[Candle]) -> ChartPattern | None:
    if len(candles) < 12:
        return None
    recent = list(candles[-20:])
    high_slope, low_slope = _normalized_slopes(recent)
    highs_falling = high_slope < -0.0001
    lows_rising = low_slope > 0.0001
    highs_flat = abs(high_slope) < 0.0001
    lows_flat = abs(low_slope) < 0.0001

    first_range = recent[0].high - recent[0].low
    last_range = recent[-1].high - recent[-1].low
    if not last_range < first_range * 0.7:
        return None
    if highs_flat and lows_rising:
        return ChartPattern("ascending-triangle", 1, 0.6, 1.2)
    if highs_falling and lows_flat:
        return ChartPattern("descending-triangle", -1, 0.6, 1.2)
    if highs_falling and lows_rising:
        momentum = candles[-1].close - candles[-4].close
        return ChartPattern("symmetric-triangle", 1 if momentum > 0 else -1, 0.45, 0.8)
    return None


def detect_flag(candles: Sequence[Candle]) -> ChartPattern | None:
    if len(candles) < 12:
        return None
    pole_end = int(len(candles) * 0.4)
    pole = candles[:pole_end]
    flag = candles[pole_end:]
    if len(pole) < 3 or len(flag) < 4:
        return None

    pole_move = pole[-1].close - pole[0].open
    pole_pct = abs(pole_move) / pole[0].open
    if pole_pct < 0.001:
        return None
    pole_dir = 1 if pole_move > 0 else -1
    flag_move = flag[-1].close - flag[0].open
    flag_pct = abs(flag_move) / flag[0].open
    flag_dir = 1 if flag_move > 0 else -1

    if flag_dir == -pole_dir and pole_pct * 0.05 < flag_pct < pole_pct * 0.5:
        flag_range = max(c.high for c in flag) - min(c.low for c in flag)
        pole_range = max(c.high for c in pole) - min(c.low for c in pole)
        if flag_range < pole_range * 0.6:
            return ChartPattern("bull-flag" if pole_dir > 0 else "bear-flag", pole_dir, 0.6, 1.1)
    return None


def detect_breakout(candles: Sequence[Candle]) -> ChartPattern | None:
    if len(candles) < 10:
        return None
    base = candles[3:-3]
    tail = candles[-3:]
    if len(base) < 4:
        return None
    top = max(c.high for c in base)
    bottom = min(c.low for c in base)
    span = top - bottom
    if span <= 0:
        return None

    current = tail[-1].close
    base_vol = sum(c.volume for c in base) / len(base)
    tail_vol = sum(c.volume for c in tail) / len(tail)
    confirmed = base_vol > 0 and tail_vol / base_vol > 1.3
    conf, weight = (0.7, 1.3) if confirmed else (0.5, 0.9)
    if current > top + span * 0.01:
        return ChartPattern("breakout-up", 1, conf, weight)
    if current < bottom - span * 0.01:
        return ChartPattern("breakout-down", -1, conf, weight)
    return None


def detect_trend_structure(candles: Sequence[Candle]) -> ChartPattern | None:
    if len(candles) < 8:
        return None
    recent = list(candles[-12:])
    seg = len(recent) // 3
    segs = [recent[:seg], recent[seg:seg * 2], recent[seg * 2:]]
    highs = [max(c.high for c in s) for s in segs]
    lows = [min(c.low for c in s) for s in segs]

    hh = highs[2] > highs[1] > highs[0]
    hl = lows[2] > lows[1] > lows[0]
    lh = highs[2] < highs[1] < highs[0]
    ll = lows[2] < lows[1] < lows[0]
    if hh and hl:
        return ChartPattern("uptrend-hh-hl", 1, 0.6, 1.0)
    if lh and ll:
        return ChartPattern("downtrend-lh-ll", -1, 0.6, 1.0)
    if hh:
        return ChartPattern("weak-uptrend", 1, 0.35, 0.5)
    if ll:
        return ChartPattern("weak-downtrend", -1, 0.35, 0.5)
    return None


DETECTORS: tuple[Callable[[Sequence[Candle]], ChartPattern | None], ...] = (
    detect_head_and_shoulders,
    detect_double_top_bottom,
    detect_triple_top_bottom,
    detect_channel,
    detect_triangle,
    detect_flag,
    detect_breakout,
    detect_trend_structure,
)


def analyze_chart(history: Sequence[PriceObservation], side: str) -> ChartRead:
    """Run every detector over 30s candles and fold them into a directional read."""
    if len(history) < 60:
        return ChartRead()
    candles = build_candles(history, 30.0)
    if len(candles) < 10:
        return ChartRead()

    want = side_direction(side)
    patterns = tuple(p for p in (d(candles) for d in DETECTORS) if p is not None)
    bias = 0.0
    best = 0.0
    hold = exit_ = False
    reason = "no-pattern"
    for p in patterns:
        bias += p.direction * p.confidence * p.weight
        if p.confidence > best:
            best = p.confidence
            reason = p.name
        if p.direction == want and p.confidence > 0.5:
            hold = True
        if p.direction == -want and p.confidence > 0.6:
            exit_ = True
            reason = f"{p.name}-against"
    return ChartRead(
        patterns=patterns,
        bias=max(-1.0, min(1.0, bias)),
        hold_signal=hold,
        exit_signal=exit_,
        reason=reason,
        confidence=best,
    )
