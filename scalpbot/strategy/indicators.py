from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from scalpbot.data.price_history import PriceObservation

RSI_OVERBOUGHT = 80.0
RSI_OVERSOLD = 20.0


@dataclass(frozen=True)
class Bollinger:
    position: int = 0
    percent_b: float = 0.5
    upper: float = 0.0
    lower: float = 0.0
    mean: float = 0.0
    sd: float = 0.0


@dataclass(frozen=True)
class Volatility:
    current: float = 0.0
    average: float = 0.0
    regime: str = "unknown"

    @property
    def high(self) -> bool:
        return self.regime == "high"


@dataclass(frozen=True)
class VolumeRatio:
    ratio: float = 1.0
    recent: float = 0.0
    average: float = 0.0


@dataclass(frozen=True)
class Consensus:
    consensus: int = 0
    agreement: float = 0.0


def rsi(prices: Sequence[float]) -> float:
    """Short-window RSI on oldest-first prices, clamped to [15, 85]; 50 when uninformative."""
    if len(prices) < 3:
        return 50.0
    changes = [b - a for a, b in zip(prices, prices[1:])]
    if max(abs(c) for c in changes) < 0.01:
        return 50.0
    avg_gain = sum(c for c in changes if c > 0) / len(changes)
    avg_loss = sum(-c for c in changes if c < 0) / len(changes)
    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 85.0
    if avg_gain == 0:
        return 15.0
    value = 100.0 - (100.0 / (1.0 + avg_gain / avg_loss))
    return max(15.0, min(85.0, value))


def bollinger(prices: Sequence[float], mult: float = 2.0) -> Bollinger:
    if len(prices) < 5:
        return Bollinger()
    mean = sum(prices) / len(prices)
    sd = math.sqrt(sum((p - mean) ** 2 for p in prices) / len(prices))
    if sd < mean * 0.00005:
        return Bollinger(upper=mean, lower=mean, mean=mean)
    upper = mean + mult * sd
    lower = mean - mult * sd
    current = prices[-1]
    percent_b = (current - lower) / (upper - lower)
    position = 1 if current > upper else -1 if current < lower else 0
    return Bollinger(position=position, percent_b=percent_b, upper=upper, lower=lower, mean=mean, sd=sd)


def _rms_returns(prices: Sequence[float]) -> float:
    returns = [(b - a) / a for a, b in zip(prices, prices[1:]) if a > 0]
    if not returns:
        return 0.0
    return math.sqrt(sum(r * r for r in returns) / len(returns))


def volatility(recent: Sequence[float], wide: Sequence[float], high_mult: float = 2.0) -> Volatility:
    if len(recent) < 3:
        return Volatility()
    current = _rms_returns(recent)
    average = _rms_returns(wide)
    regime = "high" if average > 0 and current > average * high_mult else "low"
    return Volatility(current=current, average=average, regime=regime)


def volume_ratio(history: Sequence[PriceObservation]) -> VolumeRatio:
    n = len(history)
    if n < 20:
        return VolumeRatio()
    recent_count = min(10, n // 4)
    recent = history[n - recent_count:]
    older = history[: n - recent_count]
    recent_avg = sum(o.volume for o in recent) / recent_count
    older_avg = sum(o.volume for o in older) / len(older)
    if older_avg <= 0:
        return VolumeRatio(ratio=1.0, recent=recent_avg, average=0.0)
    return VolumeRatio(ratio=recent_avg / older_avg, recent=recent_avg, average=older_avg)


def consensus(directions: Sequence[int]) -> Consensus:
    dirs = [d for d in directions if d != 0]
    if len(dirs) < 2:
        return Consensus()
    total = sum(dirs)
    sign = 1 if total > 0 else -1 if total < 0 else 0
    return Consensus(consensus=sign, agreement=abs(total) / len(dirs))
