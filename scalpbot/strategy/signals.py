from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from scalpbot.data.price_history import PriceHistoryStore
from scalpbot.domain import PredictiveEdge, Signal, side_direction
from scalpbot.strategy import indicators
from scalpbot.strategy.indicators import RSI_OVERBOUGHT, RSI_OVERSOLD, Bollinger, Consensus, Volatility, VolumeRatio

LOOKBACKS = (30, 90, 180, 300, 600)
LOOKBACK_WEIGHTS = (0.30, 0.25, 0.20, 0.15, 0.10)


@dataclass(frozen=True)
class SignalConfig:
    mom_weak: float = 0.0002
    mom_strong: float = 0.002
    min_samples: int = 3
    min_data_age: float = 30.0
    bear_boost: float = 1.2
    rsi_period: int = 4
    bb_period: int = 20
    bb_mult: float = 2.0
    sample_spacing: float = 30.0
    vol_high_mult: float = 2.0
    catch_up: float = 0.01
    predicted_fresh: float = 15.0
    oracle_fresh: float = 60.0
    default_lag: float = 30.0
    price_fresh: float = 120.0


@dataclass
class _Quote:
    price: float
    ts: float


class SignalEngine:
    """Momentum signal, indicators and predictive edge per asset."""

    def __init__(
        self,
        prices: PriceHistoryStore,
        cfg: SignalConfig | None = None,
        *,
        assets: Sequence[str] = ("BTC", "ETH", "SOL"),
    ):
        self.prices = prices
        self.cfg = cfg or SignalConfig()
        self.assets = tuple(assets)
        self._oracle: dict[str, _Quote] = {}
        self._predicted: dict[str, _Quote] = {}
        self._oracle_lag: dict[str, float] = {}

    # feeds

    def on_oracle_price(self, asset: str, price: float, oracle_ts: float | None = None, now: float | None = None) -> None:
        if price <= 0:
            return
        now = self.prices.clock() if now is None else now
        self._oracle[asset] = _Quote(price=price, ts=now)
        if oracle_ts:
            self._oracle_lag[asset] = max(0.0, now - oracle_ts)

    def on_predicted_price(self, asset: str, price: float, now: float | None = None) -> None:
        if price <= 0:
            return
        now = self.prices.clock() if now is None else now
        self._predicted[asset] = _Quote(price=price, ts=now)

    def oracle_price(self, asset: str, now: float | None = None) -> float | None:
        q = self._oracle.get(asset)
        now = self.prices.clock() if now is None else now
        if q is None or now - q.ts > self.cfg.oracle_fresh:
            return None
        return q.price

    def predicted_price(self, asset: str, now: float | None = None) -> float | None:
        q = self._predicted.get(asset)
        now = self.prices.clock() if now is None else now
        if q is None or now - q.ts > self.cfg.predicted_fresh:
            return None
        return q.price

    def oracle_lag(self, asset: str) -> float:
        lag = self._oracle_lag.get(asset)
        return lag if lag else self.cfg.default_lag

    def exchange_price(self, asset: str, now: float | None = None) -> float | None:
        """Latest exchange price, or None once the feed has been silent for ``price_fresh`` seconds."""
        if self.prices.is_stale(asset, self.cfg.price_fresh, now):
            return None
        return self.prices.latest(asset)

    def crypto_price(self, asset: str, now: float | None = None) -> float | None:
        """Best estimate of the underlying price: predicted, then exchange, then oracle."""
        predicted = self.predicted_price(asset, now)
        if predicted:
            return predicted
        latest = self.exchange_price(asset, now)
        if latest:
            return latest
        return self.oracle_price(asset, now)

    def divergence(self, asset: str, now: float | None = None) -> float | None:
        latest = self.exchange_price(asset, now)
        oracle = self.oracle_price(asset, now)
        if latest is None or not oracle:
            return None
        return (latest - oracle) / oracle

    # indicators

    def _sampled(self, asset: str, count: int, now: float | None) -> list[float]:
        out = []
        for i in range(count, -1, -1):
            p = self.prices.at(asset, i * self.cfg.sample_spacing, now)
            if p:
                out.append(p)
        return out

    def rsi(self, asset: str, now: float | None = None) -> float:
        return indicators.rsi(self._sampled(asset, self.cfg.rsi_period, now))

    def bollinger(self, asset: str, now: float | None = None) -> Bollinger:
        return indicators.bollinger(self._sampled(asset, self.cfg.bb_period - 1, now), self.cfg.bb_mult)

    def volatility(self, asset: str, now: float | None = None) -> Volatility:
        return indicators.volatility(
            self._sampled(asset, 5, now),
            self._sampled(asset, 20, now),
            self.cfg.vol_high_mult,
        )

    def volume_ratio(self, asset: str) -> VolumeRatio:
        return indicators.volume_ratio(self.prices.history(asset))

    def consensus(self, now: float | None = None) -> Consensus:
        return indicators.consensus([self.raw(a, now).direction for a in self.assets])

    # signals

    def raw(self, asset: str, now: float | None = None) -> Signal:
        if self.prices.size(asset) < self.cfg.min_samples:
            return Signal(reason="no-data")
        now = self.prices.clock() if now is None else now
        age = self.prices.data_age(asset, now)
        if age < self.cfg.min_data_age:
            return Signal(reason="warming-up")
        if self.prices.is_stale(asset, self.cfg.price_fresh, now):
            return Signal(reason="stale")

        cur = self.prices.latest(asset) or 0.0
        moms = []
        prev = cur
        for lookback in LOOKBACKS:
            past = self.prices.at(asset, lookback, now) or prev
            moms.append((cur - past) / past if past else 0.0)
            prev = past
        value = sum(m * w for m, w in zip(moms, LOOKBACK_WEIGHTS))
        signs = [1 if m > 0 else -1 if m < 0 else 0 for m in moms[:4]]
        consistency = abs(sum(signs)) / len(signs)
        if abs(value) < self.cfg.mom_weak:
            return Signal(reason="flat")

        direction = 1 if value > 0 else -1
        strength = min(abs(value) / self.cfg.mom_strong, 1.0) * 0.6 + consistency * 0.4
        if age < 90:
            strength = min(strength, 0.4)
        elif age < 180:
            strength = min(strength, 0.7)
        return Signal(direction=direction, strength=strength, reason="")

    def signal(self, asset: str, now: float | None = None) -> Signal:
        raw = self.raw(asset, now)
        if raw.direction == 0:
            return Signal(reason=raw.reason or "flat")
        d = raw.direction
        strength = raw.strength
        boosts: list[str] = []

        rsi = self.rsi(asset, now)
        if (d > 0 and rsi > RSI_OVERBOUGHT) or (d < 0 and rsi < RSI_OVERSOLD):
            strength *= 1.15
            boosts.append("RSI")
        elif (d > 0 and rsi < 35) or (d < 0 and rsi > 65):
            strength *= 0.7

        bb = self.bollinger(asset, now)
        if bb.position != 0 and bb.position == d:
            strength *= 1.1
            boosts.append("BB")

        cross = self.consensus(now)
        if cross.consensus == d and cross.agreement >= 0.66:
            strength *= 1.15
            boosts.append("CROSS")
        elif cross.consensus != 0 and cross.consensus != d:
            strength *= 0.8

        if d < 0:
            strength *= self.cfg.bear_boost
            boosts.append("ASYM")

        vr = self.volume_ratio(asset)
        if vr.ratio > 2.0 and vr.average > 0:
            strength *= 1.2
            boosts.append("VOL")
        elif vr.ratio < 0.3 and vr.average > 0:
            strength *= 0.7

        strength = min(strength, 1.0)
        label = "strong" if strength > 0.7 else "mid" if strength > 0.4 else "weak"
        reason = f"{'bull' if d > 0 else 'bear'}-{label}"
        if boosts:
            reason += "+" + "+".join(boosts)
        return Signal(direction=d, strength=strength, reason=reason, rsi=rsi)

    def predictive_edge(self, asset: str, side: str, token_price: float, now: float | None = None) -> PredictiveEdge:
        """Momentum-implied probability versus the outcome token price.

        Sources in priority order: multi-exchange median against the oracle, the
        exchange feed against the oracle, momentum alone.
        """
        raw = self.raw(asset, now)
        if raw.direction == 0:
            return PredictiveEdge()

        predicted = self.predicted_price(asset, now)
        oracle = self.oracle_price(asset, now)
        if predicted and oracle:
            implied = self._implied_from_divergence(raw, (predicted - oracle) / oracle, asset, cap=0.25, exchange_boost=1.3)
            return self._edge(raw, side, token_price, implied, "multi-exchange", (predicted - oracle) / oracle)

        div = self.divergence(asset, now)
        if div is not None:
            implied = self._implied_from_divergence(raw, div, asset, cap=0.20, exchange_boost=1.0)
            return self._edge(raw, side, token_price, implied, "oracle", div)

        return self._edge(raw, side, token_price, 0.5 + raw.strength * 0.25, "exchange", 0.0)

    def _implied_from_divergence(self, raw: Signal, div: float, asset: str, *, cap: float, exchange_boost: float) -> float:
        implied = 0.5 + raw.strength * 0.20
        lag_factor = min(self.oracle_lag(asset) / 30.0, 1.5)
        aligned = (raw.direction > 0 and div > 0) or (raw.direction < 0 and div <= 0)
        if aligned:
            implied += min(abs(div) * 5 * lag_factor * exchange_boost, cap)
        elif abs(div) > 0.001:
            implied -= min(abs(div) * 3, 0.10)
        return max(0.30, min(0.95, implied))

    def _edge(self, raw: Signal, side: str, token_price: float, implied: float, source: str, div: float) -> PredictiveEdge:
        if raw.direction == side_direction(side):
            edge = implied - token_price
            return PredictiveEdge(edge=edge, catching_up=edge < self.cfg.catch_up, source=source, implied=implied, divergence=div)
        edge = -abs(token_price - (1.0 - implied))
        return PredictiveEdge(edge=edge, catching_up=False, source=source, implied=implied, divergence=div)
