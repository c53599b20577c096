from __future__ import annotations

import math
from dataclasses import dataclass

from scipy.stats import norm

from scalpbot.config.trading import TradingConfig
from scalpbot.domain import UP, Position, Signal, side_direction

SECONDS_PER_YEAR = 365.25 * 24 * 3600


@dataclass(frozen=True)
class PriceSupport:
    probability: float
    token_prob: float
    bs_prob: float
    distance: float = 0.0
    distance_pct: float = 0.0
    direction_match: bool = False
    crypto_now: float = 0.0
    crypto_at_entry: float = 0.0

    @property
    def supports(self) -> bool:
        return self.probability > 0.55


@dataclass(frozen=True)
class Viability:
    viable: bool
    reason: str
    one_sigma: float = 0.0


class BinaryProbabilityModel:
    """Zero-drift N(d2) pricing of up/down outcomes, blended with the token price."""

    def __init__(self, cfg: TradingConfig | None = None):
        self.cfg = cfg or TradingConfig()

    def sigma(self, asset: str) -> float:
        return self.cfg.vol(asset)

    @staticmethod
    def probability_above(current: float, reference: float, secs_remaining: float, sigma: float) -> float:
        if not current or not reference or reference <= 0 or current <= 0:
            return 0.5
        if secs_remaining <= 0:
            return 0.99 if current > reference else 0.01
        t = secs_remaining / SECONDS_PER_YEAR
        d2 = (math.log(current / reference) - 0.5 * sigma * sigma * t) / (sigma * math.sqrt(t))
        return float(norm.cdf(d2))

    def one_sigma_move(self, asset: str, price: float, secs_remaining: float) -> float:
        t = max(secs_remaining, 1.0) / SECONDS_PER_YEAR
        return price * self.sigma(asset) * math.sqrt(t)

    def price_support(self, pos: Position, crypto_now: float | None, now: float) -> PriceSupport:
        token_prob = pos.current_price or pos.entry_price
        at_entry = pos.crypto_price_at_entry
        if not crypto_now or not at_entry:
            return PriceSupport(probability=token_prob, token_prob=token_prob, bs_prob=0.5)

        secs_left = max(0.0, pos.secs_left(now))
        raw = self.probability_above(crypto_now, at_entry, secs_left, self.sigma(pos.asset))
        bs_prob = raw if pos.side == UP else 1.0 - raw
        distance = abs(crypto_now - at_entry)
        match = (crypto_now > at_entry) if pos.side == UP else (crypto_now < at_entry)
        return PriceSupport(
            probability=token_prob * 0.6 + bs_prob * 0.4,
            token_prob=token_prob,
            bs_prob=bs_prob,
            distance=distance,
            distance_pct=distance / at_entry,
            direction_match=match,
            crypto_now=crypto_now,
            crypto_at_entry=at_entry,
        )

    def sigmas_needed(self, pos: Position, support: PriceSupport, secs_remaining: float) -> float:
        """Standard deviations the underlying must move to get back to the entry side; 0 when already there."""
        if not support.crypto_now or support.direction_match:
            return 0.0
        one_sigma = self.one_sigma_move(pos.asset, support.crypto_now, secs_remaining)
        if one_sigma <= 0:
            return 0.0
        return support.distance / one_sigma

    def entry_viability(self, asset: str, entry_price: float, secs_left: float, crypto_now: float | None) -> Viability:
        if not crypto_now:
            return Viability(True, "no-crypto-data")
        mins_left = secs_left / 60.0
        t = max(secs_left, 0.0) / SECONDS_PER_YEAR
        sigma = self.sigma(asset)
        one_sigma = crypto_now * sigma * math.sqrt(t)

        if entry_price < 0.15 and mins_left < 120:
            return Viability(False, f"token@{entry_price * 100:.0f}%+{mins_left:.0f}min=dead-money", one_sigma)
        if entry_price < 0.08:
            return Viability(False, f"token@{entry_price * 100:.0f}%=market-says-no", one_sigma)
        if entry_price < 0.25 and mins_left < 60:
            return Viability(False, f"cheap-token+{mins_left:.0f}min=no-exit", one_sigma)
        if one_sigma > 0 and 0 < entry_price < 1:
            # distance from the strike implied by the token price, in standard deviations
            sigmas = abs(float(norm.ppf(entry_price)))
            if sigmas > 4 and mins_left < 30:
                return Viability(False, f"need-{sigmas:.1f}sigma-in-{mins_left:.0f}min", one_sigma)
        return Viability(True, "OK", one_sigma)


def estimate_probability(signal: Signal, side: str, market_price: float, secs_left: float, total_secs: float) -> float:
    """Model win probability: market price nudged by the signal and by late-window drift."""
    prob = market_price
    if signal.direction == side_direction(side):
        prob = min(0.95, market_price + signal.strength * 0.15)
    elif signal.direction != 0:
        prob = max(0.05, market_price - signal.strength * 0.10)
    if total_secs > 0:
        elapsed = 1.0 - secs_left / total_secs
        if elapsed > 0.6 and market_price > 0.7:
            prob = min(0.95, prob + (elapsed - 0.6) * 0.1)
        elif elapsed > 0.6 and market_price < 0.3:
            prob = max(0.05, prob - (elapsed - 0.6) * 0.1)
    return prob


def kelly_fraction(model_prob: float, market_price: float, fraction: float = 0.25) -> float:
    if model_prob <= market_price or model_prob >= 1.0 or market_price <= 0:
        return 0.0
    q = model_prob / (1.0 - model_prob)
    p = market_price / (1.0 - market_price)
    return max(0.0, ((q - p) / (1.0 + q)) * fraction)
