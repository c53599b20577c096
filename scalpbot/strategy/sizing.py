from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BetTier:
    name: str
    min_conviction: float
    max_conviction: float
    pct_min: float = 0.0
    pct_max: float = 0.0
    fixed: float = 0.0


DEFAULT_TIERS: tuple[BetTier, ...] = (
    BetTier("SCOUT", 0.00, 0.30, fixed=1.0),
    BetTier("SMALL", 0.30, 0.50, 0.15, 0.35),
    BetTier("MEDIUM", 0.50, 0.70, 0.35, 0.60),
    BetTier("HIGH", 0.70, 0.85, 0.60, 0.85),
    BetTier("AGGRESSIVE", 0.85, 0.95, 0.85, 0.98),
    BetTier("ALL-IN", 0.95, 1.00, 0.90, 0.98),
)


@dataclass(frozen=True)
class BetSize:
    stake: float
    tier: str


class BetSizer:
    """Maps conviction onto a tier and a stake, then applies the exposure caps."""

    def __init__(
        self,
        tiers: tuple[BetTier, ...] = DEFAULT_TIERS,
        *,
        min_stake: float = 1.0,
        max_bankroll_fraction: float = 0.98,
    ):
        self.tiers = tiers
        self.min_stake = min_stake
        self.max_bankroll_fraction = max_bankroll_fraction

    def tier_for(self, conviction: float) -> BetTier:
        if conviction >= self.tiers[-1].min_conviction:
            return self.tiers[-1]
        for t in self.tiers:
            if t.min_conviction <= conviction < t.max_conviction:
                return t
        return self.tiers[0]

    def base(self, conviction: float, bankroll: float) -> BetSize:
        tier = self.tier_for(conviction)
        if tier.fixed > 0:
            stake = tier.fixed
        else:
            span = tier.max_conviction - tier.min_conviction
            pos = (conviction - tier.min_conviction) / span if span > 0 else 0.5
            stake = bankroll * (tier.pct_min + pos * (tier.pct_max - tier.pct_min))
        stake = max(self.min_stake, min(stake, bankroll * self.max_bankroll_fraction))
        return BetSize(stake=round(stake, 2), tier=tier.name)

    def size(
        self,
        conviction: float,
        bankroll: float,
        *,
        timeframe_cap: float,
        open_positions: int = 0,
        max_positions: int = 1,
        high_volatility: bool = False,
    ) -> BetSize:
        bet = self.base(conviction, bankroll)
        stake = bet.stake
        if high_volatility and stake > self.min_stake:
            stake *= 0.5
        if max_positions > 1:
            slots = max(1, max_positions - open_positions)
            stake = min(stake, bankroll / slots)
        stake = min(stake, timeframe_cap)
        stake = max(self.min_stake, stake)
        return BetSize(stake=round(stake, 2), tier=bet.tier)
