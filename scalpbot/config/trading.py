from __future__ import annotations

from dataclasses import dataclass, field

TIMEFRAME_SECS = {"5m": 300, "15m": 900, "1h": 3600, "4h": 14400, "1d": 86400}
LONG_TIMEFRAMES = frozenset({"1h", "4h", "1d"})


@dataclass(frozen=True)
class TimeframeRules:
    stop_loss: float
    trail_lock: float
    profit_target: float
    hold_through_dips: bool
    liquidity_exit_secs: float
    force_exit_secs: float
    entry_buffer_secs: float
    stale_secs: float
    bet_cap: float
    min_flip_age: float
    min_strength: float
    pred_min_strength: float = 0.40
    pred_min_edge: float = 0.03


DEFAULT_RULES: dict[str, TimeframeRules] = {
    "5m": TimeframeRules(
        stop_loss=0.12, trail_lock=0.50, profit_target=0.08, hold_through_dips=False,
        liquidity_exit_secs=30, force_exit_secs=15, entry_buffer_secs=150, stale_secs=240,
        bet_cap=2.0, min_flip_age=30, min_strength=0.55, pred_min_strength=0.35, pred_min_edge=0.02,
    ),
    "15m": TimeframeRules(
        stop_loss=0.18, trail_lock=0.45, profit_target=0.12, hold_through_dips=False,
        liquidity_exit_secs=60, force_exit_secs=30, entry_buffer_secs=420, stale_secs=1800,
        bet_cap=5.0, min_flip_age=30, min_strength=0.40,
    ),
    "1h": TimeframeRules(
        stop_loss=0.28, trail_lock=0.35, profit_target=0.20, hold_through_dips=True,
        liquidity_exit_secs=120, force_exit_secs=60, entry_buffer_secs=1200, stale_secs=1800,
        bet_cap=10.0, min_flip_age=120, min_strength=0.35,
    ),
    "4h": TimeframeRules(
        stop_loss=0.35, trail_lock=0.30, profit_target=0.28, hold_through_dips=True,
        liquidity_exit_secs=240, force_exit_secs=120, entry_buffer_secs=3600, stale_secs=7200,
        bet_cap=10.0, min_flip_age=180, min_strength=0.33,
    ),
    "1d": TimeframeRules(
        stop_loss=0.40, trail_lock=0.25, profit_target=0.45, hold_through_dips=True,
        liquidity_exit_secs=600, force_exit_secs=300, entry_buffer_secs=72000, stale_secs=43200,
        bet_cap=10.0, min_flip_age=300, min_strength=0.30,
    ),
}

DEFAULT_ANNUAL_VOL = {"BTC": 0.50, "ETH": 0.60, "SOL": 0.80}


@dataclass(frozen=True)
class TradingConfig:
    """Tunable trading constants; per-timeframe tables live in ``timeframes``."""

    timeframes: dict[str, TimeframeRules] = field(default_factory=lambda: dict(DEFAULT_RULES))
    annual_vol: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_ANNUAL_VOL))
    default_vol: float = 0.50
    max_positions: int = 3
    min_stake: float = 1.0
    max_bankroll_fraction: float = 0.98
    min_entry_secs: float = 60.0
    entry_cooldown: float = 2.0
    entry_min_price: float = 0.15
    entry_max_price: float = 0.85
    kelly_fraction: float = 0.25
    daily_loss_limit: float = 6.0
    health_window: int = 30
    health_min_win_rate: float = 0.45
    arb_threshold: float = 0.97
    trail_min_peak: float = 0.015
    latency_hold_secs: float = 5.0
    slippage_penalty: float = 0.02
    reentry_cooldown: float = 45.0
    history_limit: int = 500
    win_epsilon: float = 0.05

    def rules(self, timeframe: str) -> TimeframeRules:
        return self.timeframes.get(timeframe) or self.timeframes["15m"]

    def vol(self, asset: str) -> float:
        return float(self.annual_vol.get(asset, self.default_vol))

    def is_long(self, timeframe: str) -> bool:
        return timeframe in LONG_TIMEFRAMES
