from __future__ import annotations

import re
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any

from scalpbot.config.trading import TIMEFRAME_SECS

UP = "UP"
DOWN = "DOWN"
SIDES = (UP, DOWN)

_SIGNAL_CLASS_RE = re.compile(r"(bull|bear)-(strong|mid|weak)")


def opposite(side: str) -> str:
    return DOWN if side == UP else UP


def side_direction(side: str) -> int:
    return 1 if side == UP else -1


class InvariantViolation(RuntimeError):
    """Raised when a state mutation would break a bankroll/position contract."""


class PositionState(str, Enum):
    OPEN = "OPEN"
    CLOSED_PROFIT = "CLOSED_PROFIT"
    CLOSED_STOP = "CLOSED_STOP"
    CLOSED_FORCED = "CLOSED_FORCED"
    CLOSED_RESOLVED = "CLOSED_RESOLVED"
    CLOSED_SALVAGE = "CLOSED_SALVAGE"

    @property
    def closed(self) -> bool:
        return self is not PositionState.OPEN


@dataclass(frozen=True)
class Market:
    id: str
    asset: str
    timeframe: str
    end_time: float
    up_token: str
    down_token: str
    up_price: float = 0.0
    down_price: float = 0.0
    question: str = ""
    slug: str = ""

    @property
    def total_secs(self) -> int:
        return TIMEFRAME_SECS.get(self.timeframe, 900)

    def secs_left(self, now: float) -> float:
        return self.end_time - now

    def token_for(self, side: str) -> str:
        return self.up_token if side == UP else self.down_token

    def price_for(self, side: str) -> float:
        if side == UP:
            return self.up_price
        if self.down_price > 0:
            return self.down_price
        return 1.0 - self.up_price if self.up_price > 0 else 0.0

    def with_prices(self, up_price: float, down_price: float) -> Market:
        return replace(self, up_price=up_price, down_price=down_price)


@dataclass(frozen=True)
class PatternKey:
    asset: str
    side: str
    signal_class: str

    def __str__(self) -> str:
        return f"{self.asset}-{self.side}-{self.signal_class}"

    @classmethod
    def parse(cls, text: str) -> PatternKey:
        asset, side, signal_class = text.split("-", 2)
        return cls(asset=asset, side=side, signal_class=signal_class)


@dataclass(frozen=True)
class Signal:
    direction: int = 0
    strength: float = 0.0
    reason: str = "no-data"
    rsi: float = 50.0

    @property
    def signal_class(self) -> str:
        m = _SIGNAL_CLASS_RE.search(self.reason)
        return m.group(0) if m else "flat"

    def favors(self, side: str) -> bool:
        return self.direction != 0 and self.direction == side_direction(side)


@dataclass(frozen=True)
class PredictiveEdge:
    edge: float = 0.0
    catching_up: bool = False
    source: str = "none"
    implied: float = 0.5
    divergence: float = 0.0


@dataclass(frozen=True)
class EntryIntent:
    market: Market
    side: str
    token_id: str
    price: float
    stake: float
    tier: str
    conviction: float
    pattern_key: PatternKey
    reason: str
    target_pct: float
    model_prob: float
    kelly: float
    signal_strength: float
    crypto_price: float | None = None


@dataclass
class Position:
    market_id: str
    asset: str
    timeframe: str
    side: str
    token_id: str
    entry_price: float
    size: float
    cost_basis: float
    target_profit: float
    crypto_price_at_entry: float | None
    opened_at: float
    end_time: float
    conviction: float = 0.0
    bet_tier: str = ""
    pattern_key: PatternKey | None = None
    entry_reason: str = ""
    order_id: str = ""
    mid_at_entry: float = 0.0
    slippage: float = 0.0
    current_price: float = 0.0
    peak_gain: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    latency_hold_since: float | None = None
    state: PositionState = PositionState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state is PositionState.OPEN

    @property
    def total_secs(self) -> int:
        return TIMEFRAME_SECS.get(self.timeframe, 900)

    def secs_left(self, now: float) -> float:
        return self.end_time - now

    def age(self, now: float) -> float:
        return now - self.opened_at

    def mark(self, price: float) -> None:
        if price <= 0:
            return
        self.current_price = price
        self.unrealized_pnl = (price - self.entry_price) * self.size
        self.peak_gain = max(self.peak_gain, self.unrealized_pnl)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["pattern_key"] = str(self.pattern_key) if self.pattern_key else None
        out["state"] = self.state.value
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Position:
        data = dict(raw)
        pk = data.get("pattern_key")
        data["pattern_key"] = PatternKey.parse(pk) if pk else None
        data["state"] = PositionState(data.get("state", PositionState.OPEN.value))
        return cls(**data)


@dataclass(frozen=True)
class ClosedTrade:
    market_id: str
    asset: str
    timeframe: str
    side: str
    entry_price: float
    exit_price: float
    size: float
    cost_basis: float
    pnl: float
    reason: str
    state: str
    opened_at: float
    closed_at: float
    conviction: float = 0.0
    bet_tier: str = ""
    pattern_key: str = ""
    slippage: float = 0.0

    @property
    def won(self) -> bool:
        return self.pnl >= 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ClosedTrade:
        return cls(**raw)


@dataclass
class ExecutionStats:
    fills: int = 0
    failures: int = 0
    total_slippage: float = 0.0
    total_spread_cost: float = 0.0

    def record_fill(self, slippage: float, spread_cost: float) -> None:
        self.fills += 1
        self.total_slippage += slippage
        self.total_spread_cost += spread_cost

    def record_failure(self) -> None:
        self.failures += 1

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["avg_slippage"] = self.total_slippage / self.fills if self.fills else 0.0
        attempts = self.fills + self.failures
        out["fill_rate"] = self.fills / attempts if attempts else 0.0
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecutionStats:
        return cls(
            fills=int(raw.get("fills", 0)),
            failures=int(raw.get("failures", 0)),
            total_slippage=float(raw.get("total_slippage", 0.0)),
            total_spread_cost=float(raw.get("total_spread_cost", 0.0)),
        )
