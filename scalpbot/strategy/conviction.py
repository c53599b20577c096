from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from scalpbot.domain import UP, PatternKey, PredictiveEdge, Signal
from scalpbot.strategy.indicators import RSI_OVERBOUGHT, RSI_OVERSOLD, Bollinger, Consensus, VolumeRatio

PROBE_WINDOW = 20
PROBE_MIN_SAMPLES = 3
PROBE_WIN_THRESHOLD = 0.55
GLOBAL_MIN_TRADES = 8
GLOBAL_MIN_WIN_RATE = 0.55
STRONG_EDGE = 0.05
MIN_EDGE = 0.03


@dataclass
class ProbeRecord:
    wins: int = 0
    losses: int = 0
    results: deque[bool] = field(default_factory=lambda: deque(maxlen=PROBE_WINDOW))

    @property
    def samples(self) -> int:
        return len(self.results)

    @property
    def win_rate(self) -> float:
        total = self.wins + self.losses
        return self.wins / total if total else 0.0

    @property
    def recent_win_rate(self) -> float:
        return sum(self.results) / len(self.results) if self.results else 0.0

    @property
    def proven(self) -> bool:
        return self.samples >= PROBE_MIN_SAMPLES and self.recent_win_rate >= PROBE_WIN_THRESHOLD

    def record(self, won: bool) -> None:
        self.results.append(won)
        if won:
            self.wins += 1
        else:
            self.losses += 1

    def to_dict(self) -> dict[str, Any]:
        return {"wins": self.wins, "losses": self.losses, "results": list(self.results)}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ProbeRecord:
        rec = cls(wins=int(raw.get("wins", 0)), losses=int(raw.get("losses", 0)))
        rec.results.extend(bool(r) for r in raw.get("results", []))
        return rec


@dataclass(frozen=True)
class TrackRecord:
    samples: int
    win_rate: float

    @property
    def proven(self) -> bool:
        return self.samples >= GLOBAL_MIN_TRADES and self.win_rate >= GLOBAL_MIN_WIN_RATE


class ProbeBook:
    """Rolling win/loss history per pattern key."""

    def __init__(self) -> None:
        self._records: dict[PatternKey, ProbeRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, key: PatternKey) -> ProbeRecord:
        return self._records.get(key) or ProbeRecord()

    def record(self, key: PatternKey, won: bool) -> None:
        self._records.setdefault(key, ProbeRecord()).record(won)

    def items(self) -> Iterable[tuple[PatternKey, ProbeRecord]]:
        return self._records.items()

    def proven_count(self) -> int:
        return sum(1 for r in self._records.values() if r.proven)

    def global_record(self) -> TrackRecord:
        samples = sum(r.samples for r in self._records.values())
        wins = sum(sum(r.results) for r in self._records.values())
        return TrackRecord(samples=samples, win_rate=wins / samples if samples else 0.0)

    def to_dict(self) -> dict[str, Any]:
        return {str(k): r.to_dict() for k, r in self._records.items()}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> ProbeBook:
        book = cls()
        for key, rec in (raw or {}).items():
            book._records[PatternKey.parse(key)] = ProbeRecord.from_dict(rec)
        return book


def pattern_key(asset: str, side: str, signal: Signal, predictive: bool = False) -> PatternKey:
    prefix = "PRED-" if predictive else ""
    return PatternKey(asset=asset, side=side, signal_class=f"{prefix}{signal.signal_class}")


@dataclass(frozen=True)
class Evidence:
    """Inputs the conviction factors score; one snapshot per entry candidate."""

    side: str
    signal: Signal
    rsi: float
    bollinger: Bollinger
    consensus: Consensus
    volume: VolumeRatio
    edge: PredictiveEdge
    probe: ProbeRecord

    @property
    def direction(self) -> int:
        return 1 if self.side == UP else -1


Factor = tuple[float, str]


def signal_factor(ev: Evidence) -> Factor:
    s = ev.signal.strength
    return s, f"sig:{s * 100:.0f}%" if s > 0.7 else ""


def rsi_factor(ev: Evidence) -> Factor:
    d, rsi = ev.direction, ev.rsi
    if d > 0 and rsi > RSI_OVERBOUGHT:
        return 1.0, "RSI-OB"
    if d < 0 and rsi < RSI_OVERSOLD:
        return 1.0, "RSI-OS"
    if (d > 0 and rsi > 55) or (d < 0 and rsi < 45):
        return 8 / 15, ""
    if (d > 0 and rsi < 35) or (d < 0 and rsi > 65):
        return 0.0, "RSI-against"
    return 5 / 15, ""


def bollinger_factor(ev: Evidence) -> Factor:
    bb = ev.bollinger
    if bb.position != 0 and bb.position == ev.direction:
        return 1.0, "BB-break"
    if 0.3 < bb.percent_b < 0.7:
        return 0.5, ""
    return 0.2, ""


def consensus_factor(ev: Evidence) -> Factor:
    c = ev.consensus
    if c.consensus == ev.direction and c.agreement >= 0.66:
        return 1.0, "CROSS-agree"
    if c.consensus == ev.direction:
        return 10 / 15, ""
    if c.consensus == 0:
        return 5 / 15, ""
    return 0.0, "CROSS-disagree"


def volume_factor(ev: Evidence) -> Factor:
    v = ev.volume
    if v.ratio > 2.0 and v.average > 0:
        return 1.0, "VOL-surge"
    if v.ratio > 1.2:
        return 0.7, ""
    if v.ratio < 0.3 and v.average > 0:
        return 0.0, "VOL-dead"
    return 0.4, ""


def edge_factor(ev: Evidence) -> Factor:
    e = ev.edge.edge
    if e >= STRONG_EDGE:
        return 1.0, f"PRED:{e * 100:.0f}%"
    if e >= MIN_EDGE:
        return 10 / 15, "PRED-edge"
    if e >= 0.01:
        return 5 / 15, ""
    if e < 0:
        return 0.0, "PRED-against"
    return 3 / 15, ""


def probe_factor(ev: Evidence) -> Factor:
    p = ev.probe
    if p.samples < PROBE_MIN_SAMPLES:
        return 0.2, f"probing:{p.samples}/{PROBE_MIN_SAMPLES}" if p.samples else ""
    wr = p.recent_win_rate
    if wr >= 0.80:
        return 1.0, f"probed:{wr * 100:.0f}%"
    if wr >= 0.70:
        return 0.8, ""
    if wr >= 0.60:
        return 0.5, ""
    return 0.0, f"probe-bad:{wr * 100:.0f}%"


DEFAULT_WEIGHTS: tuple[tuple[Callable[[Evidence], Factor], float], ...] = (
    (signal_factor, 0.25),
    (rsi_factor, 0.15),
    (bollinger_factor, 0.10),
    (consensus_factor, 0.15),
    (volume_factor, 0.10),
    (edge_factor, 0.15),
    (probe_factor, 0.10),
)


@dataclass(frozen=True)
class Conviction:
    base: float
    value: float
    factors: tuple[str, ...]
    pattern_key: PatternKey
    probe: ProbeRecord


class ConvictionScorer:
    def __init__(self, weights: tuple[tuple[Callable[[Evidence], Factor], float], ...] = DEFAULT_WEIGHTS):
        total = sum(w for _, w in weights)
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"conviction weights must sum to 1.0, got {total}")
        self.weights = weights

    def base_score(self, ev: Evidence) -> tuple[float, tuple[str, ...]]:
        score = 0.0
        tags: list[str] = []
        for factor, weight in self.weights:
            value, tag = factor(ev)
            score += weight * max(0.0, min(1.0, value))
            if tag:
                tags.append(tag)
        return min(score, 1.0), tuple(tags)

    def score(self, ev: Evidence, key: PatternKey, multiplier: float = 1.0) -> Conviction:
        base, tags = self.base_score(ev)
        return Conviction(
            base=base,
            value=max(0.0, min(1.0, base * multiplier)),
            factors=tags,
            pattern_key=key,
            probe=ev.probe,
        )
