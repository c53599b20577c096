from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class PriceObservation:
    price: float
    volume: float
    ts: float


class PriceHistoryStore:
    """Bounded per-key price/volume rings with time-indexed lookup.

    Keys are asset symbols (``"BTC"``) or outcome token ids. Ticks arriving within
    ``dedup_window`` seconds of the newest observation are coalesced into it: the
    latest price wins and volume accumulates.
    """

    def __init__(
        self,
        *,
        capacity: int = 7200,
        dedup_window: float = 0.5,
        max_gap: float = 120.0,
        clock: Callable[[], float] = time.time,
    ):
        self.capacity = max(1, int(capacity))
        self.dedup_window = max(0.0, float(dedup_window))
        self.max_gap = float(max_gap)
        self.clock = clock
        self._buffers: dict[str, deque[PriceObservation]] = {}

    def record(self, key: str, price: float, volume: float = 0.0, ts: float | None = None) -> bool:
        if not key or price is None or not math.isfinite(price) or price <= 0:
            return False
        ts = self.clock() if ts is None else float(ts)
        volume = max(0.0, float(volume or 0.0))
        buf = self._buffers.get(key)
        if buf is None:
            buf = deque(maxlen=self.capacity)
            self._buffers[key] = buf
        if buf:
            last = buf[-1]
            if ts < last.ts:
                return False
            if ts - last.ts < self.dedup_window:
                buf[-1] = PriceObservation(price=float(price), volume=last.volume + volume, ts=ts)
                return True
        buf.append(PriceObservation(price=float(price), volume=volume, ts=ts))
        return True

    def latest(self, key: str) -> float | None:
        buf = self._buffers.get(key)
        return buf[-1].price if buf else None

    def latest_ts(self, key: str) -> float | None:
        buf = self._buffers.get(key)
        return buf[-1].ts if buf else None

    def first_ts(self, key: str) -> float | None:
        buf = self._buffers.get(key)
        return buf[0].ts if buf else None

    def data_age(self, key: str, now: float | None = None) -> float:
        first = self.first_ts(key)
        if first is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, now - first)

    def size(self, key: str) -> int:
        return len(self._buffers.get(key) or ())

    def history(self, key: str) -> list[PriceObservation]:
        return list(self._buffers.get(key) or ())

    def keys(self) -> list[str]:
        return list(self._buffers)

    def at(self, key: str, seconds_ago: float, now: float | None = None) -> float | None:
        buf = self._buffers.get(key)
        if not buf:
            return None
        now = self.clock() if now is None else now
        target = now - seconds_ago
        best = buf[-1]
        best_dist = abs(best.ts - target)
        for i in range(len(buf) - 2, -1, -1):
            d = abs(buf[i].ts - target)
            if d < best_dist:
                best, best_dist = buf[i], d
            elif buf[i].ts < target:
                break
        if best_dist >= self.max_gap:
            return None
        return best.price

    def momentum(self, key: str, seconds_ago: float, now: float | None = None) -> float:
        cur = self.latest(key)
        past = self.at(key, seconds_ago, now)
        if cur is None or past is None or past <= 0:
            return 0.0
        return (cur - past) / past

    def is_stale(self, key: str, max_age: float, now: float | None = None) -> bool:
        last = self.latest_ts(key)
        if last is None:
            return True
        now = self.clock() if now is None else now
        return (now - last) > max_age

    def drop_stale(self, max_age: float, now: float | None = None) -> list[str]:
        now = self.clock() if now is None else now
        dropped = [k for k, buf in self._buffers.items() if not buf or now - buf[-1].ts > max_age]
        for k in dropped:
            del self._buffers[k]
        return dropped

    def prune(self, keep: Iterable[str]) -> list[str]:
        wanted = set(keep)
        dropped = [k for k in self._buffers if k not in wanted]
        for k in dropped:
            del self._buffers[k]
        return dropped

    def to_dict(self) -> dict[str, list[list[float]]]:
        return {k: [[o.price, o.volume, o.ts] for o in buf] for k, buf in self._buffers.items()}

    def load_dict(self, raw: dict[str, list[list[float]]]) -> None:
        for key, rows in (raw or {}).items():
            for row in rows:
                if len(row) >= 3:
                    self.record(key, float(row[0]), float(row[1]), float(row[2]))
