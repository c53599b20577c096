from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from scalpbot.data.http_service import HttpService
from scalpbot.data.markets import CLOB_API

DEFAULT_HALF_SPREAD = 0.005


@dataclass(frozen=True)
class OrderBook:
    mid: float
    best_bid: float
    best_ask: float
    spread: float
    bid_depth: float
    ask_depth: float
    ts: float = 0.0

    @property
    def half_spread(self) -> float:
        return self.spread / 2 if self.spread > 0 else DEFAULT_HALF_SPREAD


def _levels(raw: Any) -> list[tuple[float, float]]:
    """(price, size) pairs; levels with missing or non-numeric fields are skipped."""
    out = []
    for lv in raw or []:
        try:
            price, size = float(lv["price"]), float(lv["size"])
        except (KeyError, TypeError, ValueError):
            continue
        if price > 0 and size >= 0:
            out.append((price, size))
    return out


def parse_book(raw: dict[str, Any], ts: float = 0.0) -> OrderBook | None:
    """Top-of-book summary with dollar depth inside 2% of the touch."""
    bids = sorted(_levels(raw.get("bids")), reverse=True)
    asks = sorted(_levels(raw.get("asks")))
    if not bids and not asks:
        return None
    best_bid = bids[0][0] if bids else 0.0
    best_ask = asks[0][0] if asks else 0.0
    if best_bid > 0 and best_ask > 0:
        mid, spread = (best_bid + best_ask) / 2, best_ask - best_bid
    else:
        mid, spread = best_bid or best_ask, 0.0
    bid_depth = sum(size * price for price, size in bids if price >= best_bid * 0.98)
    ask_depth = sum(size * price for price, size in asks if price <= best_ask * 1.02)
    return OrderBook(
        mid=mid,
        best_bid=best_bid,
        best_ask=best_ask,
        spread=spread,
        bid_depth=bid_depth,
        ask_depth=ask_depth,
        ts=ts,
    )


class OrderBookCache:
    """Latest order book per token, refreshed by the full loop."""

    def __init__(
        self,
        http: HttpService | None = None,
        *,
        max_age: float = 60.0,
        batch: int = 6,
        clock: Callable[[], float] = time.time,
    ):
        self.http = http
        self.max_age = max_age
        self.batch = batch
        self.clock = clock
        self._books: dict[str, OrderBook] = {}

    def get(self, token_id: str, now: float | None = None) -> OrderBook | None:
        book = self._books.get(token_id)
        now = self.clock() if now is None else now
        if book is None or now - book.ts > self.max_age:
            return None
        return book

    def put(self, token_id: str, book: OrderBook) -> None:
        self._books[token_id] = book

    def prune(self, keep: Sequence[str]) -> None:
        wanted = set(keep)
        for token in [t for t in self._books if t not in wanted]:
            del self._books[token]

    async def refresh(self, token_ids: Sequence[str]) -> int:
        if self.http is None or not token_ids:
            return 0
        results = await self.http.gather_bounded(
            [self.http.get_json(f"{CLOB_API}/book", params={"token_id": t}, timeout=4.0) for t in token_ids],
            self.batch,
        )
        now = self.clock()
        updated = 0
        for token, res in zip(token_ids, results):
            if isinstance(res, Exception) or not isinstance(res, dict):
                continue
            book = parse_book(res, now)
            if book is not None:
                self._books[token] = book
                updated += 1
        return updated
