from __future__ import annotations

import itertools

from scalpbot.data.books import OrderBookCache
from scalpbot.execution.manager import FillResult, OrderStatus

SIZE_IMPACT_THRESHOLD = 100.0
SIZE_IMPACT_FACTOR = 0.0001


class PaperExecution:
    """Simulated fills against cached books: spread is paid through the limit, impact above $100."""

    def __init__(self, books: OrderBookCache | None = None, *, cash: float = 0.0):
        self.books = books or OrderBookCache()
        self.cash = cash
        self._ids = itertools.count(1)
        self._orders: dict[str, float] = {}
        self._holdings: dict[str, float] = {}

    def _next_id(self, shares: float) -> str:
        oid = f"paper-{next(self._ids)}"
        self._orders[oid] = shares
        return oid

    async def buy(self, token_id: str, stake: float, limit_price: float) -> FillResult:
        book = self.books.get(token_id)
        if book is not None and book.ask_depth <= 0:
            return FillResult(False, error="no_ask_liquidity")
        impact = (stake - SIZE_IMPACT_THRESHOLD) * SIZE_IMPACT_FACTOR if stake > SIZE_IMPACT_THRESHOLD else 0.0
        price = min(0.99, limit_price + impact)
        shares = stake / price
        self.cash -= stake
        self._holdings[token_id] = self._holdings.get(token_id, 0.0) + shares
        return FillResult(True, order_id=self._next_id(shares), exec_price=price, shares=shares)

    async def sell(self, token_id: str, shares: float, limit_price: float, urgent: bool) -> FillResult:
        book = self.books.get(token_id)
        if book is not None and book.bid_depth <= 0 and not urgent:
            return FillResult(False, error="no_bid_liquidity")
        notional = shares * limit_price
        impact = (notional - SIZE_IMPACT_THRESHOLD) * SIZE_IMPACT_FACTOR if notional > SIZE_IMPACT_THRESHOLD else 0.0
        price = max(0.001, limit_price - impact)
        self.cash += shares * price
        self._holdings[token_id] = max(0.0, self._holdings.get(token_id, 0.0) - shares)
        return FillResult(True, order_id=self._next_id(shares), exec_price=price, shares=shares)

    async def verify_filled(self, order_id: str) -> OrderStatus:
        shares = self._orders.get(order_id)
        return OrderStatus(matched=shares is not None, size_matched=shares or 0.0)

    async def cancel(self, order_id: str) -> bool:
        return self._orders.pop(order_id, None) is not None

    async def balance(self) -> float | None:
        return self.cash

    async def position_shares(self, token_id: str) -> float | None:
        return self._holdings.get(token_id, 0.0)
