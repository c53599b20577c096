from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Protocol

from scalpbot.data.books import DEFAULT_HALF_SPREAD, OrderBookCache
from scalpbot.domain import EntryIntent, ExecutionStats, Position
from scalpbot.infra import get_logger

log = get_logger("scalpbot.execution")

LATE_EXIT_SECS = 15.0
LATE_SPREAD_MULT = 2.0
PARTIAL_TOLERANCE = 0.01


@dataclass(frozen=True)
class FillResult:
    success: bool
    order_id: str = ""
    exec_price: float = 0.0
    shares: float = 0.0
    error: str = ""


@dataclass(frozen=True)
class OrderStatus:
    matched: bool
    size_matched: float = 0.0


class ExecutionAdapter(Protocol):
    async def buy(self, token_id: str, stake: float, limit_price: float) -> FillResult: ...

    async def sell(self, token_id: str, shares: float, limit_price: float, urgent: bool) -> FillResult: ...

    async def verify_filled(self, order_id: str) -> OrderStatus: ...

    async def cancel(self, order_id: str) -> bool: ...

    async def balance(self) -> float | None: ...

    async def position_shares(self, token_id: str) -> float | None: ...


@dataclass(frozen=True)
class ExecutionResult:
    ok: bool
    reason: str
    exec_price: float = 0.0
    shares: float = 0.0
    order_id: str = ""
    mid: float = 0.0
    slippage: float = 0.0
    spread_cost: float = 0.0


class ExecutionManager:
    """Execution boundary: limit pricing, fill verification, cancel-on-miss and fill stats."""

    def __init__(
        self,
        adapter: ExecutionAdapter,
        *,
        books: OrderBookCache | None = None,
        stats: ExecutionStats | None = None,
        verify_delay: float = 0.0,
        timeout: float = 10.0,
    ):
        self.adapter = adapter
        self.books = books or OrderBookCache()
        self.stats = stats or ExecutionStats()
        self.verify_delay = verify_delay
        self.timeout = timeout

    def half_spread(self, token_id: str, secs_left: float | None = None) -> float:
        book = self.books.get(token_id)
        half = book.half_spread if book else DEFAULT_HALF_SPREAD
        if secs_left is not None and secs_left < LATE_EXIT_SECS:
            half *= LATE_SPREAD_MULT
        return half

    async def _call(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning("%s timed out after %.1fs", what, self.timeout)
            return None

    async def _confirm(self, fill: FillResult) -> tuple[bool, float]:
        """Verify a placed order; cancel a miss or the unmatched rest of a partial fill."""
        if not fill.order_id:
            return True, fill.shares
        if self.verify_delay > 0:
            await asyncio.sleep(self.verify_delay)
        status = await self._call(self.adapter.verify_filled(fill.order_id), "verify_filled")
        if status is not None and status.matched:
            shares = status.size_matched or fill.shares
            if fill.shares:
                shares = min(shares, fill.shares)
                if shares < fill.shares - PARTIAL_TOLERANCE:
                    cancelled = await self._call(self.adapter.cancel(fill.order_id), "cancel")
                    log.warning(
                        "order %s partially filled %.2f/%.2f, remainder cancelled=%s",
                        fill.order_id, shares, fill.shares, bool(cancelled),
                    )
            return True, shares
        cancelled = await self._call(self.adapter.cancel(fill.order_id), "cancel")
        log.warning("order %s not filled, cancelled=%s", fill.order_id, bool(cancelled))
        return False, 0.0

    def _fail(self, reason: str) -> ExecutionResult:
        self.stats.record_failure()
        return ExecutionResult(ok=False, reason=reason)

    async def open(self, intent: EntryIntent) -> ExecutionResult:
        half = self.half_spread(intent.token_id)
        limit = min(0.99, intent.price + half)
        fill = await self._call(self.adapter.buy(intent.token_id, intent.stake, limit), "buy")
        if fill is None:
            return self._fail("buy_timeout")
        if not fill.success:
            return self._fail(fill.error or "buy_failed")
        ok, shares = await self._confirm(fill)
        if not ok or shares <= 0:
            return self._fail("not_filled")
        slippage = max(0.0, fill.exec_price - intent.price) * shares
        spread_cost = half * shares
        self.stats.record_fill(slippage, spread_cost)
        return ExecutionResult(
            ok=True,
            reason="filled",
            exec_price=fill.exec_price,
            shares=shares,
            order_id=fill.order_id,
            mid=intent.price,
            slippage=slippage,
            spread_cost=spread_cost,
        )

    async def close(self, pos: Position, mid: float, *, urgent: bool, secs_left: float) -> ExecutionResult:
        half = self.half_spread(pos.token_id, secs_left)
        limit = max(0.001, mid - half)
        fill = await self._call(self.adapter.sell(pos.token_id, pos.size, limit, urgent), "sell")
        if fill is None:
            return self._fail("sell_timeout")
        if not fill.success:
            return self._fail(fill.error or "sell_failed")
        ok, shares = await self._confirm(fill)
        if not ok or shares <= 0:
            return self._fail("not_filled")
        slippage = max(0.0, mid - fill.exec_price) * shares
        spread_cost = half * shares
        self.stats.record_fill(slippage, spread_cost)
        return ExecutionResult(
            ok=True,
            reason="filled",
            exec_price=fill.exec_price,
            shares=shares,
            order_id=fill.order_id,
            mid=mid,
            slippage=slippage,
            spread_cost=spread_cost,
        )
