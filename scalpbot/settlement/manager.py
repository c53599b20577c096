from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from scalpbot.domain import ClosedTrade, PositionState
from scalpbot.infra import RuntimeEventLogger, get_logger

if TYPE_CHECKING:
    from scalpbot.engine.state import EngineState

log = get_logger("scalpbot.settlement")

WIN_PRICE = 0.95
LOSS_PRICE = 0.05


@dataclass(frozen=True)
class SettlementResult:
    ok: bool
    won: bool
    trade: ClosedTrade | None
    message: str


class SettlementManager:
    """Resolution boundary: closes expired positions at the win/loss proxy price without an order."""

    def __init__(
        self,
        state: EngineState,
        *,
        win_price: float = WIN_PRICE,
        loss_price: float = LOSS_PRICE,
        events: RuntimeEventLogger | None = None,
    ):
        self.state = state
        self.win_price = win_price
        self.loss_price = loss_price
        self.events = events

    def settle_resolution(self, market_id: str, won: bool, now: float, reason: str = "") -> SettlementResult:
        pos = self.state.positions.get(market_id)
        if pos is None:
            return SettlementResult(ok=False, won=won, trade=None, message="not_open")
        price = self.win_price if won else self.loss_price
        tag = reason or ("WIN-RESOLVE" if won else "LOSS-RESOLVE")
        trade = self.state.close_position(
            market_id,
            exit_price=price,
            state=PositionState.CLOSED_RESOLVED,
            reason=tag,
            now=now,
        )
        if trade is None:
            return SettlementResult(ok=False, won=won, trade=None, message="not_open")
        log.info(
            "RESOLVE %s %s [%s] %s pnl=%+.2f bank=%.2f",
            trade.asset, trade.side, trade.timeframe, "WIN" if won else "LOSS", trade.pnl, self.state.bankroll,
        )
        if self.events is not None:
            self.events.emit(
                "exit.resolved",
                market_id=market_id,
                asset=trade.asset,
                timeframe=trade.timeframe,
                won=won,
                pnl=round(trade.pnl, 4),
            )
        return SettlementResult(ok=True, won=won, trade=trade, message=tag)
