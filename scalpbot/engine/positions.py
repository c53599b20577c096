from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

from scalpbot.config.trading import TradingConfig
from scalpbot.data.price_history import PriceHistoryStore
from scalpbot.domain import ClosedTrade, Position
from scalpbot.engine.exit_rules import EXIT, HOLD, RESOLVE, ExitContext, ExitDecision, by_pnl_sign, evaluate_exit
from scalpbot.engine.state import EngineState
from scalpbot.execution.manager import PARTIAL_TOLERANCE, ExecutionManager, ExecutionResult
from scalpbot.infra import RuntimeEventLogger, get_logger
from scalpbot.strategy.intelligence import MarketStructureAnalyzer
from scalpbot.strategy.probability import BinaryProbabilityModel
from scalpbot.strategy.signals import SignalEngine

if TYPE_CHECKING:
    from scalpbot.settlement.manager import SettlementManager

log = get_logger("scalpbot.positions")


class PositionManager:
    """Runs the exit rules over open positions and realizes the ones that fire.

    A position leaves the open set only through a verified exit fill or a resolution
    settlement; a failed exit leaves it untouched for the next tick.
    """

    def __init__(
        self,
        state: EngineState,
        execution: ExecutionManager,
        settlement: SettlementManager,
        *,
        cfg: TradingConfig,
        probability: BinaryProbabilityModel,
        signals: SignalEngine | None = None,
        analyzer: MarketStructureAnalyzer | None = None,
        prices: PriceHistoryStore | None = None,
        events: RuntimeEventLogger | None = None,
        journal: Callable[[str, str], None] | None = None,
    ):
        self.state = state
        self.execution = execution
        self.settlement = settlement
        self.cfg = cfg
        self.probability = probability
        self.signals = signals
        self.analyzer = analyzer
        self.prices = prices
        self.events = events
        self.journal = journal or (lambda category, message: None)
        self.exit_failures = 0

    def context(self, pos: Position, now: float) -> ExitContext:
        return ExitContext(
            pos,
            now=now,
            cfg=self.cfg,
            probability=self.probability,
            signals=self.signals,
            analyzer=self.analyzer,
            prices=self.prices,
        )

    def evaluate(self, pos: Position, now: float) -> ExitDecision | None:
        return evaluate_exit(self.context(pos, now))

    async def manage(self, marks: Mapping[str, float], now: float) -> list[ClosedTrade]:
        closed: list[ClosedTrade] = []
        for pos in self.state.open_positions():
            price = marks.get(pos.token_id)
            if price:
                pos.mark(price)
            elif pos.secs_left(now) > 0:
                continue
            ctx = self.context(pos, now)
            decision = evaluate_exit(ctx)
            if decision is None or decision.action == HOLD:
                continue
            trade = await self.apply(ctx, decision)
            if trade is not None:
                closed.append(trade)
        return closed

    async def apply(self, ctx: ExitContext, decision: ExitDecision) -> ClosedTrade | None:
        pos = ctx.pos
        if decision.action == RESOLVE:
            result = self.settlement.settle_resolution(
                pos.market_id, decision.reason == "WIN-RESOLVE", ctx.now, decision.reason
            )
            if result.trade is not None:
                self._after_close(result.trade)
            return result.trade
        if decision.action != EXIT:
            return None

        unrealized = pos.unrealized_pnl
        res = await self.execution.close(pos, pos.current_price, urgent=decision.urgent, secs_left=ctx.secs_left)
        if not res.ok:
            self.exit_failures += 1
            self.journal("FAK-FAIL", f"exit {decision.reason} failed: {pos.asset} {pos.side} [{pos.timeframe}] ({res.reason}), retrying")
            log.warning("exit failed %s %s [%s] reason=%s err=%s", pos.asset, pos.side, pos.timeframe, decision.reason, res.reason)
            if self.events is not None:
                self.events.emit("exit.failed", market_id=pos.market_id, reason=decision.reason, error=res.reason)
            return None

        sold = min(res.shares or pos.size, pos.size)
        if pos.size - sold > PARTIAL_TOLERANCE:
            self._partial(ctx, decision, res, sold, decision.penalty_rate * abs(unrealized) * sold / pos.size)
            return None

        penalty = decision.penalty_rate * abs(unrealized)
        pnl = (res.exec_price - pos.entry_price) * pos.size - penalty
        trade = self.state.close_position(
            pos.market_id,
            exit_price=res.exec_price,
            state=decision.state or by_pnl_sign(pnl + pos.realized_pnl),
            reason=decision.reason,
            now=ctx.now,
            penalty=penalty,
            slippage=res.slippage,
        )
        if trade is not None:
            self._after_close(trade)
        return trade

    def _partial(self, ctx: ExitContext, decision: ExitDecision, res: ExecutionResult, sold: float, penalty: float) -> None:
        pos = ctx.pos
        pnl = self.state.reduce_position(
            pos.market_id,
            shares=sold,
            exit_price=res.exec_price,
            now=ctx.now,
            penalty=penalty,
            slippage=res.slippage,
        )
        if pnl is None:
            return
        self.journal(
            "PARTIAL",
            f"{decision.reason}: {pos.asset} {pos.side} {pos.timeframe} sold {sold:.2f}, "
            f"{pos.size:.2f} left ${pnl:+.3f} | bank:${self.state.bankroll:.2f}",
        )
        log.warning("partial exit %s %s [%s] sold=%.2f left=%.2f", pos.asset, pos.side, pos.timeframe, sold, pos.size)
        if self.events is not None:
            self.events.emit(
                "exit.partial",
                market_id=pos.market_id,
                reason=decision.reason,
                sold=round(sold, 4),
                remaining=round(pos.size, 4),
                pnl=round(pnl, 4),
            )

    def _after_close(self, trade: ClosedTrade) -> None:
        if self.analyzer is not None:
            self.analyzer.record_exit(trade.market_id)
        tier = f" [{trade.bet_tier}]" if trade.bet_tier else ""
        self.journal(
            "EXIT",
            f"{trade.reason}: {trade.asset} {trade.side} {trade.timeframe}{tier} "
            f"${trade.pnl:+.3f} conv:{trade.conviction * 100:.0f}% | bank:${self.state.bankroll:.2f}",
        )
        if self.events is not None:
            self.events.emit(
                "exit.closed",
                market_id=trade.market_id,
                asset=trade.asset,
                timeframe=trade.timeframe,
                reason=trade.reason,
                state=trade.state,
                pnl=round(trade.pnl, 4),
                bankroll=round(self.state.bankroll, 4),
            )
