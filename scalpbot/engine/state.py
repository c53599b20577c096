from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Any

from scalpbot.config.trading import TradingConfig
from scalpbot.domain import (
    ClosedTrade,
    EntryIntent,
    ExecutionStats,
    InvariantViolation,
    Position,
    PositionState,
)
from scalpbot.strategy.conviction import ProbeBook


def utc_day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


class EngineState:
    """Single-writer aggregate of bankroll, open positions and trade history.

    Every bankroll mutation goes through ``open_position``/``close_position`` so the
    ledger ``bankroll + locked + unrealized`` only moves by realized P&L.
    """

    def __init__(
        self,
        bankroll: float,
        *,
        cfg: TradingConfig | None = None,
        max_positions: int | None = None,
    ):
        if bankroll < 0:
            raise InvariantViolation(f"negative bankroll {bankroll}")
        self.cfg = cfg or TradingConfig()
        self.max_positions = max_positions or self.cfg.max_positions
        self.bankroll = float(bankroll)
        self.starting_bankroll = float(bankroll)
        self.positions: dict[str, Position] = {}
        self.history: deque[ClosedTrade] = deque(maxlen=self.cfg.history_limit)
        self.probes = ProbeBook()
        self.exec_stats = ExecutionStats()
        self.total_pnl = 0.0
        self.wins = 0
        self.losses = 0
        self.daily_pnl = 0.0
        self.daily_date = ""
        self.last_entry_ts = 0.0

    # queries

    def open_positions(self) -> list[Position]:
        return list(self.positions.values())

    def open_count(self) -> int:
        return len(self.positions)

    def has_market(self, market_id: str) -> bool:
        return market_id in self.positions

    def slot_taken(self, asset: str, timeframe: str) -> bool:
        return any(p.asset == asset and p.timeframe == timeframe for p in self.positions.values())

    def find(self, asset: str, timeframe: str) -> Position | None:
        for p in self.positions.values():
            if p.asset == asset and p.timeframe == timeframe:
                return p
        return None

    @property
    def locked(self) -> float:
        return sum(p.cost_basis for p in self.positions.values())

    @property
    def unrealized(self) -> float:
        return sum(p.unrealized_pnl for p in self.positions.values())

    @property
    def equity(self) -> float:
        return self.bankroll + self.locked + self.unrealized

    @property
    def win_rate(self) -> float:
        decided = self.wins + self.losses
        return self.wins / decided if decided else 0.0

    def check_entry(self, intent: EntryIntent) -> str:
        """Reason an entry would break a contract, or "ok"."""
        m = intent.market
        if intent.stake <= 0:
            return "non_positive_stake"
        if intent.stake > self.bankroll:
            return "stake_exceeds_bankroll"
        if m.id in self.positions:
            return "market_taken"
        if self.slot_taken(m.asset, m.timeframe):
            return "slot_taken"
        if len(self.positions) >= self.max_positions:
            return "max_positions"
        return "ok"

    # mutation

    def open_position(
        self,
        intent: EntryIntent,
        *,
        exec_price: float,
        shares: float,
        now: float,
        order_id: str = "",
        slippage: float = 0.0,
    ) -> Position:
        reason = self.check_entry(intent)
        if reason != "ok":
            raise InvariantViolation(f"cannot open {intent.market.id}: {reason}")
        if exec_price <= 0 or shares <= 0:
            raise InvariantViolation(f"cannot open {intent.market.id} without a fill")

        # a partial fill is charged for what it bought, never more than the stake
        stake = min(intent.stake, round(shares * exec_price, 6))
        target = max(stake * (1 - exec_price) / exec_price * intent.target_pct, 0.005)
        m = intent.market
        pos = Position(
            market_id=m.id,
            asset=m.asset,
            timeframe=m.timeframe,
            side=intent.side,
            token_id=intent.token_id,
            entry_price=exec_price,
            size=shares,
            cost_basis=stake,
            target_profit=target,
            crypto_price_at_entry=intent.crypto_price,
            opened_at=now,
            end_time=m.end_time,
            conviction=intent.conviction,
            bet_tier=intent.tier,
            pattern_key=intent.pattern_key,
            entry_reason=intent.reason,
            order_id=order_id,
            mid_at_entry=intent.price,
            slippage=slippage,
            current_price=exec_price,
        )
        self.bankroll -= stake
        self.positions[m.id] = pos
        self.last_entry_ts = now
        return pos

    def close_position(
        self,
        market_id: str,
        *,
        exit_price: float,
        state: PositionState,
        reason: str,
        now: float,
        penalty: float = 0.0,
        slippage: float = 0.0,
    ) -> ClosedTrade | None:
        """Realize a position. Returns None when it is no longer open."""
        if not state.closed:
            raise InvariantViolation(f"close with non-terminal state {state}")
        pos = self.positions.pop(market_id, None)
        if pos is None or not pos.is_open:
            return None

        rest = (exit_price - pos.entry_price) * pos.size - penalty
        pos.state = state
        pos.current_price = exit_price
        pos.unrealized_pnl = 0.0
        self.bankroll += pos.cost_basis + rest
        self.total_pnl += rest
        self.roll_day(now)
        self.daily_pnl += rest
        pnl = rest + pos.realized_pnl
        if pnl > self.cfg.win_epsilon:
            self.wins += 1
        elif pnl < -self.cfg.win_epsilon:
            self.losses += 1
        if pos.pattern_key is not None:
            self.probes.record(pos.pattern_key, pnl >= 0)

        trade = ClosedTrade(
            market_id=pos.market_id,
            asset=pos.asset,
            timeframe=pos.timeframe,
            side=pos.side,
            entry_price=pos.entry_price,
            exit_price=exit_price,
            size=pos.size,
            cost_basis=pos.cost_basis,
            pnl=pnl,
            reason=reason,
            state=state.value,
            opened_at=pos.opened_at,
            closed_at=now,
            conviction=pos.conviction,
            bet_tier=pos.bet_tier,
            pattern_key=str(pos.pattern_key) if pos.pattern_key else "",
            slippage=pos.slippage + slippage,
        )
        self.history.appendleft(trade)
        return trade

    def reduce_position(
        self,
        market_id: str,
        *,
        shares: float,
        exit_price: float,
        now: float,
        penalty: float = 0.0,
        slippage: float = 0.0,
    ) -> float | None:
        """Realize ``shares`` of an open position and keep the rest open.

        Cost basis, target and peak shrink in proportion. Returns the realized P&L,
        or None when the position is no longer open.
        """
        pos = self.positions.get(market_id)
        if pos is None or not pos.is_open:
            return None
        if shares <= 0 or shares >= pos.size:
            raise InvariantViolation(f"partial close of {shares} from {pos.size} shares on {market_id}")

        kept = (pos.size - shares) / pos.size
        released = pos.cost_basis * (1 - kept)
        pnl = (exit_price - pos.entry_price) * shares - penalty
        pos.size -= shares
        pos.cost_basis -= released
        pos.target_profit *= kept
        pos.peak_gain *= kept
        pos.realized_pnl += pnl
        pos.slippage += slippage
        pos.mark(pos.current_price)
        self.bankroll += released + pnl
        self.total_pnl += pnl
        self.roll_day(now)
        self.daily_pnl += pnl
        return pnl

    def adjust_size(self, market_id: str, shares: float) -> None:
        pos = self.positions.get(market_id)
        if pos is not None and shares > 0:
            pos.size = shares
            pos.mark(pos.current_price)

    # circuit breakers

    def roll_day(self, now: float) -> bool:
        day = utc_day(now)
        if day == self.daily_date:
            return False
        self.daily_date = day
        self.daily_pnl = 0.0
        return True

    def healthy(self) -> bool:
        recent = list(self.history)[: self.cfg.health_window]
        if len(recent) < self.cfg.health_window:
            return True
        wins = sum(1 for t in recent if t.won)
        return wins / len(recent) >= self.cfg.health_min_win_rate

    # persistence

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "bankroll": round(self.bankroll, 6),
            "starting_bankroll": self.starting_bankroll,
            "positions": [p.to_dict() for p in self.positions.values()],
            "history": [t.to_dict() for t in self.history],
            "probes": self.probes.to_dict(),
            "total_pnl": self.total_pnl,
            "wins": self.wins,
            "losses": self.losses,
            "daily_pnl": self.daily_pnl,
            "daily_date": self.daily_date,
            "last_entry_ts": self.last_entry_ts,
            "exec_stats": self.exec_stats.to_dict(),
        }

    @classmethod
    def from_snapshot(
        cls,
        raw: dict[str, Any],
        *,
        cfg: TradingConfig | None = None,
        max_positions: int | None = None,
    ) -> EngineState:
        state = cls(float(raw.get("bankroll", 0.0)), cfg=cfg, max_positions=max_positions)
        state.starting_bankroll = float(raw.get("starting_bankroll", state.bankroll))
        for p in raw.get("positions") or []:
            pos = Position.from_dict(p)
            if pos.is_open:
                state.positions[pos.market_id] = pos
        for t in raw.get("history") or []:
            state.history.append(ClosedTrade.from_dict(t))
        state.probes = ProbeBook.from_dict(raw.get("probes"))
        state.total_pnl = float(raw.get("total_pnl", 0.0))
        state.wins = int(raw.get("wins", 0))
        state.losses = int(raw.get("losses", 0))
        state.daily_pnl = float(raw.get("daily_pnl", 0.0))
        state.daily_date = str(raw.get("daily_date", ""))
        state.last_entry_ts = float(raw.get("last_entry_ts", 0.0))
        state.exec_stats = ExecutionStats.from_dict(raw.get("exec_stats") or {})
        return state
