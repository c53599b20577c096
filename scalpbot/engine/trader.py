from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from scalpbot.config import Settings, TradingConfig
from scalpbot.data.books import OrderBookCache
from scalpbot.data.feeds import FeedChannel, MultiExchangePredictor, Tick
from scalpbot.data.markets import GammaMarketSource, sort_markets
from scalpbot.data.price_history import PriceHistoryStore
from scalpbot.domain import DOWN, SIDES, UP, ClosedTrade, EntryIntent, Market, PatternKey, Position, PositionState
from scalpbot.engine.positions import PositionManager
from scalpbot.engine.state import EngineState
from scalpbot.execution.manager import ExecutionAdapter, ExecutionManager
from scalpbot.infra import RuntimeEventLogger, get_logger
from scalpbot.settlement.manager import SettlementManager
from scalpbot.strategy.engine import StrategyEngine
from scalpbot.strategy.gates import pass_account_gates, pass_market_gates
from scalpbot.strategy.intelligence import MarketStructureAnalyzer
from scalpbot.strategy.probability import BinaryProbabilityModel
from scalpbot.strategy.signals import SignalEngine

log = get_logger("scalpbot.trader")

PRIMARY_SOURCE = "binance"
ORACLE_SOURCE = "oracle"
TOKEN_HISTORY = 20
TOKEN_STALE = 1800.0
GHOST_SHARES = 0.5
SIZE_DRIFT = 0.1
MANUAL_TF_PRIORITY = ("1d", "4h", "1h", "15m", "5m")
DAILY_ENTRY_MIN_SECS = 20 * 3600
DAILY_ENTRY_MIN_PRICE = 0.05
DAILY_ENTRY_MAX_PRICE = 0.85
DAILY_ENTRY_MAX_STAKE = 10.0


class Trader:
    """Owns the engine state and drives it from the fast and full ticks.

    The fast tick only touches cached data; the full tick does the network work and
    then runs the same position-mutating section. Both take ``tick_lock`` and skip
    when it is already held.
    """

    def __init__(
        self,
        settings: Settings,
        adapter: ExecutionAdapter,
        *,
        cfg: TradingConfig | None = None,
        state: EngineState | None = None,
        market_source: GammaMarketSource | None = None,
        books: OrderBookCache | None = None,
        channels: Sequence[FeedChannel] = (),
        events: RuntimeEventLogger | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.cfg = cfg or TradingConfig(max_positions=settings.max_positions, daily_loss_limit=settings.daily_loss_limit)
        self.adapter = adapter
        self.market_source = market_source
        self.books = books or OrderBookCache(clock=clock)
        self.channels = list(channels)
        self.events = events
        self.clock = clock

        self.prices = PriceHistoryStore(clock=clock)
        self.token_prices = PriceHistoryStore(capacity=TOKEN_HISTORY, dedup_window=0.0, clock=clock)
        self.predictor = MultiExchangePredictor()
        self.signals = SignalEngine(self.prices, assets=settings.assets)
        self.analyzer = MarketStructureAnalyzer(reentry_cooldown=self.cfg.reentry_cooldown, clock=clock)
        self.probability = BinaryProbabilityModel(self.cfg)

        self.markets: list[Market] = []
        self.logs: deque[dict[str, Any]] = deque(maxlen=200)
        self.last_error = ""
        self.tick_lock = asyncio.Lock()
        self.ticks = 0
        self.skipped_ticks = 0
        self.arb_seen: set[str] = set()

        self.bind_state(state or EngineState(settings.starting_bankroll, cfg=self.cfg, max_positions=settings.max_positions))

    def bind_state(self, state: EngineState) -> None:
        """Attach an engine state (fresh or restored) and rebuild the components that share it."""
        self.state = state
        self.strategy = StrategyEngine(
            self.cfg,
            prices=self.prices,
            signals=self.signals,
            analyzer=self.analyzer,
            probability=self.probability,
            probes=state.probes,
        )
        self.execution = ExecutionManager(
            self.adapter,
            books=self.books,
            stats=state.exec_stats,
            verify_delay=self.settings.verify_delay,
            timeout=self.settings.order_timeout,
        )
        self.settlement = SettlementManager(state, events=self.events)
        self.position_manager = PositionManager(
            state,
            self.execution,
            self.settlement,
            cfg=self.cfg,
            probability=self.probability,
            signals=self.signals,
            analyzer=self.analyzer,
            prices=self.prices,
            events=self.events,
            journal=self.journal,
        )

    # journal

    def journal(self, category: str, message: str) -> None:
        self.logs.append({"ts": self.clock(), "category": category, "message": message})
        log.info("[%s] %s", category, message)

    def _emit(self, event: str, **fields: Any) -> None:
        if self.events is not None:
            self.events.emit(event, **fields)

    # price ingestion

    def on_tick(self, asset: str, price: float, volume: float = 0.0, ts: float | None = None) -> None:
        self.prices.record(asset, price, volume, ts)

    def on_oracle_price(self, asset: str, price: float, oracle_ts: float | None = None, now: float | None = None) -> None:
        self.signals.on_oracle_price(asset, price, oracle_ts, now)

    def on_token_price(self, token_id: str, price: float, ts: float | None = None) -> None:
        self.token_prices.record(token_id, price, 0.0, ts)

    def ingest(self, tick: Tick) -> None:
        if tick.source == ORACLE_SOURCE:
            self.on_oracle_price(tick.asset, tick.price, tick.oracle_ts, tick.ts)
            return
        self.predictor.update(tick.source, tick.asset, tick.price, tick.ts)
        if tick.source == PRIMARY_SOURCE:
            self.on_tick(tick.asset, tick.price, tick.volume, tick.ts)

    def drain_feeds(self, now: float) -> int:
        n = 0
        for ch in self.channels:
            for tick in ch.drain():
                self.ingest(tick)
                n += 1
        for asset in self.settings.assets:
            predicted = self.predictor.predicted(asset, now)
            if predicted is not None:
                self.signals.on_predicted_price(asset, predicted, now)
        return n

    def set_markets(self, markets: Sequence[Market], now: float | None = None) -> None:
        now = self.clock() if now is None else now
        self.markets = sort_markets([m for m in markets if m.secs_left(now) > 0], now)

    def marks(self) -> dict[str, float]:
        out: dict[str, float] = {}
        for m in self.markets:
            for side in SIDES:
                price = m.price_for(side)
                if price > 0:
                    out[m.token_for(side)] = price
        for token in self.token_prices.keys():
            latest = self.token_prices.latest(token)
            if latest:
                out[token] = latest
        return out

    # tick bodies

    async def _guarded(self, name: str, body: Callable[[float], Awaitable[None]]) -> str:
        if self.tick_lock.locked():
            self.skipped_ticks += 1
            return "skipped"
        async with self.tick_lock:
            now = self.clock()
            try:
                await body(now)
            except Exception as exc:
                self.last_error = f"{name}: {exc}"
                log.exception("%s tick failed: %s", name, exc)
                self._emit("tick.error", name=name, error=str(exc))
                return "error"
            self.ticks += 1
            return "ok"

    async def _trade_section(self, now: float) -> None:
        if self.state.roll_day(now):
            self.journal("DAY", f"daily P&L reset for {self.state.daily_date}")
        await self.manage_positions(now)
        await self.scan_entries(now)

    async def fast_tick(self) -> str:
        async def body(now: float) -> None:
            self.drain_feeds(now)
            await self._trade_section(now)

        return await self._guarded("fast", body)

    async def refresh_markets(self, now: float) -> None:
        if self.market_source is not None:
            found = await self.market_source.list_active_markets(now)
            if found:
                self.set_markets(found, now)
        tokens = [m.token_for(s) for m in self.markets for s in SIDES]
        tokens += [p.token_id for p in self.state.open_positions() if p.token_id not in tokens]
        await self.books.refresh(tokens)
        self.books.prune(tokens)
        self.token_prices.prune(tokens)
        self.token_prices.drop_stale(TOKEN_STALE, now)
        self.arb_seen &= {m.id for m in self.markets}
        missing = []
        for token in tokens:
            book = self.books.get(token, now)
            if book is not None and book.mid > 0:
                self.on_token_price(token, book.mid, now)
            else:
                missing.append(token)
        if missing and self.market_source is not None:
            for token, mid in (await self.market_source.midpoints(missing)).items():
                self.on_token_price(token, mid, now)
        updated = []
        for m in self.markets:
            up = self.token_prices.latest(m.up_token) or m.up_price
            down = self.token_prices.latest(m.down_token) or m.down_price
            updated.append(m.with_prices(up, down))
        self.markets = updated

    async def full_tick(self) -> str:
        async def body(now: float) -> None:
            self.drain_feeds(now)
            await self.refresh_markets(now)
            self.check_arbitrage()
            if self.settings.live:
                await self.reconcile(now)
            await self._trade_section(now)
            if self.settings.auto_daily_entry:
                await self.auto_daily_entry(now)

        return await self._guarded("full", body)

    # positions

    async def manage_positions(self, now: float) -> list[ClosedTrade]:
        return await self.position_manager.manage(self.marks(), now)

    async def scan_entries(self, now: float) -> int:
        opened = 0
        for market in self.markets:
            since = now - self.state.last_entry_ts if self.state.last_entry_ts else None
            ok, _reason = pass_account_gates(
                open_positions=self.state.open_count(),
                max_positions=self.state.max_positions,
                bankroll=self.state.bankroll,
                min_stake=self.cfg.min_stake,
                daily_pnl=self.state.daily_pnl,
                daily_loss_limit=self.cfg.daily_loss_limit,
                healthy=self.state.healthy(),
                since_last_entry=since,
                entry_cooldown=self.cfg.entry_cooldown,
            )
            if not ok:
                break
            ok, _reason = pass_market_gates(
                market,
                now=now,
                min_entry_secs=self.cfg.min_entry_secs,
                entry_buffer_secs=self.cfg.rules(market.timeframe).entry_buffer_secs,
                market_taken=self.state.has_market(market.id),
                slot_taken=self.state.slot_taken(market.asset, market.timeframe),
                can_reenter=self.analyzer.can_reenter(market.id),
            )
            if not ok:
                continue
            intent, _reason = self.strategy.decide(
                market,
                bankroll=self.state.bankroll,
                open_positions=self.state.open_count(),
                now=now,
            )
            if intent is None:
                continue
            pos, _reason = await self.try_enter(intent, now)
            if pos is not None:
                opened += 1
        return opened

    async def try_enter(self, intent: EntryIntent, now: float) -> tuple[Position | None, str]:
        reason = self.state.check_entry(intent)
        if reason != "ok":
            log.info("entry rejected %s %s: %s", intent.market.asset, intent.side, reason)
            self._emit("entry.rejected", market_id=intent.market.id, reason=reason)
            return None, reason

        res = await self.execution.open(intent)
        if not res.ok:
            self.journal("ENTRY-FAIL", f"{intent.market.asset} {intent.side} [{intent.market.timeframe}] {res.reason}")
            self._emit("entry.failed", market_id=intent.market.id, error=res.reason)
            return None, res.reason

        pos = self.state.open_position(
            intent,
            exec_price=res.exec_price,
            shares=res.shares,
            now=now,
            order_id=res.order_id,
            slippage=res.slippage,
        )
        self.journal(
            "ENTRY",
            f"{pos.asset} {pos.side} [{pos.timeframe}] ${intent.stake:.2f} @{res.exec_price:.3f} "
            f"[{intent.tier}] conv:{intent.conviction * 100:.0f}% {intent.reason} | bank:${self.state.bankroll:.2f}",
        )
        self._emit(
            "entry.filled",
            market_id=pos.market_id,
            asset=pos.asset,
            timeframe=pos.timeframe,
            side=pos.side,
            stake=intent.stake,
            price=res.exec_price,
            shares=res.shares,
            conviction=round(intent.conviction, 4),
            tier=intent.tier,
        )
        return pos, "ok"

    def check_arbitrage(self) -> list[Market]:
        found = []
        for m in self.markets:
            up, down = m.up_price, m.down_price
            if up > 0 and down > 0 and up + down < self.cfg.arb_threshold:
                found.append(m)
                if m.id not in self.arb_seen:
                    self.arb_seen.add(m.id)
                    self.journal("ARB", f"{m.asset} [{m.timeframe}] up {up:.3f} + down {down:.3f} = {up + down:.3f}")
                    self._emit("market.arb", market_id=m.id, up=up, down=down)
        return found

    async def reconcile(self, now: float) -> list[ClosedTrade]:
        """Match open positions to on-chain share balances; close ghosts, fix drifted sizes."""
        ghosts: list[ClosedTrade] = []
        for pos in self.state.open_positions():
            shares = await self.adapter.position_shares(pos.token_id)
            if shares is None:
                continue
            if shares < GHOST_SHARES:
                trade = self.state.close_position(
                    pos.market_id,
                    exit_price=0.0,
                    state=PositionState.CLOSED_FORCED,
                    reason="GHOST",
                    now=now,
                )
                if trade is not None:
                    ghosts.append(trade)
                    self.journal("GHOST", f"{pos.asset} {pos.side} [{pos.timeframe}] no shares on chain, closed")
                continue
            if abs(shares - pos.size) > SIZE_DRIFT:
                self.journal("SYNC", f"{pos.asset} {pos.side} size {pos.size:.2f} -> {shares:.2f}")
                self.state.adjust_size(pos.market_id, shares)
        return ghosts

    # operator actions

    def _intent(self, market: Market, side: str, stake: float, tag: str, now: float) -> EntryIntent:
        rules = self.cfg.rules(market.timeframe)
        return EntryIntent(
            market=market,
            side=side,
            token_id=market.token_for(side),
            price=market.price_for(side),
            stake=round(stake, 2),
            tier=tag,
            conviction=0.5,
            pattern_key=PatternKey(market.asset, side, tag.lower()),
            reason=tag,
            target_pct=rules.profit_target,
            model_prob=market.price_for(side),
            kelly=0.0,
            signal_strength=0.0,
            crypto_price=self.signals.crypto_price(market.asset, now),
        )

    async def manual_trade(self, asset: str, side: str, stake: float) -> tuple[bool, str]:
        asset, side = str(asset).upper(), str(side).upper()
        if asset not in self.settings.assets:
            return False, f"unknown asset {asset}"
        if side not in SIDES:
            return False, f"side must be {UP} or {DOWN}"
        if not stake or stake < self.cfg.min_stake:
            return False, f"stake must be at least ${self.cfg.min_stake:.2f}"

        async with self.tick_lock:
            now = self.clock()
            if stake > self.state.bankroll:
                return False, f"stake ${stake:.2f} exceeds bankroll ${self.state.bankroll:.2f}"
            candidates = [m for m in self.markets if m.asset == asset and m.secs_left(now) > self.cfg.min_entry_secs]
            candidates.sort(key=lambda m: MANUAL_TF_PRIORITY.index(m.timeframe) if m.timeframe in MANUAL_TF_PRIORITY else 99)
            market = next((m for m in candidates if m.price_for(side) > 0), None)
            if market is None:
                return False, f"no open {asset} market"
            pos, reason = await self.try_enter(self._intent(market, side, stake, "MANUAL", now), now)
        if pos is None:
            return False, reason
        return True, f"{asset} {side} [{pos.timeframe}] ${pos.cost_basis:.2f} @{pos.entry_price:.3f}"

    async def auto_daily_entry(self, now: float) -> Position | None:
        market = next(
            (m for m in self.markets if m.asset == "BTC" and m.timeframe == "1d" and m.secs_left(now) >= DAILY_ENTRY_MIN_SECS),
            None,
        )
        if market is None or self.state.has_market(market.id) or self.state.slot_taken(market.asset, market.timeframe):
            return None
        side = min(SIDES, key=market.price_for)
        price = market.price_for(side)
        if not DAILY_ENTRY_MIN_PRICE <= price < DAILY_ENTRY_MAX_PRICE:
            return None
        bankroll = self.state.bankroll
        stake = min(bankroll * self.cfg.max_bankroll_fraction, bankroll - 0.01, DAILY_ENTRY_MAX_STAKE)
        if stake < self.cfg.min_stake:
            return None
        pos, _reason = await self.try_enter(self._intent(market, side, stake, "DAILY", now), now)
        return pos

    # reporting

    def stats(self) -> dict[str, Any]:
        st = self.state
        probes = {str(k): r.to_dict() | {"win_rate": round(r.win_rate, 3)} for k, r in st.probes.items()}
        return {
            "ts": self.clock(),
            "mode": "live" if self.settings.live else "paper",
            "bankroll": round(st.bankroll, 4),
            "locked": round(st.locked, 4),
            "unrealized": round(st.unrealized, 4),
            "equity": round(st.equity, 4),
            "starting_bankroll": st.starting_bankroll,
            "total_pnl": round(st.total_pnl, 4),
            "wins": st.wins,
            "losses": st.losses,
            "win_rate": round(st.win_rate, 3),
            "daily_pnl": round(st.daily_pnl, 4),
            "healthy": st.healthy(),
            "probes": probes,
            "proven_patterns": st.probes.proven_count(),
            "execution": st.exec_stats.to_dict(),
            "positions": [p.to_dict() for p in st.open_positions()],
            "history": [t.to_dict() for t in list(st.history)[:20]],
            "markets": len(self.markets),
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
            "logs": list(self.logs)[-50:],
            "last_error": self.last_error,
        }

    def snapshot(self) -> dict[str, Any]:
        payload = self.state.to_snapshot()
        payload["stats"] = self.stats()
        return payload
