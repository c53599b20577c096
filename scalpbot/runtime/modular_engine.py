from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from scalpbot.config import Settings, TradingConfig
from scalpbot.data.books import OrderBookCache
from scalpbot.data.feeds import BinanceFeed, CoinbaseFeed, FeedChannel, KrakenFeed, OracleFeed, WebsocketFeed
from scalpbot.data.http_service import HttpService
from scalpbot.data.markets import GammaMarketSource
from scalpbot.data.snapshot_store import SnapshotStore
from scalpbot.engine.state import EngineState
from scalpbot.engine.trader import Trader
from scalpbot.execution.manager import ExecutionAdapter
from scalpbot.execution.paper import PaperExecution
from scalpbot.infra import ErrorTracker, RuntimeEventLogger
from scalpbot.runtime.supervisor import LoopSupervisor

HEALTH_INTERVAL = 30.0


@dataclass
class LoopHealth:
    name: str
    restarts: int = 0
    last_error: str = ""
    alive: bool = False


@dataclass
class RuntimeHealth:
    loops: dict[str, LoopHealth] = field(default_factory=dict)

    def touch(self, name: str, *, alive: bool | None = None, err: str = "") -> None:
        h = self.loops.get(name)
        if h is None:
            h = LoopHealth(name=name)
            self.loops[name] = h
        if alive is not None:
            h.alive = alive
        if err:
            h.last_error = err

    def restarted(self, name: str, err: Exception) -> None:
        self.touch(name, alive=False, err=str(err))
        self.loops[name].restarts += 1

    def summary(self) -> str:
        if not self.loops:
            return "loops=0"
        up = sum(1 for h in self.loops.values() if h.alive)
        total = len(self.loops)
        restarts = sum(int(h.restarts) for h in self.loops.values())
        return f"loops={up}/{total} restarts={restarts}"

    def to_dict(self) -> dict:
        return {name: {"alive": h.alive, "restarts": h.restarts, "last_error": h.last_error} for name, h in self.loops.items()}


def build_adapter(settings: Settings, books: OrderBookCache, errors: ErrorTracker) -> ExecutionAdapter:
    if settings.dry_run:
        return PaperExecution(books, cash=settings.starting_bankroll)
    from scalpbot.execution.clob import ClobExecution, build_client

    return ClobExecution(build_client(settings), errors)


class ModularEngine:
    """Supervised runtime: feed readers, fast/full ticks, snapshots and health."""

    def __init__(self, settings: Settings, log, *, trader: Trader | None = None, feeds: list[WebsocketFeed] | None = None):
        self.settings = settings
        self.log = log
        self.health = RuntimeHealth()
        self.events = RuntimeEventLogger(settings.data_dir)
        self.errors = ErrorTracker()
        self.store = SnapshotStore(settings.data_dir)
        self.supervisor = LoopSupervisor()
        self.http: HttpService | None = None
        self.feeds = feeds
        self.trader = trader

    def _build(self) -> Trader:
        self.http = HttpService(errors=self.errors)
        books = OrderBookCache(self.http)
        channel = FeedChannel()
        if self.feeds is None:
            assets = self.settings.assets
            self.feeds = [BinanceFeed(channel, assets), CoinbaseFeed(channel), KrakenFeed(channel), OracleFeed(channel)]
        cfg = TradingConfig(max_positions=self.settings.max_positions, daily_loss_limit=self.settings.daily_loss_limit)
        state = None
        raw = self.store.load_snapshot()
        if raw:
            state = EngineState.from_snapshot(raw, cfg=cfg, max_positions=self.settings.max_positions)
            self.log.info(
                "restored snapshot bankroll=%.2f open=%d history=%d",
                state.bankroll, state.open_count(), len(state.history),
            )
        return Trader(
            self.settings,
            build_adapter(self.settings, books, self.errors),
            cfg=cfg,
            state=state,
            market_source=GammaMarketSource(
                self.http,
                assets=self.settings.assets,
                timeframes=self.settings.timeframes,
            ),
            books=books,
            channels=list({id(f.channel): f.channel for f in self.feeds}.values()),
            events=self.events,
        )

    def flush_snapshot(self) -> None:
        if self.trader is None:
            return
        payload = self.trader.snapshot()
        payload["stats"]["runtime"] = self.health.to_dict()
        payload["stats"]["feeds"] = [f.health.to_dict() for f in self.feeds or []]
        try:
            self.store.save_snapshot(payload)
        except OSError as exc:
            self.log.warning("snapshot write failed: %s", exc)
            self.events.emit("snapshot.error", error=str(exc))
            return
        self.events.emit("snapshot.write", open_positions=len(payload.get("positions", []) or []))

    async def _tick_loop(self, name: str, tick: Callable[[], Awaitable[str]], interval: float) -> None:
        while True:
            status = await tick()
            if status == "skipped":
                self.events.emit("tick.skipped", name=name)
            await asyncio.sleep(interval)

    async def _snapshot_loop(self) -> None:
        while True:
            self.flush_snapshot()
            await asyncio.sleep(self.settings.snapshot_interval)

    async def _health_loop(self) -> None:
        while True:
            self.log.info("runtime-health %s", self.health.summary())
            await asyncio.sleep(HEALTH_INTERVAL)

    async def _supervise_loop(self, name: str, fn: Callable[[], Awaitable[None]]) -> None:
        async def run() -> None:
            self.health.touch(name, alive=True)
            self.events.emit("loop.start", name=name)
            await fn()
            self.health.touch(name, alive=False)
            self.events.emit("loop.exit", name=name)

        def crashed(exc: Exception) -> None:
            self.health.restarted(name, exc)
            self.events.emit("loop.crash", name=name, error=str(exc), restarts=self.health.loops[name].restarts)

        await self.supervisor.run_forever(name, run, self.log, crashed)

    def loops(self) -> dict[str, Callable[[], Awaitable[None]]]:
        trader = self.trader
        out: dict[str, Callable[[], Awaitable[None]]] = {
            "fast": lambda: self._tick_loop("fast", trader.fast_tick, self.settings.fast_interval),
            "full": lambda: self._tick_loop("full", trader.full_tick, self.settings.full_interval),
            "snapshot": self._snapshot_loop,
            "health": self._health_loop,
        }
        for feed in self.feeds or []:
            out[f"feed:{feed.name}"] = feed.run
        return out

    async def run(self) -> None:
        if self.trader is None:
            self.trader = self._build()
        self.log.info(
            "starting modular engine mode=%s assets=%s bankroll=%.2f",
            "paper" if self.settings.dry_run else "live",
            ",".join(self.settings.assets),
            self.trader.state.bankroll,
        )
        self.events.emit("engine.start", dry_run=self.settings.dry_run, bankroll=self.trader.state.bankroll)

        tasks = [asyncio.create_task(self._supervise_loop(name, fn), name=f"loop:{name}") for name, fn in self.loops().items()]
        try:
            await asyncio.gather(*tasks)
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.flush_snapshot()
            self.events.emit("engine.stop")
            if self.http is not None:
                await self.http.close()
