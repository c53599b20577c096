from __future__ import annotations

import asyncio
import json
import statistics
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from scalpbot.infra import get_logger

log = get_logger("scalpbot.feeds")

BINANCE_WS = "wss://stream.binance.com/ws/"
COINBASE_WS = "wss://ws-feed.exchange.coinbase.com"
KRAKEN_WS = "wss://ws.kraken.com/v2"
ORACLE_WS = "wss://ws-live-data.polymarket.com"

BINANCE_SYMBOLS = {"BTCUSDT": "BTC", "ETHUSDT": "ETH", "SOLUSDT": "SOL"}
COINBASE_PAIRS = {"BTC-USD": "BTC", "ETH-USD": "ETH", "SOL-USD": "SOL"}
KRAKEN_PAIRS = {"XBT/USD": "BTC", "BTC/USD": "BTC", "ETH/USD": "ETH", "SOL/USD": "SOL"}
ORACLE_SYMBOLS = {"btc/usd": "BTC", "eth/usd": "ETH", "sol/usd": "SOL"}

RECONNECT_BASE = 1.0
RECONNECT_MAX = 30.0


@dataclass(frozen=True)
class Tick:
    source: str
    asset: str
    price: float
    volume: float = 0.0
    ts: float = 0.0
    oracle_ts: float | None = None


class FeedChannel:
    """Bounded hand-off between a feed task and the control loops; drops the oldest tick when full."""

    def __init__(self, maxsize: int = 5000):
        self._q: asyncio.Queue[Tick] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def put(self, tick: Tick) -> None:
        if self._q.full():
            self._q.get_nowait()
            self.dropped += 1
        self._q.put_nowait(tick)

    def drain(self, limit: int | None = None) -> list[Tick]:
        out: list[Tick] = []
        while not self._q.empty() and (limit is None or len(out) < limit):
            out.append(self._q.get_nowait())
        return out

    def __len__(self) -> int:
        return self._q.qsize()


@dataclass
class FeedHealth:
    name: str
    stale_after: float
    connected: bool = False
    last_data_ts: float = 0.0
    messages: int = 0
    reconnects: int = 0
    last_error: str = ""

    def is_stale(self, max_age: float | None = None, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        limit = self.stale_after if max_age is None else max_age
        return not self.last_data_ts or now - self.last_data_ts >= limit

    def is_live(self, now: float | None = None) -> bool:
        return self.connected and not self.is_stale(now=now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "live": self.is_live(),
            "connected": self.connected,
            "age": round(time.time() - self.last_data_ts, 1) if self.last_data_ts else None,
            "messages": self.messages,
            "reconnects": self.reconnects,
            "last_error": self.last_error,
        }


def backoff_delay(attempt: int, base: float = RECONNECT_BASE, cap: float = RECONNECT_MAX) -> float:
    return min(base * 1.5 ** max(0, attempt - 1), cap)


class WebsocketFeed:
    """Reconnecting websocket reader that turns messages into ticks on a channel."""

    name = "ws"
    url = ""
    stale_after = 15.0

    def __init__(self, channel: FeedChannel):
        self.channel = channel
        self.health = FeedHealth(self.name, self.stale_after)

    def subscribe_message(self) -> dict[str, Any] | None:
        return None

    def parse(self, msg: Any, now: float) -> Iterable[Tick]:
        raise NotImplementedError

    def handle_raw(self, raw: str | bytes, now: float | None = None) -> int:
        now = time.time() if now is None else now
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", "ignore")
        try:
            msg = json.loads(raw)
        except ValueError:
            return 0
        n = 0
        for tick in self.parse(msg, now):
            if tick.price > 0:
                self.channel.put(tick)
                n += 1
        if n:
            self.health.last_data_ts = now
            self.health.messages += n
        return n

    async def run(self) -> None:
        attempt = 0
        while True:
            try:
                async with websockets.connect(self.url, ping_interval=20, ping_timeout=30, compression=None) as ws:
                    sub = self.subscribe_message()
                    if sub is not None:
                        await ws.send(json.dumps(sub))
                    self.health.connected = True
                    attempt = 0
                    log.info("[%s] connected", self.name)
                    async for raw in ws:
                        self.handle_raw(raw)
            except asyncio.CancelledError:
                self.health.connected = False
                raise
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                self.health.last_error = str(exc)
            self.health.connected = False
            attempt += 1
            self.health.reconnects += 1
            delay = backoff_delay(attempt)
            log.warning("[%s] disconnected (%s) reconnect in %.1fs", self.name, self.health.last_error or "closed", delay)
            await asyncio.sleep(delay)


class BinanceFeed(WebsocketFeed):
    name = "binance"
    stale_after = 10.0

    def __init__(self, channel: FeedChannel, assets: Sequence[str] = ("BTC", "ETH", "SOL")):
        super().__init__(channel)
        symbols = [s for s, a in BINANCE_SYMBOLS.items() if a in assets]
        self.url = BINANCE_WS + "/".join(f"{s.lower()}@miniTicker" for s in symbols)
        self._quote_vol: dict[str, float] = {}

    def parse(self, msg: Any, now: float) -> Iterable[Tick]:
        if not isinstance(msg, dict):
            return
        asset = BINANCE_SYMBOLS.get(msg.get("s", ""))
        if asset is None:
            return
        price = float(msg.get("c") or 0)
        quote_vol = float(msg.get("q") or 0)
        prev = self._quote_vol.get(asset, quote_vol)
        self._quote_vol[asset] = quote_vol
        yield Tick(self.name, asset, price, max(0.0, quote_vol - prev), now)


class CoinbaseFeed(WebsocketFeed):
    name = "coinbase"
    url = COINBASE_WS

    def subscribe_message(self) -> dict[str, Any]:
        return {"type": "subscribe", "product_ids": list(COINBASE_PAIRS), "channels": ["ticker"]}

    def parse(self, msg: Any, now: float) -> Iterable[Tick]:
        if isinstance(msg, dict) and msg.get("type") == "ticker":
            asset = COINBASE_PAIRS.get(msg.get("product_id", ""))
            if asset:
                yield Tick(self.name, asset, float(msg.get("price") or 0), 0.0, now)


class KrakenFeed(WebsocketFeed):
    name = "kraken"
    url = KRAKEN_WS

    def subscribe_message(self) -> dict[str, Any]:
        return {"method": "subscribe", "params": {"channel": "ticker", "symbol": ["BTC/USD", "ETH/USD", "SOL/USD"]}}

    def parse(self, msg: Any, now: float) -> Iterable[Tick]:
        if not isinstance(msg, dict) or msg.get("channel") != "ticker" or msg.get("type") != "update":
            return
        for d in msg.get("data") or []:
            asset = KRAKEN_PAIRS.get(d.get("symbol", ""))
            if asset:
                yield Tick(self.name, asset, float(d.get("last") or 0), 0.0, now)


def _oracle_ts(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    return ts / 1000.0 if ts > 1e12 else ts


class OracleFeed(WebsocketFeed):
    """Resolution-oracle relay; ticks carry the oracle's own timestamp for lag tracking."""

    name = "oracle"
    url = ORACLE_WS
    stale_after = 60.0

    def subscribe_message(self) -> dict[str, Any]:
        return {
            "action": "subscribe",
            "subscriptions": [{"topic": "crypto_prices_chainlink", "type": "*", "filters": ""}],
        }

    def parse(self, msg: Any, now: float) -> Iterable[Tick]:
        if not isinstance(msg, dict) or msg.get("topic") != "crypto_prices_chainlink":
            return
        payload = msg.get("payload")
        rows = payload if isinstance(payload, list) else [payload]
        for p in rows:
            if not isinstance(p, dict) or p.get("value") is None:
                continue
            asset = ORACLE_SYMBOLS.get(str(p.get("symbol", "")).lower())
            if asset:
                yield Tick(self.name, asset, float(p["value"]), 0.0, now, _oracle_ts(p.get("timestamp")))


@dataclass
class MultiExchangePredictor:
    """Median of fresh per-exchange prices, used as the predicted oracle price."""

    stale_after: float = 15.0
    _prices: dict[str, dict[str, tuple[float, float]]] = field(default_factory=dict)

    def update(self, exchange: str, asset: str, price: float, ts: float) -> None:
        if price > 0:
            self._prices.setdefault(asset, {})[exchange] = (price, ts)

    def predicted(self, asset: str, now: float | None = None) -> float | None:
        now = time.time() if now is None else now
        fresh = [p for p, ts in self._prices.get(asset, {}).values() if now - ts < self.stale_after]
        if not fresh:
            return None
        return statistics.median(fresh)

    def sources(self, asset: str, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return sum(1 for _, ts in self._prices.get(asset, {}).values() if now - ts < self.stale_after)

    def exchange_prices(self, asset: str) -> dict[str, float]:
        return {ex: p for ex, (p, _) in self._prices.get(asset, {}).items()}
