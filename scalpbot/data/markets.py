from __future__ import annotations

import json
import re
import time
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from scalpbot.config.trading import TIMEFRAME_SECS
from scalpbot.data.http_service import HttpService
from scalpbot.domain import Market
from scalpbot.infra import get_logger

log = get_logger("scalpbot.markets")

GAMMA_API = "https://gamma-api.polymarket.com"
CLOB_API = "https://clob.polymarket.com"
COINS = {"BTC": ("btc", "bitcoin"), "ETH": ("eth", "ethereum"), "SOL": ("sol", "solana")}
MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)
FALLBACK_TAGS = ("5M", "15M", "hourly", "daily")
TIMEFRAME_ORDER = {"5m": 0, "4h": 1, "1h": 2, "1d": 3, "15m": 4}
ET = ZoneInfo("America/New_York")

_CRYPTO_RE = re.compile(r"\bbitcoin\b|\bbtc\b|\bethereum\b|\beth\b|\bsolana\b|\bsol\b", re.I)
_Q_ASSET = (
    ("BTC", re.compile(r"\bbitcoin\b|\bbtc\b")),
    ("ETH", re.compile(r"\bethereum\b|\beth\b")),
    ("SOL", re.compile(r"\bsolana\b|\bsol\b")),
)
_Q_TIMEFRAME = (
    ("5m", re.compile(r"\b5 ?min")),
    ("15m", re.compile(r"15 ?min")),
    ("4h", re.compile(r"4 ?hour|4h")),
    ("1h", re.compile(r"1 ?hour|hourly|\d+(am|pm)")),
    ("1d", re.compile(r"daily|24h|1 ?day|today|on (" + "|".join(MONTHS) + ")")),
)


def event_slugs(now: float, assets: Iterable[str] = ("BTC", "ETH", "SOL")) -> list[str]:
    """Candidate gamma event slugs for the current and upcoming windows."""
    coins = [COINS[a] for a in assets if a in COINS]
    ts = int(now)
    slugs: list[str] = []
    for label, secs in (("5m", 300), ("15m", 900)):
        start = ts // secs * secs
        for short, _ in coins:
            slugs.append(f"{short}-updown-{label}-{start}")
            slugs.append(f"{short}-updown-{label}-{start + secs}")
    four_h = ts // 14400 * 14400
    for short, _ in coins:
        slugs.append(f"{short}-updown-4h-{four_h}")

    et_now = datetime.fromtimestamp(ts, ET)
    for offset in range(-1, 3):
        t = et_now + timedelta(hours=offset)
        h12 = t.hour % 12 or 12
        ampm = "pm" if t.hour >= 12 else "am"
        for _, full in coins:
            slugs.append(f"{full}-up-or-down-{MONTHS[t.month - 1]}-{t.day}-{h12}{ampm}-et")

    utc_now = datetime.fromtimestamp(ts, timezone.utc)
    for day in (utc_now, utc_now + timedelta(days=1)):
        for _, full in coins:
            slugs.append(f"{full}-up-or-down-on-{MONTHS[day.month - 1]}-{day.day}")
    return slugs


def _json_list(value: Any) -> list | None:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    return value if isinstance(value, list) else None


def _parse_end(raw: dict[str, Any]) -> float:
    text = raw.get("end_date_iso") or raw.get("endDate") or ""
    if not text:
        return 0.0
    try:
        return datetime.fromisoformat(str(text).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def detect_asset(slug: str, question: str) -> str | None:
    for asset, (short, full) in COINS.items():
        if slug.startswith(f"{short}-") or slug.startswith(f"{full}-"):
            return asset
    for asset, rx in _Q_ASSET:
        if rx.search(question):
            return asset
    return None


def detect_timeframe(slug: str, question: str) -> str | None:
    if "-5m-" in slug:
        return "5m"
    if "-15m-" in slug:
        return "15m"
    if "-4h-" in slug:
        return "4h"
    if re.search(r"\d+(am|pm)-et$", slug):
        return "1h"
    if "up-or-down-on-" in slug:
        return "1d"
    for tf, rx in _Q_TIMEFRAME:
        if rx.search(question):
            return tf
    return None


def parse_market(raw: dict[str, Any], now: float, *, min_secs: float = 60.0) -> Market | None:
    if raw.get("closed") or raw.get("resolved"):
        return None
    end = _parse_end(raw)
    if end and end - now < min_secs:
        return None
    if not end:
        return None

    tokens = _json_list(raw.get("clobTokenIds")) or [t.get("token_id") for t in raw.get("tokens") or []]
    if not tokens or not tokens[0]:
        return None
    up_token = str(tokens[0])
    down_token = str(tokens[1]) if len(tokens) > 1 and tokens[1] else ""

    question = (raw.get("question") or "").lower()
    events = raw.get("events") or []
    slug = (events[0].get("slug") or "").lower() if events else ""
    asset = detect_asset(slug, question)
    timeframe = detect_timeframe(slug, question)
    if asset is None or timeframe is None:
        return None

    prices = _json_list(raw.get("outcomePrices")) or []
    up = float(prices[0]) if len(prices) > 0 and prices[0] else 0.0
    down = float(prices[1]) if len(prices) > 1 and prices[1] else 0.0
    return Market(
        id=str(raw.get("condition_id") or raw.get("conditionId") or ""),
        asset=asset,
        timeframe=timeframe,
        end_time=end,
        up_token=up_token,
        down_token=down_token,
        up_price=up,
        down_price=down,
        question=raw.get("question") or "",
        slug=slug,
    )


def sort_markets(markets: Sequence[Market], now: float) -> list[Market]:
    return sorted(markets, key=lambda m: (TIMEFRAME_ORDER.get(m.timeframe, 99), m.secs_left(now)))


def _events_markets(events: Any) -> Iterable[dict[str, Any]]:
    for event in events if isinstance(events, list) else [events]:
        if not isinstance(event, dict):
            continue
        for m in event.get("markets") or []:
            if not m.get("events"):
                m["events"] = [{"slug": event.get("slug", ""), "title": event.get("title", "")}]
            yield m


class GammaMarketSource:
    """Discovers active up/down crypto markets from the gamma events API."""

    def __init__(
        self,
        http: HttpService,
        *,
        assets: Sequence[str] = ("BTC", "ETH", "SOL"),
        timeframes: Sequence[str] = tuple(TIMEFRAME_SECS),
        min_secs: float = 60.0,
        batch: int = 6,
    ):
        self.http = http
        self.assets = tuple(assets)
        self.timeframes = frozenset(timeframes)
        self.min_secs = min_secs
        self.batch = batch

    async def _fetch_events(self, urls_params: list[tuple[str, dict]]) -> list[dict[str, Any]]:
        results = await self.http.gather_bounded(
            [self.http.get_json(u, params=p, timeout=8.0, cache_ttl=12.0) for u, p in urls_params],
            self.batch,
        )
        raw: list[dict[str, Any]] = []
        for res in results:
            if isinstance(res, Exception):
                continue
            raw.extend(_events_markets(res))
        return raw

    async def fetch_raw(self, now: float) -> list[dict[str, Any]]:
        raw = await self._fetch_events([(f"{GAMMA_API}/events", {"slug": s}) for s in event_slugs(now, self.assets)])
        if len(raw) < 6:
            tagged = await self._fetch_events(
                [(f"{GAMMA_API}/events", {"closed": "false", "limit": 20, "tag": t}) for t in FALLBACK_TAGS]
            )
            for m in tagged:
                title = (m["events"][0].get("title") or "").lower()
                if _CRYPTO_RE.search(title) or "up or down" in title:
                    raw.append(m)
        return raw

    async def list_active_markets(self, now: float | None = None) -> list[Market]:
        now = time.time() if now is None else now
        seen: set[str] = set()
        out: list[Market] = []
        for raw in await self.fetch_raw(now):
            m = parse_market(raw, now, min_secs=self.min_secs)
            if m is None or not m.id or m.id in seen:
                continue
            if m.asset not in self.assets or m.timeframe not in self.timeframes:
                continue
            seen.add(m.id)
            out.append(m)
        log.info("discovered %d markets", len(out))
        return sort_markets(out, now)

    async def midpoints(self, token_ids: Sequence[str]) -> dict[str, float]:
        results = await self.http.gather_bounded(
            [self.http.get_json(f"{CLOB_API}/midpoint", params={"token_id": t}, timeout=4.0) for t in token_ids],
            self.batch,
        )
        out: dict[str, float] = {}
        for token, res in zip(token_ids, results):
            if isinstance(res, Exception) or not isinstance(res, dict):
                continue
            mid = float(res.get("mid") or res.get("price") or 0)
            if mid > 0:
                out[token] = mid
        return out
