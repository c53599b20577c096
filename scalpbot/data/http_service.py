from __future__ import annotations

import asyncio
import json
import random
import time
import urllib.parse
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any

import aiohttp

from scalpbot.infra import ErrorTracker, get_logger

log = get_logger("scalpbot.http")


@dataclass(frozen=True)
class HttpConfig:
    conn_limit: int = 20
    conn_per_host: int = 8
    dns_ttl_sec: int = 300
    keepalive_sec: float = 30.0
    min_gap_ms: float = 50.0
    retries_429: int = 2
    retries_5xx: int = 2
    cache_ttl: float = 0.0
    stale_ttl: float = 60.0


@dataclass
class _Cached:
    ts: float
    data: Any

    def fresh(self, ttl: float) -> bool:
        return time.time() - self.ts <= ttl


class HttpService:
    """Shared aiohttp session with per-host pacing, retry/backoff and a stale-cache fallback."""

    def __init__(self, cfg: HttpConfig | None = None, errors: ErrorTracker | None = None):
        self.cfg = cfg or HttpConfig()
        self.errors = errors or ErrorTracker()
        self._session: aiohttp.ClientSession | None = None
        self._cache: dict[str, _Cached] = {}
        self._host_backoff: dict[str, float] = {}
        self._host_last_ts: dict[str, float] = {}
        self._host_locks: dict[str, asyncio.Lock] = {}

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.cfg.conn_limit,
                limit_per_host=self.cfg.conn_per_host,
                ttl_dns_cache=self.cfg.dns_ttl_sec,
                keepalive_timeout=self.cfg.keepalive_sec,
            )
            self._session = aiohttp.ClientSession(connector=connector, headers={"User-Agent": "scalpbot/1.0"})
        return self._session

    def _stale(self, cached: _Cached | None, stale_ttl: float) -> Any:
        if cached is not None and cached.fresh(stale_ttl):
            return cached.data
        return None

    async def get_json(
        self,
        url: str,
        *,
        params: dict | None = None,
        timeout: float = 8.0,
        cache_ttl: float | None = None,
        stale_ttl: float | None = None,
    ) -> Any:
        cache_ttl = self.cfg.cache_ttl if cache_ttl is None else max(0.0, cache_ttl)
        stale_ttl = self.cfg.stale_ttl if stale_ttl is None else max(1.0, stale_ttl)
        host = urllib.parse.urlparse(url).netloc
        key = f"{url}?{json.dumps(params or {}, sort_keys=True, separators=(',', ':'))}"
        cached = self._cache.get(key)
        if cached is not None and cache_ttl > 0 and cached.fresh(cache_ttl):
            return cached.data

        session = await self._ensure_session()
        lock = self._host_locks.setdefault(host, asyncio.Lock())
        async with lock:
            gap = self.cfg.min_gap_ms / 1000.0
            since = time.time() - self._host_last_ts.get(host, 0.0)
            if since < gap:
                await asyncio.sleep(gap - since)
            self._host_last_ts[host] = time.time()

            until = self._host_backoff.get(host, 0.0)
            if until > time.time():
                stale = self._stale(cached, stale_ttl)
                if stale is not None:
                    return stale
                raise RuntimeError(f"http 429 backoff active for {host} ({until - time.time():.0f}s left)")

            last_err: Exception | None = None
            attempts = max(1, self.cfg.retries_429 + 1)
            for i in range(attempts):
                try:
                    async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=timeout)) as r:
                        if r.status == 429:
                            retry_after = max(1.0, float(r.headers.get("Retry-After", "2") or 2.0))
                            backoff = min(90.0, retry_after + 0.35 * i + random.uniform(0.05, 0.35))
                            self._host_backoff[host] = max(self._host_backoff.get(host, 0.0), time.time() + backoff)
                            if i < attempts - 1:
                                await asyncio.sleep(backoff)
                                continue
                            stale = self._stale(cached, stale_ttl)
                            if stale is not None:
                                log.warning("429 %s -> using stale cache", host)
                                return stale
                            raise RuntimeError(f"http 429 {url}")
                        if r.status >= 500 and i < self.cfg.retries_5xx:
                            await asyncio.sleep(0.25 + 0.25 * i)
                            continue
                        if r.status >= 400:
                            stale = self._stale(cached, stale_ttl)
                            if stale is not None:
                                return stale
                            raise RuntimeError(f"http {r.status} {url}")
                        payload = await r.json(content_type=None)
                        self._cache[key] = _Cached(ts=time.time(), data=payload)
                        self.errors.reset("http_get_json")
                        return payload
                except RuntimeError as e:
                    last_err = e
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                    last_err = e
                    if i < attempts - 1:
                        await asyncio.sleep(0.20 + 0.15 * i)
                        continue

            stale = self._stale(cached, stale_ttl)
            if stale is not None:
                return stale
            self.errors.tick("http_get_json", log.warning, err=last_err, every=20)
            raise RuntimeError(f"http get failed: {url} err={last_err}")

    async def gather_bounded(self, coros: list[Awaitable], limit: int) -> list:
        sem = asyncio.Semaphore(max(1, limit))

        async def _run(coro):
            async with sem:
                return await coro

        return await asyncio.gather(*[_run(c) for c in coros], return_exceptions=True)
