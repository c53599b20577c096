from __future__ import annotations

import asyncio
import time

from aiohttp import web

from scalpbot.data.snapshot_store import SnapshotStore
from scalpbot.infra.log import get_logger

STALE_AFTER = 30.0

HTML = """<!doctype html><html><head><meta charset='utf-8'><title>scalpbot</title></head>
<body style='font-family:system-ui;background:#060b16;color:#dbe4ff;padding:16px'>
<h2>scalpbot</h2>
<div id='head'></div>
<pre id='out'>loading...</pre>
<script>
async function tick(){
  try{
    const r=await fetch('/api',{cache:'no-store'});
    const j=await r.json();
    const s=j.stats||{};
    document.getElementById('head').textContent=
      `bankroll $${(s.bankroll||0).toFixed(2)} | equity $${(s.equity||0).toFixed(2)} | open ${(s.positions||[]).length} | last error: ${s.last_error||'-'}`;
    document.getElementById('out').textContent=JSON.stringify(s,null,2);
  }catch(e){document.getElementById('out').textContent='dashboard error: '+e;}
}
setInterval(tick,2000);tick();
</script>
</body></html>"""


def build_app(store: SnapshotStore) -> web.Application:
    async def handle_html(_req: web.Request) -> web.Response:
        return web.Response(text=HTML, content_type="text/html")

    async def handle_api(_req: web.Request) -> web.Response:
        return web.json_response(store.read() or {}, headers={"Cache-Control": "no-store"})

    async def handle_health(_req: web.Request) -> web.Response:
        payload = store.read() or {}
        ts = float((payload.get("stats") or {}).get("ts") or 0.0)
        age = time.time() - ts if ts else None
        ok = age is not None and age < STALE_AFTER
        body = {"ok": ok, "snapshot_age": round(age, 1) if age is not None else None}
        return web.json_response(body, status=200 if ok else 503)

    app = web.Application()
    app.router.add_get("/", handle_html)
    app.router.add_get("/api", handle_api)
    app.router.add_get("/health", handle_health)
    return app


async def run_dashboard(*, data_dir: str, port: int, log_level: str = "INFO") -> None:
    log = get_logger("scalpbot.dashboard", log_level)
    runner = web.AppRunner(build_app(SnapshotStore(data_dir)))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    log.info("dashboard running on :%s", port)

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await runner.cleanup()
