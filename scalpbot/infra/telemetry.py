from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Any

_log = logging.getLogger("scalpbot.telemetry")


class RuntimeEventLogger:
    """Append-only structured event logger for runtime observability."""

    def __init__(self, data_dir: str, filename: str = "runtime_events.jsonl"):
        self.path = Path(data_dir) / filename
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, event: str, **fields: Any) -> None:
        payload = {
            "ts": time.time(),
            "event": event,
            "category": event.split(".", 1)[0],
            **fields,
        }
        row = json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)
        try:
            with self._lock:
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(row + "\n")
        except OSError as exc:
            _log.warning("telemetry write failed event=%s err=%s", event, exc)


class ErrorTracker:
    """Lightweight error counters with periodic surfacing."""

    def __init__(self) -> None:
        self.counts: defaultdict[str, int] = defaultdict(int)

    def tick(self, key: str, log_fn, err=None, every: int = 25) -> int:
        self.counts[key] += 1
        n = self.counts[key]
        if n == 1 or n % every == 0:
            suffix = f" last={err}" if err else ""
            log_fn(f"{key} repeated {n}x{suffix}")
        return n

    def reset(self, key: str) -> None:
        self.counts.pop(key, None)

    def summary(self) -> dict[str, int]:
        return dict(self.counts)
