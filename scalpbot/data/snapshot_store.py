from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

_log = logging.getLogger("scalpbot.snapshot")


class SnapshotStore:
    """JSON engine-state snapshot, written atomically via a temp file."""

    def __init__(self, data_dir: str, filename: str = "engine_snapshot.json"):
        self.path = Path(data_dir) / filename
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, payload: dict[str, Any]) -> None:
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str))
        tmp.replace(self.path)

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            _log.warning("snapshot unreadable path=%s err=%s", self.path, exc)
            return None

    # persistence interface used by the engine

    def save_snapshot(self, state: dict[str, Any]) -> None:
        self.write(state)

    def load_snapshot(self) -> dict[str, Any] | None:
        return self.read()
