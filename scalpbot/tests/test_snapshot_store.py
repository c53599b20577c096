from pathlib import Path

from scalpbot.data.snapshot_store import SnapshotStore
from scalpbot.infra import ErrorTracker, RuntimeEventLogger


def test_snapshot_store_roundtrip(tmp_path: Path) -> None:
    store = SnapshotStore(str(tmp_path))
    assert store.load_snapshot() is None
    store.save_snapshot({"bankroll": 8.25, "positions": [{"asset": "ETH"}]})
    out = store.load_snapshot()
    assert out["bankroll"] == 8.25
    assert out["positions"][0]["asset"] == "ETH"
    assert not store.path.with_suffix(".tmp").exists()


def test_corrupt_snapshot_reads_as_missing(tmp_path: Path) -> None:
    store = SnapshotStore(str(tmp_path))
    store.path.write_text("{not json")
    assert store.read() is None


def test_event_logger_appends_jsonl(tmp_path: Path) -> None:
    events = RuntimeEventLogger(str(tmp_path))
    events.emit("entry.filled", market_id="m1")
    events.emit("exit.closed", market_id="m1", pnl=0.4)
    lines = events.path.read_text().splitlines()
    assert len(lines) == 2
    assert '"category":"exit"' in lines[1]


def test_error_tracker_surfaces_periodically() -> None:
    seen: list[str] = []
    errors = ErrorTracker()
    for _ in range(25):
        errors.tick("clob_buy", seen.append, "boom")
    assert len(seen) == 2
    assert errors.summary() == {"clob_buy": 25}
    errors.reset("clob_buy")
    assert errors.summary() == {}
