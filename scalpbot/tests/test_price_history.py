from scalpbot.data.price_history import PriceHistoryStore


def test_dedup_window_coalesces_ticks() -> None:
    store = PriceHistoryStore(dedup_window=0.5)
    assert store.record("BTC", 100.0, 1.0, ts=1000.0)
    assert store.record("BTC", 101.0, 2.0, ts=1000.2)
    assert store.size("BTC") == 1
    obs = store.history("BTC")[-1]
    assert obs.price == 101.0
    assert obs.volume == 3.0


def test_rejects_bad_prices_and_out_of_order() -> None:
    store = PriceHistoryStore()
    assert not store.record("BTC", 0.0, ts=1.0)
    assert not store.record("BTC", float("nan"), ts=1.0)
    assert store.record("BTC", 10.0, ts=5.0)
    assert not store.record("BTC", 11.0, ts=4.0)
    assert store.latest("BTC") == 10.0


def test_capacity_evicts_oldest() -> None:
    store = PriceHistoryStore(capacity=5, dedup_window=0.0)
    for i in range(8):
        store.record("tok", 0.5 + i * 0.01, ts=float(i))
    assert store.size("tok") == 5
    assert store.first_ts("tok") == 3.0


def test_at_returns_nearest_within_gap() -> None:
    store = PriceHistoryStore(max_gap=120.0)
    for i in range(0, 301, 10):
        store.record("ETH", 2000.0 + i, ts=1000.0 + i)
    now = 1300.0
    assert store.at("ETH", 100, now) == 2200.0
    assert store.at("ETH", 104, now) == 2200.0
    # nearest sample is 300s before the target
    assert store.at("ETH", 600, now) is None


def test_momentum_and_missing_key() -> None:
    store = PriceHistoryStore()
    store.record("SOL", 100.0, ts=0.0)
    store.record("SOL", 110.0, ts=60.0)
    assert abs(store.momentum("SOL", 60, now=60.0) - 0.10) < 1e-9
    assert store.momentum("XRP", 60, now=60.0) == 0.0
    assert store.at("XRP", 10) is None


def test_staleness_and_drop() -> None:
    store = PriceHistoryStore()
    store.record("a", 1.0, ts=0.0)
    store.record("b", 1.0, ts=100.0)
    assert store.is_stale("a", 60, now=100.0)
    assert not store.is_stale("b", 60, now=100.0)
    assert store.is_stale("missing", 60, now=100.0)
    assert store.drop_stale(60, now=100.0) == ["a"]
    assert store.keys() == ["b"]


def test_prune_keeps_only_wanted_keys() -> None:
    store = PriceHistoryStore()
    for key in ("a", "b", "c"):
        store.record(key, 1.0, ts=10.0)
    assert store.prune(["b", "z"]) == ["a", "c"]
    assert store.keys() == ["b"]
    assert store.latest("a") is None
