from scalpbot.config import TradingConfig, load_settings


def test_settings_from_env(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("DRY_RUN", "false")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("ASSETS", "btc, eth")
    monkeypatch.setenv("MAX_POSITIONS", "0")
    monkeypatch.setenv("STARTING_BANKROLL", "25")
    monkeypatch.delenv("VERIFY_DELAY", raising=False)
    s = load_settings()
    assert s.live
    assert s.assets == ("BTC", "ETH")
    assert s.max_positions == 1
    assert s.starting_bankroll == 25.0
    assert s.verify_delay == 2.0


def test_paper_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    for name in ("DRY_RUN", "VERIFY_DELAY", "ASSETS", "TIMEFRAMES", "MAX_POSITIONS"):
        monkeypatch.delenv(name, raising=False)
    s = load_settings()
    assert s.dry_run
    assert s.verify_delay == 0.0
    assert s.max_positions == 3
    assert s.timeframes == ("5m", "15m", "1h", "4h", "1d")


def test_trading_config_lookup() -> None:
    cfg = TradingConfig()
    assert cfg.rules("1d").profit_target == 0.45
    assert cfg.rules("unknown") is cfg.rules("15m")
    assert cfg.vol("SOL") == 0.80
    assert cfg.vol("DOGE") == cfg.default_vol
    assert cfg.is_long("4h")
    assert not cfg.is_long("15m")
