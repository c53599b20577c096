from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None:
        value = default
    else:
        value = int(raw)
    if min_value is not None:
        value = max(min_value, value)
    return value


def _env_float(name: str, default: float, min_value: float | None = None) -> float:
    raw = os.environ.get(name)
    if raw is None:
        value = default
    else:
        value = float(raw)
    if min_value is not None:
        value = max(min_value, value)
    return value


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    dry_run: bool
    data_dir: str
    log_level: str
    dashboard_enabled: bool
    dashboard_port: int
    starting_bankroll: float
    max_positions: int
    daily_loss_limit: float
    assets: tuple[str, ...]
    timeframes: tuple[str, ...]
    fast_interval: float
    full_interval: float
    snapshot_interval: float
    verify_delay: float
    order_timeout: float
    auto_daily_entry: bool
    clob_host: str = "https://clob.polymarket.com"
    chain_id: int = 137
    private_key: str = ""
    funder: str = ""
    signature_type: int = 0
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""

    @property
    def live(self) -> bool:
        return not self.dry_run


def load_settings() -> Settings:
    load_dotenv(os.path.expanduser("~/.scalpbot.env"))
    dry_run = _env_bool("DRY_RUN", True)
    return Settings(
        dry_run=dry_run,
        data_dir=os.environ.get("DATA_DIR", "/data"),
        log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper(),
        dashboard_enabled=_env_bool("DASHBOARD_ENABLED", True),
        dashboard_port=_env_int("DASHBOARD_PORT", 8080, min_value=1),
        starting_bankroll=_env_float("STARTING_BANKROLL", 8.25, min_value=0.0),
        max_positions=_env_int("MAX_POSITIONS", 3, min_value=1),
        daily_loss_limit=_env_float("DAILY_LOSS_LIMIT", 6.0, min_value=0.0),
        assets=tuple(a.upper() for a in _env_list("ASSETS", "BTC,ETH,SOL")),
        timeframes=_env_list("TIMEFRAMES", "5m,15m,1h,4h,1d"),
        fast_interval=_env_float("FAST_INTERVAL", 1.5, min_value=0.1),
        full_interval=_env_float("FULL_INTERVAL", 30.0, min_value=1.0),
        snapshot_interval=_env_float("SNAPSHOT_INTERVAL", 5.0, min_value=0.5),
        verify_delay=_env_float("VERIFY_DELAY", 0.0 if dry_run else 2.0, min_value=0.0),
        order_timeout=_env_float("ORDER_TIMEOUT", 10.0, min_value=1.0),
        auto_daily_entry=_env_bool("AUTO_DAILY_ENTRY", False),
        clob_host=os.environ.get("CLOB_HOST", "https://clob.polymarket.com").strip(),
        chain_id=_env_int("CHAIN_ID", 137),
        private_key=os.environ.get("PRIVATE_KEY", "").strip(),
        funder=os.environ.get("FUNDER_ADDRESS", "").strip(),
        signature_type=_env_int("SIGNATURE_TYPE", 0, min_value=0),
        api_key=os.environ.get("POLY_API_KEY", "").strip(),
        api_secret=os.environ.get("POLY_API_SECRET", "").strip(),
        api_passphrase=os.environ.get("POLY_API_PASSPHRASE", "").strip(),
    )
