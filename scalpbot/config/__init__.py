from .settings import Settings, load_settings
from .trading import LONG_TIMEFRAMES, TIMEFRAME_SECS, TimeframeRules, TradingConfig

__all__ = ["Settings", "load_settings", "LONG_TIMEFRAMES", "TIMEFRAME_SECS", "TimeframeRules", "TradingConfig"]
