from .conviction import ConvictionScorer, Evidence, ProbeBook, ProbeRecord, pattern_key
from .engine import Route, StrategyEngine
from .gates import pass_account_gates, pass_market_gates
from .intelligence import EntryVerdict, ExitVerdict, MarketStructureAnalyzer
from .probability import BinaryProbabilityModel, estimate_probability, kelly_fraction
from .signals import SignalConfig, SignalEngine
from .sizing import BetSizer, BetTier

__all__ = [
    "BetSizer",
    "BetTier",
    "BinaryProbabilityModel",
    "ConvictionScorer",
    "EntryVerdict",
    "Evidence",
    "ExitVerdict",
    "MarketStructureAnalyzer",
    "ProbeBook",
    "ProbeRecord",
    "Route",
    "SignalConfig",
    "SignalEngine",
    "StrategyEngine",
    "estimate_probability",
    "kelly_fraction",
    "pass_account_gates",
    "pass_market_gates",
    "pattern_key",
]
