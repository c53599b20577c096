from .exit_rules import EXIT_RULES, ExitContext, ExitDecision, evaluate_exit
from .positions import PositionManager
from .state import EngineState
from .trader import Trader

__all__ = [
    "EXIT_RULES",
    "EngineState",
    "ExitContext",
    "ExitDecision",
    "PositionManager",
    "Trader",
    "evaluate_exit",
]
