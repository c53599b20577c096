from .app import App, run_main
from .modular_engine import LoopHealth, ModularEngine, RuntimeHealth
from .supervisor import LoopSupervisor

__all__ = ["App", "LoopHealth", "LoopSupervisor", "ModularEngine", "RuntimeHealth", "run_main"]
