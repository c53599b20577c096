from .log import get_logger
from .telemetry import ErrorTracker, RuntimeEventLogger

__all__ = ["get_logger", "ErrorTracker", "RuntimeEventLogger"]
