from .manager import ExecutionAdapter, ExecutionManager, ExecutionResult, FillResult, OrderStatus
from .paper import PaperExecution

__all__ = [
    "ExecutionAdapter",
    "ExecutionManager",
    "ExecutionResult",
    "FillResult",
    "OrderStatus",
    "PaperExecution",
]
