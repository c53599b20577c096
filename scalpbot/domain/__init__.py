from .models import (
    DOWN,
    SIDES,
    UP,
    ClosedTrade,
    EntryIntent,
    ExecutionStats,
    InvariantViolation,
    Market,
    PatternKey,
    Position,
    PositionState,
    PredictiveEdge,
    Signal,
    opposite,
    side_direction,
)

__all__ = [
    "DOWN",
    "SIDES",
    "UP",
    "ClosedTrade",
    "EntryIntent",
    "ExecutionStats",
    "InvariantViolation",
    "Market",
    "PatternKey",
    "Position",
    "PositionState",
    "PredictiveEdge",
    "Signal",
    "opposite",
    "side_direction",
]
