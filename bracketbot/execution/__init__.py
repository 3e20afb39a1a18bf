from .order_executor import (
    Bracket,
    ExecutionOutcome,
    ExecutionState,
    OrderExecutionEngine,
    compute_bracket,
)

__all__ = [
    "Bracket",
    "ExecutionOutcome",
    "ExecutionState",
    "OrderExecutionEngine",
    "compute_bracket",
]
