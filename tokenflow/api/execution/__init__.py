# Execution Package for TokenFlow Engine
# Provides process execution components

from .token_context import TokenContext, TokenState, Cursor, CallFrame
from .handler_context import HandlerContext, HandlerResult
from .expression_evaluator import ConditionEvaluator
from .token_handler import TokenHandler
from .error_handler import ErrorHandler
from .node_handlers import NodeHandlers
from .engine import ExecutionEngine
from .scheduler import ProcessFacade, ReadyQueue

__all__ = [
    "TokenContext",
    "TokenState",
    "Cursor",
    "CallFrame",
    "HandlerContext",
    "HandlerResult",
    "ConditionEvaluator",
    "TokenHandler",
    "ErrorHandler",
    "NodeHandlers",
    "ExecutionEngine",
    "ProcessFacade",
    "ReadyQueue",
]
