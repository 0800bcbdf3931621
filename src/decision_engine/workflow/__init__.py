"""Decision tree workflow engine: conditions, graph, resolution and history."""

from .conditions import ConditionEvaluator, ConditionRegistry, ConditionType, evaluate
from .graph import OperationGraph, OperationNode, build_graph
from .resolver import PathResolver, Resolution, RunState, resolve_next, select_branch
from .history import ExecutionHistoryRecorder
from .definitions import TreeDefinition, load_tree_definition
from .engine import DecisionResult, EligibleOperation, RunProgress, WorkflowEngine

__all__ = [
    "ConditionEvaluator",
    "ConditionRegistry",
    "ConditionType",
    "evaluate",
    "OperationGraph",
    "OperationNode",
    "build_graph",
    "PathResolver",
    "Resolution",
    "RunState",
    "resolve_next",
    "select_branch",
    "ExecutionHistoryRecorder",
    "TreeDefinition",
    "load_tree_definition",
    "DecisionResult",
    "EligibleOperation",
    "RunProgress",
    "WorkflowEngine",
]
