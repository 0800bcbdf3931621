"""Engine error taxonomy.

Graph-level errors are raised and stop a tree from being published or a run
from starting. Per-decision errors are carried back to callers inside a
``DecisionResult`` so the hosting application can offer a specific remedy.
"""

from typing import Iterable, List, Optional


class EngineError(Exception):
    """Base class for all decision engine errors."""


class GraphValidationError(EngineError):
    """A tree failed structural validation (cycle, dangling reference, duplicate priority)."""

    def __init__(self, tree_id: str, problems: Iterable[str]):
        self.tree_id = tree_id
        self.problems: List[str] = list(problems)
        summary = "; ".join(self.problems) if self.problems else "unknown problem"
        super().__init__(f"Graph validation failed for tree {tree_id}: {summary}")


class StaleEligibilityError(EngineError):
    """A decision was recorded for an operation that is not currently eligible."""

    def __init__(self, run_id: str, operation_id: str, eligible: Iterable[str] = ()):
        self.run_id = run_id
        self.operation_id = operation_id
        self.eligible = list(eligible)
        super().__init__(
            f"Operation {operation_id} is not eligible in run {run_id} "
            f"(eligible: {', '.join(self.eligible) or 'none'})"
        )


class InvalidTransitionError(EngineError):
    """A status transition conflicts with what the history already holds."""

    def __init__(
        self,
        run_id: str,
        operation_id: str,
        current: Optional[str],
        requested: str,
        reason: Optional[str] = None,
    ):
        self.run_id = run_id
        self.operation_id = operation_id
        self.current = current
        self.requested = requested
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Invalid transition for operation {operation_id} in run {run_id} "
            f"({current or 'none'} -> {requested}){detail}"
        )


class UnresolvedBranchError(EngineError):
    """No condition matched and no fallback exists; the run is stuck at this operation."""

    def __init__(self, operation_id: str, run_id: Optional[str] = None):
        self.operation_id = operation_id
        self.run_id = run_id
        where = f" in run {run_id}" if run_id else ""
        super().__init__(
            f"Unresolved branch at operation {operation_id}{where}: "
            f"no condition matched and no fallback is defined"
        )


class ConfigurationError(EngineError):
    """A condition could not be evaluated (unknown type or malformed data)."""

    def __init__(self, condition_type: str, message: str = "unknown condition type"):
        self.condition_type = condition_type
        super().__init__(f"Condition '{condition_type}': {message}")


class TreeNotFoundError(EngineError):
    """Referenced decision tree (or active tree for a project) does not exist."""


class RunNotFoundError(EngineError):
    """Referenced project run does not exist."""


class HistoryCorruptedError(EngineError):
    """A run's stored history could not be read back in full."""

    def __init__(self, run_id: str, detail: str):
        self.run_id = run_id
        self.detail = detail
        super().__init__(f"History of run {run_id} is unreadable: {detail}")
