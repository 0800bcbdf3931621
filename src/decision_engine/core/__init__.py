"""Core models, errors and configuration."""

from .models import (
    DecisionTree,
    DecisionTreeCondition,
    DecisionTreeExecutionPath,
    DecisionTreeOperation,
    ExecutionStatus,
    ProjectRun,
    TreeRows,
)
from .errors import (
    ConfigurationError,
    EngineError,
    GraphValidationError,
    HistoryCorruptedError,
    InvalidTransitionError,
    RunNotFoundError,
    StaleEligibilityError,
    TreeNotFoundError,
    UnresolvedBranchError,
)
from .config import EngineConfig, load_config, clear_config_cache, create_store

__all__ = [
    "DecisionTree",
    "DecisionTreeCondition",
    "DecisionTreeExecutionPath",
    "DecisionTreeOperation",
    "ExecutionStatus",
    "ProjectRun",
    "TreeRows",
    "ConfigurationError",
    "EngineError",
    "GraphValidationError",
    "HistoryCorruptedError",
    "InvalidTransitionError",
    "RunNotFoundError",
    "StaleEligibilityError",
    "TreeNotFoundError",
    "UnresolvedBranchError",
    "EngineConfig",
    "load_config",
    "clear_config_cache",
    "create_store",
]
