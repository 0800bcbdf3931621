"""Storage interface consumed by the engine.

The hosting application implements this against its database. Two
implementations ship with the package: ``InMemoryStore`` and ``FileStore``.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..core.errors import InvalidTransitionError
from ..core.models import (
    DecisionTree,
    DecisionTreeExecutionPath,
    ExecutionStatus,
    ProjectRun,
    TreeRows,
)

logger = logging.getLogger(__name__)


def find_existing(
    records: Sequence[DecisionTreeExecutionPath],
    operation_id: str,
    status: ExecutionStatus,
) -> Optional[DecisionTreeExecutionPath]:
    """Return the record already stored under (run, operation, status), if any."""
    for record in records:
        if record.operation_id == operation_id and record.execution_status == status:
            return record
    return None


def current_status(
    records: Sequence[DecisionTreeExecutionPath], operation_id: str
) -> Optional[ExecutionStatus]:
    """Furthest status recorded for an operation (terminal wins)."""
    current: Optional[ExecutionStatus] = None
    for record in records:
        if record.operation_id != operation_id:
            continue
        status = ExecutionStatus(record.execution_status)
        if current is None or (not current.is_terminal and status.rank >= current.rank):
            current = status
    return current


def check_transition(
    records: Sequence[DecisionTreeExecutionPath],
    run_id: str,
    operation_id: str,
    requested: ExecutionStatus,
) -> None:
    """Reject transitions that conflict with the run's history.

    Statuses only move forward (pending -> in_progress -> terminal) and an
    operation holds at most one terminal status. Repeating the current status
    is allowed here; callers deduplicate it.

    Raises:
        InvalidTransitionError
    """
    current = current_status(records, operation_id)
    if current is None or current == requested:
        return
    if current.is_terminal:
        raise InvalidTransitionError(
            run_id, operation_id, current.value, requested.value,
            reason="a terminal status is already recorded",
        )
    if requested.rank <= current.rank:
        raise InvalidTransitionError(
            run_id, operation_id, current.value, requested.value,
            reason="status cannot move backwards",
        )


def prepare_append(
    records: Sequence[DecisionTreeExecutionPath],
    record: DecisionTreeExecutionPath,
) -> Optional[DecisionTreeExecutionPath]:
    """Idempotent-insert check shared by the backends.

    Returns the existing record when (run, operation, status) is already
    stored, otherwise None after validating the transition.
    """
    status = ExecutionStatus(record.execution_status)
    existing = find_existing(records, record.operation_id, status)
    if existing is not None:
        logger.debug(
            f"Duplicate {status.value} for {record.operation_id} in run "
            f"{record.project_run_id} collapsed onto {existing.id}"
        )
        return existing
    check_transition(records, record.project_run_id, record.operation_id, status)
    return None


class DecisionTreeStore(ABC):
    """Persistence boundary for trees, runs and execution history."""

    # -- trees ------------------------------------------------------------

    @abstractmethod
    def load_tree(self, tree_id: str) -> TreeRows:
        """Load a tree with its operations and conditions.

        Raises:
            TreeNotFoundError
        """

    @abstractmethod
    def load_active_tree_for_project(self, project_id: str) -> str:
        """Id of the tree version currently active for a project.

        Raises:
            TreeNotFoundError
        """

    @abstractmethod
    def save_tree(self, rows: TreeRows) -> None:
        """Persist a new tree version with its rows."""

    @abstractmethod
    def list_trees(self, project_id: str) -> List[DecisionTree]:
        """All versions for a project, newest first."""

    @abstractmethod
    def set_active_tree(self, project_id: str, tree_id: str) -> DecisionTree:
        """Mark one version active and every other version of the project inactive."""

    def next_tree_version(self, project_id: str) -> int:
        versions = [tree.version for tree in self.list_trees(project_id)]
        return max(versions, default=0) + 1

    # -- runs -------------------------------------------------------------

    @abstractmethod
    def create_run(self, run: ProjectRun) -> ProjectRun:
        """Persist a new run."""

    @abstractmethod
    def load_run(self, run_id: str) -> ProjectRun:
        """Raises:
            RunNotFoundError
        """

    # -- execution history ------------------------------------------------

    @abstractmethod
    def append_execution_path(
        self, record: DecisionTreeExecutionPath
    ) -> DecisionTreeExecutionPath:
        """Append a history record.

        Must be idempotent on (run id, operation id, status): a duplicate
        returns the stored record instead of adding a second one. Must
        reject conflicting terminal statuses atomically.

        Raises:
            InvalidTransitionError
        """

    @abstractmethod
    def list_execution_paths(self, run_id: str) -> List[DecisionTreeExecutionPath]:
        """All records of a run in append order."""
