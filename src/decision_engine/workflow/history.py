"""Execution history: the append-only decision log of a run.

The ordered record sequence is the single source of truth for a run.
Current state is folded out of it on demand; records are never edited or
deleted, corrections are appended as superseding records.
"""

import logging
import uuid
from typing import Any, List, Mapping, Optional, Union

from ..core.models import (
    DecisionTreeExecutionPath,
    DecisionTreeOperation,
    ExecutionStatus,
    ProjectRun,
)
from ..storage.base import DecisionTreeStore
from .graph import OperationNode
from .resolver import RunState

logger = logging.getLogger(__name__)


class ExecutionHistoryRecorder:
    """Appends decision records for runs and replays them into a RunState."""

    def __init__(self, store: DecisionTreeStore):
        self.store = store

    def append(
        self,
        run: ProjectRun,
        operation: Union[OperationNode, DecisionTreeOperation],
        chosen_path: Optional[str],
        status: ExecutionStatus,
        context: Optional[Mapping[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        condition_id: Optional[str] = None,
        next_operation_id: Optional[str] = None,
    ) -> DecisionTreeExecutionPath:
        """Append one record and return the stored one.

        A retry of the same (run, operation, status) returns the record that
        is already stored.

        Raises:
            InvalidTransitionError: the operation already holds a different
                terminal status, or the status would move backwards.
        """
        op = operation.operation if isinstance(operation, OperationNode) else operation
        record = DecisionTreeExecutionPath(
            id=uuid.uuid4().hex,
            project_run_id=run.id,
            decision_tree_id=run.decision_tree_id,
            operation_id=op.id,
            phase_name=op.phase_name,
            operation_name=op.operation_name,
            chosen_path=chosen_path,
            chosen_condition_id=condition_id,
            next_operation_id=next_operation_id,
            user_id=user_id or run.user_id,
            decision_data=dict(context or {}),
            execution_status=ExecutionStatus(status),
        )
        stored = self.store.append_execution_path(record)
        if stored.id != record.id:
            logger.debug(f"Append for {op.id} ({record.execution_status.value}) deduplicated")
        return stored

    def list_for_run(self, run: Union[ProjectRun, str]) -> List[DecisionTreeExecutionPath]:
        """All records of a run in append order."""
        run_id = run.id if isinstance(run, ProjectRun) else run
        return self.store.list_execution_paths(run_id)

    def current_state(self, run: ProjectRun) -> RunState:
        """Fold the run's history into its current state."""
        return RunState.from_records(self.list_for_run(run), start_context=run.context)
