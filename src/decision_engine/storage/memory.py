"""Dict-backed store for tests and embedded use."""

import logging
import threading
from collections import defaultdict
from typing import Dict, List

from ..core.errors import RunNotFoundError, TreeNotFoundError
from ..core.models import (
    DecisionTree,
    DecisionTreeExecutionPath,
    ProjectRun,
    TreeRows,
    utc_now,
)
from .base import DecisionTreeStore, prepare_append

logger = logging.getLogger(__name__)


class InMemoryStore(DecisionTreeStore):
    """Thread-safe in-process store.

    One lock serializes writes so concurrent duplicate completions collapse
    onto a single record and readers never see a half-appended history.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._trees: Dict[str, TreeRows] = {}
        self._runs: Dict[str, ProjectRun] = {}
        self._history: Dict[str, List[DecisionTreeExecutionPath]] = defaultdict(list)

    def load_tree(self, tree_id: str) -> TreeRows:
        with self._lock:
            rows = self._trees.get(tree_id)
        if rows is None:
            raise TreeNotFoundError(f"Decision tree {tree_id} not found")
        return rows.model_copy(deep=True)

    def load_active_tree_for_project(self, project_id: str) -> str:
        with self._lock:
            for rows in self._trees.values():
                if rows.tree.project_id == project_id and rows.tree.is_active:
                    return rows.tree.id
        raise TreeNotFoundError(f"No active decision tree for project {project_id}")

    def save_tree(self, rows: TreeRows) -> None:
        with self._lock:
            self._trees[rows.tree.id] = rows.model_copy(deep=True)

    def list_trees(self, project_id: str) -> List[DecisionTree]:
        with self._lock:
            trees = [
                rows.tree.model_copy()
                for rows in self._trees.values()
                if rows.tree.project_id == project_id
            ]
        return sorted(trees, key=lambda t: (t.version, t.created_at), reverse=True)

    def set_active_tree(self, project_id: str, tree_id: str) -> DecisionTree:
        with self._lock:
            target = self._trees.get(tree_id)
            if target is None or target.tree.project_id != project_id:
                raise TreeNotFoundError(f"Decision tree {tree_id} not found for project {project_id}")
            now = utc_now()
            for rows in self._trees.values():
                if rows.tree.project_id != project_id:
                    continue
                active = rows.tree.id == tree_id
                if rows.tree.is_active != active:
                    rows.tree = rows.tree.model_copy(update={"is_active": active, "updated_at": now})
            return target.tree.model_copy()

    def create_run(self, run: ProjectRun) -> ProjectRun:
        with self._lock:
            self._runs[run.id] = run
        return run

    def load_run(self, run_id: str) -> ProjectRun:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    def append_execution_path(
        self, record: DecisionTreeExecutionPath
    ) -> DecisionTreeExecutionPath:
        with self._lock:
            records = self._history[record.project_run_id]
            existing = prepare_append(records, record)
            if existing is not None:
                return existing
            records.append(record)
            return record

    def list_execution_paths(self, run_id: str) -> List[DecisionTreeExecutionPath]:
        with self._lock:
            return list(self._history.get(run_id, ()))
