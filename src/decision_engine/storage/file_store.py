"""File-backed store: JSON documents for trees and runs, JSONL for history.

Layout under ``data_dir``::

    trees/{tree_id}.json       TreeRows document
    runs/{run_id}.json         ProjectRun document
    history/{run_id}.jsonl     one DecisionTreeExecutionPath per line
    locks/                     mkdir-based locks
"""

import json
import logging
from pathlib import Path
from typing import List

from pydantic import ValidationError

from ..core.errors import HistoryCorruptedError, RunNotFoundError, TreeNotFoundError
from ..core.models import (
    DecisionTree,
    DecisionTreeExecutionPath,
    ProjectRun,
    TreeRows,
    utc_now,
)
from ..utils.atomic_io import atomic_write_model
from ..utils.locks import FileLock
from ..utils.stream_parser import parse_jsonl_to_models
from ..utils.validators import validate_identifier
from .base import DecisionTreeStore, prepare_append

logger = logging.getLogger(__name__)

_TREES_LOCK = "trees"


class FileStore(DecisionTreeStore):
    """Store that persists everything under a data directory."""

    def __init__(self, data_dir: Path, lock_timeout: float = 10.0):
        self.data_dir = Path(data_dir)
        self.trees_dir = self.data_dir / "trees"
        self.runs_dir = self.data_dir / "runs"
        self.history_dir = self.data_dir / "history"
        self.lock_dir = self.data_dir / "locks"
        self.lock_timeout = lock_timeout
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        for directory in (self.trees_dir, self.runs_dir, self.history_dir, self.lock_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def _lock(self, key: str) -> FileLock:
        return FileLock(self.lock_dir, key, timeout=self.lock_timeout)

    def _tree_path(self, tree_id: str) -> Path:
        return self.trees_dir / f"{validate_identifier(tree_id, 'tree_id')}.json"

    def _run_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{validate_identifier(run_id, 'run_id')}.json"

    def _history_path(self, run_id: str) -> Path:
        return self.history_dir / f"{validate_identifier(run_id, 'run_id')}.jsonl"

    # -- trees ------------------------------------------------------------

    def _read_tree(self, path: Path) -> TreeRows:
        return TreeRows.model_validate_json(path.read_text(encoding="utf-8"))

    def _all_trees(self) -> List[TreeRows]:
        rows = []
        for path in sorted(self.trees_dir.glob("*.json")):
            try:
                rows.append(self._read_tree(path))
            except (OSError, ValidationError) as e:
                logger.warning(f"Skipping unreadable tree file {path.name}: {e}")
        return rows

    def load_tree(self, tree_id: str) -> TreeRows:
        path = self._tree_path(tree_id)
        if not path.exists():
            raise TreeNotFoundError(f"Decision tree {tree_id} not found")
        return self._read_tree(path)

    def load_active_tree_for_project(self, project_id: str) -> str:
        for rows in self._all_trees():
            if rows.tree.project_id == project_id and rows.tree.is_active:
                return rows.tree.id
        raise TreeNotFoundError(f"No active decision tree for project {project_id}")

    def save_tree(self, rows: TreeRows) -> None:
        with self._lock(_TREES_LOCK):
            atomic_write_model(self._tree_path(rows.tree.id), rows)

    def list_trees(self, project_id: str) -> List[DecisionTree]:
        trees = [rows.tree for rows in self._all_trees() if rows.tree.project_id == project_id]
        return sorted(trees, key=lambda t: (t.version, t.created_at), reverse=True)

    def set_active_tree(self, project_id: str, tree_id: str) -> DecisionTree:
        with self._lock(_TREES_LOCK):
            all_rows = [r for r in self._all_trees() if r.tree.project_id == project_id]
            if not any(r.tree.id == tree_id for r in all_rows):
                raise TreeNotFoundError(f"Decision tree {tree_id} not found for project {project_id}")
            now = utc_now()
            activated = None
            for rows in all_rows:
                active = rows.tree.id == tree_id
                if rows.tree.is_active != active:
                    rows.tree = rows.tree.model_copy(update={"is_active": active, "updated_at": now})
                    atomic_write_model(self._tree_path(rows.tree.id), rows)
                if active:
                    activated = rows.tree
            return activated

    # -- runs -------------------------------------------------------------

    def create_run(self, run: ProjectRun) -> ProjectRun:
        atomic_write_model(self._run_path(run.id), run)
        return run

    def load_run(self, run_id: str) -> ProjectRun:
        path = self._run_path(run_id)
        if not path.exists():
            raise RunNotFoundError(f"Run {run_id} not found")
        return ProjectRun.model_validate_json(path.read_text(encoding="utf-8"))

    # -- execution history ------------------------------------------------

    def _read_history(self, run_id: str) -> List[DecisionTreeExecutionPath]:
        path = self._history_path(run_id)
        if not path.exists():
            return []
        try:
            return parse_jsonl_to_models(
                path.read_text(encoding="utf-8"), DecisionTreeExecutionPath, strict=True
            )
        except ValueError as e:
            # Replaying a partial log could reopen finished operations
            logger.error(f"Unreadable history file {path}: {e}")
            raise HistoryCorruptedError(run_id, str(e).splitlines()[0]) from e

    def append_execution_path(
        self, record: DecisionTreeExecutionPath
    ) -> DecisionTreeExecutionPath:
        path = self._history_path(record.project_run_id)
        with self._lock(f"history-{record.project_run_id}"):
            existing = prepare_append(self._read_history(record.project_run_id), record)
            if existing is not None:
                return existing
            line = json.dumps(record.model_dump(mode="json"), default=str)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        return record

    def list_execution_paths(self, run_id: str) -> List[DecisionTreeExecutionPath]:
        # Hold the append lock so a reader never sees a half-written line
        with self._lock(f"history-{validate_identifier(run_id, 'run_id')}"):
            return self._read_history(run_id)
