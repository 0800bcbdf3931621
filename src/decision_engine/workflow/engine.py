"""Workflow engine facade: the public entry point for hosting applications.

Ties a project run to the tree version that was active when it started and
answers "what can run now", "record this decision" and "what ran and why".
Every call recomputes state from the run's history; the engine itself keeps
nothing per run except a cache of immutable graphs.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..core.config import EngineConfig
from ..core.errors import (
    EngineError,
    GraphValidationError,
    InvalidTransitionError,
    StaleEligibilityError,
    TreeNotFoundError,
    UnresolvedBranchError,
)
from ..core.models import (
    DecisionTree,
    DecisionTreeCondition,
    DecisionTreeExecutionPath,
    DecisionTreeOperation,
    ExecutionStatus,
    ProjectRun,
    TreeRows,
)
from ..storage.base import DecisionTreeStore, check_transition, find_existing
from ..utils.rich_logging import ContextLogger
from .definitions import TreeDefinition
from .graph import OperationGraph
from .history import ExecutionHistoryRecorder
from .resolver import PathResolver, Resolution, RunState, select_branch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibleOperation:
    """An operation the caller may work on now."""
    operation_id: str
    phase_name: str
    operation_name: str
    is_optional: bool
    parallel_group: Optional[str]
    status: Optional[ExecutionStatus] = None  # pending / in_progress if already started


@dataclass(frozen=True)
class DecisionResult:
    """Outcome of record_decision.

    ``error`` is set when nothing was recorded. ``unresolved`` is set when
    the decision was recorded but its branch matched nothing, leaving the
    run stuck at this operation.
    """
    record: Optional[DecisionTreeExecutionPath] = None
    error: Optional[EngineError] = None
    unresolved: Optional[UnresolvedBranchError] = None
    deduplicated: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PhaseProgress:
    """Per-phase counts for a run."""
    phase_name: str
    total: int
    complete: int = 0
    skipped: int = 0
    failed: int = 0
    in_progress: int = 0
    bypassed: int = 0
    unreachable: int = 0

    @property
    def remaining(self) -> int:
        settled = self.complete + self.skipped + self.failed + self.bypassed + self.unreachable
        return self.total - settled


@dataclass(frozen=True)
class RunProgress:
    """Snapshot of how far a run has come."""
    run_id: str
    decision_tree_id: str
    phases: Tuple[PhaseProgress, ...]
    eligible: Tuple[str, ...]
    unresolved: Tuple[str, ...] = ()
    is_finished: bool = False

    @property
    def total(self) -> int:
        return sum(p.total for p in self.phases)

    @property
    def settled(self) -> int:
        return sum(p.total - p.remaining for p in self.phases)

    @property
    def percent_complete(self) -> float:
        if not self.total:
            return 100.0
        return round(100.0 * self.settled / self.total, 1)


@dataclass
class _RunSnapshot:
    run: ProjectRun
    graph: OperationGraph
    records: List[DecisionTreeExecutionPath]
    state: RunState
    resolution: Resolution = field(init=False)


class WorkflowEngine:
    """Orchestrates graph building, resolution and history per project run."""

    def __init__(
        self,
        store: DecisionTreeStore,
        config: Optional[EngineConfig] = None,
        engine_logger: Optional[ContextLogger] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.log = engine_logger or ContextLogger(logger, "engine")
        self.recorder = ExecutionHistoryRecorder(store)
        self._graphs: Dict[str, OperationGraph] = {}
        self._graph_lock = threading.Lock()

    # -- trees ------------------------------------------------------------

    def build_graph(self, rows: TreeRows) -> OperationGraph:
        """Validate rows and build their graph without saving anything.

        Raises:
            GraphValidationError
        """
        return OperationGraph.build(
            rows.tree,
            rows.operations,
            rows.conditions,
            strict_condition_types=self.config.resolver.strict_condition_types,
        )

    def publish_tree(
        self,
        project_id: str,
        name: str,
        operations: Sequence[DecisionTreeOperation],
        conditions: Sequence[DecisionTreeCondition] = (),
        *,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        activate: bool = True,
        tree_id: Optional[str] = None,
    ) -> DecisionTree:
        """Validate and save a new tree version for a project.

        Operations are rebound to the new tree. The version is one more than
        the highest existing version of the project. Nothing is saved when
        validation fails.

        Raises:
            GraphValidationError
        """
        tree = DecisionTree(
            id=tree_id or uuid.uuid4().hex,
            project_id=project_id,
            name=name,
            description=description,
            version=self.store.next_tree_version(project_id),
            created_by=created_by,
        )
        rows = TreeRows(
            tree=tree,
            operations=[op.model_copy(update={"decision_tree_id": tree.id}) for op in operations],
            conditions=list(conditions),
        )
        return self._publish(rows, activate)

    def publish_definition(
        self,
        project_id: str,
        definition: TreeDefinition,
        *,
        created_by: Optional[str] = None,
        activate: bool = True,
        tree_id: Optional[str] = None,
    ) -> DecisionTree:
        """Publish a tree authored in the YAML definition format."""
        tree = DecisionTree(
            id=tree_id or uuid.uuid4().hex,
            project_id=project_id,
            name=definition.name,
            description=definition.description,
            version=self.store.next_tree_version(project_id),
            created_by=created_by,
        )
        return self._publish(definition.to_rows(tree), activate)

    def _publish(self, rows: TreeRows, activate: bool) -> DecisionTree:
        graph = self.build_graph(rows)
        try:
            self.store.load_tree(rows.tree.id)
        except TreeNotFoundError:
            pass
        else:
            # Published versions are immutable; edits go into a new version
            raise GraphValidationError(rows.tree.id, ["a tree with this id is already published"])
        self.store.save_tree(rows)
        with self._graph_lock:
            self._graphs[rows.tree.id] = graph
        tree = rows.tree
        logger.info(
            f"Published tree {tree.id} v{tree.version} for project {tree.project_id} "
            f"({len(graph)} operations)"
        )
        if activate:
            tree = self.activate_tree(tree.project_id, tree.id)
        return tree

    def activate_tree(self, project_id: str, tree_id: str) -> DecisionTree:
        """Make one version the one new runs start against.

        Runs already started stay pinned to their own version.
        """
        self.load_graph(tree_id)
        tree = self.store.set_active_tree(project_id, tree_id)
        logger.info(f"Activated tree {tree_id} v{tree.version} for project {project_id}")
        return tree

    def list_trees(self, project_id: str) -> List[DecisionTree]:
        return self.store.list_trees(project_id)

    def load_graph(self, tree_id: str) -> OperationGraph:
        """Graph for a tree version, built once and cached.

        Raises:
            TreeNotFoundError
            GraphValidationError
        """
        with self._graph_lock:
            cached = self._graphs.get(tree_id)
        if cached is not None:
            return cached
        graph = self.build_graph(self.store.load_tree(tree_id))
        with self._graph_lock:
            self._graphs.setdefault(tree_id, graph)
            return self._graphs[tree_id]

    # -- runs -------------------------------------------------------------

    def start_run(
        self,
        project_id: str,
        user_id: str,
        context: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> ProjectRun:
        """Start a run pinned to the project's active tree version.

        Raises:
            TreeNotFoundError: the project has no active tree
            GraphValidationError: the active tree does not validate
        """
        tree_id = self.store.load_active_tree_for_project(project_id)
        graph = self.load_graph(tree_id)
        run = ProjectRun(
            id=run_id or uuid.uuid4().hex,
            project_id=project_id,
            decision_tree_id=tree_id,
            user_id=user_id,
            context=dict(context or {}),
        )
        self.store.create_run(run)
        self.log.run_started(run.id, tree_id, graph.tree.version)
        return run

    def get_run(self, run_id: str) -> ProjectRun:
        return self.store.load_run(run_id)

    def _snapshot(self, run_id: str) -> _RunSnapshot:
        run = self.store.load_run(run_id)
        graph = self.load_graph(run.decision_tree_id)
        records = self.store.list_execution_paths(run_id)
        snapshot = _RunSnapshot(
            run=run,
            graph=graph,
            records=records,
            state=RunState.from_records(records, start_context=run.context),
        )
        resolver = PathResolver(graph, self.config.resolver.max_fallback_depth)
        snapshot.resolution = resolver.resolve(snapshot.state)
        return snapshot

    def resolve(self, run_id: str) -> Resolution:
        """Full resolution for a run (eligible, waiting, bypassed, unresolved...)."""
        return self._snapshot(run_id).resolution

    def get_eligible_operations(self, run_id: str) -> List[EligibleOperation]:
        """Operations that may be worked on now, in display order."""
        snapshot = self._snapshot(run_id)
        eligible = []
        for op_id in snapshot.resolution.eligible:
            node = snapshot.graph.node(op_id)
            eligible.append(
                EligibleOperation(
                    operation_id=op_id,
                    phase_name=node.phase_name,
                    operation_name=node.operation_name,
                    is_optional=node.is_optional,
                    parallel_group=node.parallel_group,
                    status=snapshot.state.status_of(op_id),
                )
            )
        return eligible

    def record_decision(
        self,
        run_id: str,
        operation_id: str,
        status: Union[ExecutionStatus, str],
        context: Optional[Mapping[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
    ) -> DecisionResult:
        """Record a status change for an operation of a run.

        Conflicts come back inside the result rather than being raised:
        ``StaleEligibilityError`` when the operation is not eligible now,
        ``InvalidTransitionError`` when the history already holds a
        conflicting status.

        Raises:
            RunNotFoundError
        """
        context = dict(context or {})
        try:
            status = ExecutionStatus(status)
        except ValueError:
            error = InvalidTransitionError(run_id, operation_id, None, str(status), reason="unknown status")
            logger.warning(str(error))
            return DecisionResult(error=error)

        snapshot = self._snapshot(run_id)
        graph = snapshot.graph
        node = graph.get(operation_id)
        if node is None:
            error = StaleEligibilityError(run_id, operation_id, snapshot.resolution.eligible)
            logger.warning(f"{error} (operation is not part of tree {graph.tree_id})")
            return DecisionResult(error=error)

        existing = find_existing(snapshot.records, operation_id, status)
        if existing is not None:
            logger.debug(f"Duplicate {status.value} for {operation_id} in run {run_id}")
            return DecisionResult(record=existing, deduplicated=True)

        try:
            check_transition(snapshot.records, run_id, operation_id, status)
        except InvalidTransitionError as e:
            logger.warning(str(e))
            return DecisionResult(error=e)

        if not snapshot.resolution.is_eligible(operation_id):
            error = StaleEligibilityError(run_id, operation_id, snapshot.resolution.eligible)
            logger.warning(str(error))
            return DecisionResult(error=error)

        if (
            status == ExecutionStatus.SKIPPED
            and not node.is_optional
            and not node.fallback_operation_id
        ):
            error = InvalidTransitionError(
                run_id, operation_id,
                snapshot.state.status_of(operation_id), status.value,
                reason="only optional operations or operations with a fallback may be skipped",
            )
            logger.warning(str(error))
            return DecisionResult(error=error)

        selection = None
        if status == ExecutionStatus.COMPLETE:
            branch_context = snapshot.state.context_for(node.ancestors)
            branch_context.update(context)
            selection = select_branch(node, branch_context)

        try:
            record = self.recorder.append(
                snapshot.run,
                node,
                selection.chosen_path if selection else None,
                status,
                context,
                user_id=user_id,
                condition_id=selection.condition_id if selection else None,
                next_operation_id=selection.next_operation_id if selection else None,
            )
        except InvalidTransitionError as e:
            # Another writer recorded a conflicting status first
            logger.warning(str(e))
            return DecisionResult(error=e)

        self.log.decision_recorded(
            operation_id, node.phase_name, status.value, record.chosen_path, run_id=run_id
        )

        unresolved = None
        if selection is not None and selection.dead_end:
            if node.fallback_operation_id:
                logger.info(
                    f"No branch matched at {operation_id}; "
                    f"fallback operation {node.fallback_operation_id} takes over"
                )
            else:
                unresolved = UnresolvedBranchError(operation_id, run_id)
                self.log.branch_unresolved(operation_id, run_id=run_id, phase=node.phase_name)
        return DecisionResult(record=record, unresolved=unresolved)

    def get_history(self, run_id: str) -> List[DecisionTreeExecutionPath]:
        """Every record of a run in the order it was appended.

        Raises:
            RunNotFoundError
        """
        self.store.load_run(run_id)
        return self.recorder.list_for_run(run_id)

    def get_progress(self, run_id: str) -> RunProgress:
        """Per-phase counts and whether any work is left."""
        snapshot = self._snapshot(run_id)
        graph, state, resolution = snapshot.graph, snapshot.state, snapshot.resolution
        bypassed = set(resolution.bypassed)
        unreachable = set(resolution.unreachable)

        phases = []
        for phase_name in graph.phases():
            counts = {
                "complete": 0, "skipped": 0, "failed": 0,
                "in_progress": 0, "bypassed": 0, "unreachable": 0,
            }
            nodes = graph.operations_in_phase(phase_name)
            for node in nodes:
                status = state.status_of(node.id)
                if status is not None and status.is_terminal:
                    counts[status.value] += 1
                elif status is not None:
                    counts["in_progress"] += 1
                elif node.id in bypassed:
                    counts["bypassed"] += 1
                elif node.id in unreachable:
                    counts["unreachable"] += 1
            phases.append(PhaseProgress(phase_name=phase_name, total=len(nodes), **counts))

        return RunProgress(
            run_id=run_id,
            decision_tree_id=snapshot.run.decision_tree_id,
            phases=tuple(phases),
            eligible=resolution.eligible,
            unresolved=tuple(e.operation_id for e in resolution.unresolved),
            is_finished=resolution.is_finished and not resolution.unresolved,
        )
