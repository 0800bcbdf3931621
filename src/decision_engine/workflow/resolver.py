"""Path resolution: which operations of a run may be worked on now.

Eligibility is always recomputed from a ``RunState`` folded out of the run's
ordered history. Nothing here keeps a "current step" pointer.

Rules, per operation X:

* X is eligible when it has no terminal status, every dependency is
  satisfied, and its own ``condition_rules`` hold.
* A dependency D is satisfied when D was skipped, when D completed without
  becoming a dead end, or when D was bypassed (reached, but its rules said
  it is not needed). If D completed with branch conditions and X is one of
  D's condition targets, X is only reachable when D's chosen branch points
  at X.
* An operation referenced as another's ``fallback_operation_id`` is
  reserved: it only becomes eligible once a referrer activates it. The
  activated fallback then stands in for the referrer wherever the referrer
  is a dependency.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.errors import ConfigurationError, UnresolvedBranchError
from ..core.models import (
    SATISFYING_STATUSES,
    TERMINAL_STATUSES,
    DecisionTreeExecutionPath,
    ExecutionStatus,
)
from .conditions import ConditionRegistry, evaluate_rules
from .graph import OperationGraph, OperationNode

logger = logging.getLogger(__name__)

CHOSEN_DEFAULT = "default"  # Operation has no branch conditions
CHOSEN_FALLBACK = "fallback"  # Catch-all condition taken
CHOSEN_UNRESOLVED = "unresolved"  # Nothing matched and there is no catch-all

# Guards substitution chains; validation already rejects fallback cycles
MAX_FALLBACK_DEPTH = 16


@dataclass(frozen=True)
class BranchSelection:
    """Which outgoing condition of a completed operation fired."""
    operation_id: str
    chosen_path: str
    condition_id: Optional[str] = None
    next_operation_id: Optional[str] = None
    configuration_errors: Tuple[ConfigurationError, ...] = ()

    @property
    def dead_end(self) -> bool:
        return self.chosen_path == CHOSEN_UNRESOLVED


def select_branch(node: OperationNode, context: Mapping[str, Any]) -> BranchSelection:
    """Evaluate a node's conditions in priority order; first match wins.

    The catch-all (``is_fallback``) condition is only taken when nothing
    else matched. With no match and no catch-all the node is a dead end.
    """
    if not node.conditions:
        return BranchSelection(node.id, CHOSEN_DEFAULT)

    errors: List[ConfigurationError] = []
    catch_all = None
    for condition in node.conditions:
        if condition.is_fallback:
            catch_all = condition
            continue
        outcome = ConditionRegistry.check(
            condition.condition_type, condition.condition_data, context
        )
        if outcome.error is not None:
            errors.append(outcome.error)
        if outcome.matched:
            return BranchSelection(
                node.id,
                condition.condition_type,
                condition_id=condition.id,
                next_operation_id=condition.next_operation_id,
                configuration_errors=tuple(errors),
            )

    if catch_all is not None:
        return BranchSelection(
            node.id,
            CHOSEN_FALLBACK,
            condition_id=catch_all.id,
            next_operation_id=catch_all.next_operation_id,
            configuration_errors=tuple(errors),
        )

    logger.warning(f"No condition matched at operation {node.id} and no fallback is defined")
    return BranchSelection(node.id, CHOSEN_UNRESOLVED, configuration_errors=tuple(errors))


def _merge(base: Mapping[str, Any], *updates: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for update in updates:
        merged.update(update)
    return merged


@dataclass(frozen=True)
class RunState:
    """State of one run, derived purely by folding its ordered history."""
    statuses: Mapping[str, ExecutionStatus] = field(default_factory=dict)
    selections: Mapping[str, BranchSelection] = field(default_factory=dict)
    start_context: Mapping[str, Any] = field(default_factory=dict)
    # (operation_id, decision_data) for satisfying records, in history order
    context_log: Tuple[Tuple[str, Mapping[str, Any]], ...] = ()
    last_context: Mapping[str, Any] = field(default_factory=dict)

    @property
    def completed_operation_ids(self) -> FrozenSet[str]:
        """Operations whose status satisfies dependents (complete or skipped)."""
        return frozenset(op for op, s in self.statuses.items() if s in SATISFYING_STATUSES)

    @property
    def terminal_operation_ids(self) -> FrozenSet[str]:
        return frozenset(op for op, s in self.statuses.items() if s in TERMINAL_STATUSES)

    @property
    def in_flight_operation_ids(self) -> FrozenSet[str]:
        return frozenset(op for op, s in self.statuses.items() if s not in TERMINAL_STATUSES)

    def status_of(self, operation_id: str) -> Optional[ExecutionStatus]:
        return self.statuses.get(operation_id)

    def context_for(self, operation_ids: Iterable[str]) -> Dict[str, Any]:
        """Start context merged with the decision data recorded for the given operations."""
        wanted = set(operation_ids)
        return _merge(
            self.start_context,
            *(data for op_id, data in self.context_log if op_id in wanted),
        )

    def merged_context(self) -> Dict[str, Any]:
        return _merge(self.start_context, *(data for _, data in self.context_log))

    @classmethod
    def from_records(
        cls,
        records: Sequence[DecisionTreeExecutionPath],
        start_context: Optional[Mapping[str, Any]] = None,
    ) -> "RunState":
        statuses: Dict[str, ExecutionStatus] = {}
        selections: Dict[str, BranchSelection] = {}
        log: List[Tuple[str, Mapping[str, Any]]] = []
        last_applied: Mapping[str, Any] = {}
        for record in records:
            status = ExecutionStatus(record.execution_status)
            previous = statuses.get(record.operation_id)
            # Superseded or out-of-order rows never move an operation backwards
            if previous is not None and (previous.is_terminal or status.rank < previous.rank):
                continue
            statuses[record.operation_id] = status
            last_applied = record.decision_data
            if status in SATISFYING_STATUSES:
                log.append((record.operation_id, MappingProxyType(dict(record.decision_data))))
            if status == ExecutionStatus.COMPLETE and record.chosen_path:
                selections[record.operation_id] = BranchSelection(
                    record.operation_id,
                    record.chosen_path,
                    condition_id=record.chosen_condition_id,
                    next_operation_id=record.next_operation_id,
                )
        return cls(
            statuses=MappingProxyType(statuses),
            selections=MappingProxyType(selections),
            start_context=MappingProxyType(dict(start_context or {})),
            context_log=tuple(log),
            last_context=MappingProxyType(dict(last_applied)),
        )

    @classmethod
    def from_completed(
        cls,
        completed_operation_ids: Iterable[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> "RunState":
        """State where the given operations are complete and branches follow ``context``."""
        return cls(
            statuses=MappingProxyType({op: ExecutionStatus.COMPLETE for op in completed_operation_ids}),
            start_context=MappingProxyType(dict(context or {})),
            last_context=MappingProxyType(dict(context or {})),
        )


@dataclass(frozen=True)
class Resolution:
    """Outcome of one resolution pass over a run."""
    eligible: Tuple[str, ...]
    parallel_groups: Mapping[str, Tuple[str, ...]]
    in_flight: Tuple[str, ...]
    waiting: Tuple[str, ...]
    bypassed: Tuple[str, ...]
    unreachable: Tuple[str, ...]
    substitutions: Mapping[str, str]
    unresolved: Tuple[UnresolvedBranchError, ...]
    configuration_errors: Tuple[ConfigurationError, ...]

    @property
    def is_finished(self) -> bool:
        """Nothing left that could still run."""
        return not self.eligible and not self.waiting

    def is_eligible(self, operation_id: str) -> bool:
        return operation_id in self.eligible


class _ResolutionPass:
    """Memoized evaluation of one RunState against one graph."""

    def __init__(self, graph: OperationGraph, state: RunState, max_fallback_depth: int):
        self.graph = graph
        self.state = state
        self.max_fallback_depth = max_fallback_depth
        self.substitutions: Dict[str, str] = {}
        self.config_errors: Dict[str, ConfigurationError] = {}
        self._selection: Dict[str, BranchSelection] = {}
        self._activates: Dict[str, bool] = {}
        self._reached: Dict[str, bool] = {}
        self._rules: Dict[str, bool] = {}
        self._unreachable: Dict[str, bool] = {}

    # -- status helpers -------------------------------------------------

    def status(self, op_id: str) -> Optional[ExecutionStatus]:
        return self.state.status_of(op_id)

    def is_terminal(self, op_id: str) -> bool:
        status = self.status(op_id)
        return status is not None and status.is_terminal

    def _note_errors(self, errors: Iterable[ConfigurationError]) -> None:
        for error in errors:
            self.config_errors.setdefault(str(error), error)

    def selection(self, op_id: str) -> BranchSelection:
        if op_id not in self._selection:
            selection = self.state.selections.get(op_id)
            if selection is None:
                node = self.graph.node(op_id)
                context = self.state.context_for(node.ancestors | {op_id})
                selection = select_branch(node, context)
            self._note_errors(selection.configuration_errors)
            self._selection[op_id] = selection
        return self._selection[op_id]

    def is_dead_end(self, op_id: str) -> bool:
        node = self.graph.node(op_id)
        return (
            self.status(op_id) == ExecutionStatus.COMPLETE
            and node.has_branches
            and self.selection(op_id).dead_end
        )

    # -- fallback substitution ------------------------------------------

    def activates_fallback(self, op_id: str) -> bool:
        """True when op_id hands over to its fallback operation."""
        if op_id in self._activates:
            return self._activates[op_id]
        node = self.graph.node(op_id)
        if not node.fallback_operation_id:
            self._activates[op_id] = False
            return False

        self._activates[op_id] = False  # re-entry guard
        status = self.status(op_id)
        if status == ExecutionStatus.FAILED:
            result = True
        elif status == ExecutionStatus.SKIPPED:
            result = not node.is_optional
        elif status == ExecutionStatus.COMPLETE:
            result = self.is_dead_end(op_id)
        else:
            result = node.is_optional and self.is_unreachable(op_id)
        if result:
            self.substitutions[op_id] = node.fallback_operation_id
            logger.debug(f"Operation {op_id} substituted by fallback {node.fallback_operation_id}")
        self._activates[op_id] = result
        return result

    def stand_in(self, op_id: str) -> str:
        """The operation that actually has to finish in place of op_id."""
        current = op_id
        for _ in range(self.max_fallback_depth):
            if not self.activates_fallback(current):
                return current
            current = self.graph.node(current).fallback_operation_id
        logger.warning(f"Fallback chain from {op_id} exceeded depth {self.max_fallback_depth}")
        return current

    # -- dependency checks ----------------------------------------------

    def is_satisfied(self, op_id: str) -> bool:
        status = self.status(op_id)
        if status == ExecutionStatus.SKIPPED:
            return True
        if status == ExecutionStatus.COMPLETE:
            return not self.is_dead_end(op_id)
        if status is None:
            return self.is_bypassed(op_id)
        return False

    def edge_allows(self, dep_id: str, op_id: str) -> bool:
        """Branch gating along the dependency edge dep_id -> op_id."""
        dep = self.graph.node(dep_id)
        if op_id not in dep.branch_targets:
            return True
        if self.status(dep_id) != ExecutionStatus.COMPLETE or self.activates_fallback(dep_id):
            return True
        selection = self.selection(dep_id)
        return not selection.dead_end and selection.next_operation_id == op_id

    def dependency_ok(self, dep_id: str, op_id: str) -> bool:
        return self.edge_allows(dep_id, op_id) and self.is_satisfied(self.stand_in(dep_id))

    def dependency_dead(self, dep_id: str, op_id: str) -> bool:
        """True when dep_id can never satisfy op_id."""
        if not self.edge_allows(dep_id, op_id):
            return True
        target = self.stand_in(dep_id)
        status = self.status(target)
        if status == ExecutionStatus.FAILED:
            return True
        if status == ExecutionStatus.COMPLETE:
            return self.is_dead_end(target)
        if status is None:
            return self.is_unreachable(target)
        return False

    # -- per-operation state --------------------------------------------

    def is_reached(self, op_id: str) -> bool:
        """Reservation released and all dependencies satisfied."""
        if op_id in self._reached:
            return self._reached[op_id]
        self._reached[op_id] = False  # re-entry guard
        node = self.graph.node(op_id)
        result = True
        if self.graph.is_reserved(op_id):
            referrers = self.graph.fallback_referrers[op_id]
            result = any(self.activates_fallback(r) for r in sorted(referrers))
        if result:
            result = all(self.dependency_ok(dep, op_id) for dep in sorted(node.dependencies))
        self._reached[op_id] = result
        return result

    def rules_pass(self, op_id: str) -> bool:
        if op_id not in self._rules:
            node = self.graph.node(op_id)
            outcome = evaluate_rules(
                node.operation.condition_rules,
                self.state.context_for(node.ancestors),
            )
            if outcome.error is not None:
                self._note_errors([outcome.error])
            self._rules[op_id] = outcome.matched
        return self._rules[op_id]

    def is_bypassed(self, op_id: str) -> bool:
        return (
            self.status(op_id) is None
            and self.is_reached(op_id)
            and not self.rules_pass(op_id)
        )

    def is_eligible(self, op_id: str) -> bool:
        return (
            not self.is_terminal(op_id)
            and self.is_reached(op_id)
            and self.rules_pass(op_id)
        )

    def is_unreachable(self, op_id: str) -> bool:
        """True when op_id can never become eligible."""
        if op_id in self._unreachable:
            return self._unreachable[op_id]
        if self.is_terminal(op_id):
            return False
        self._unreachable[op_id] = False  # re-entry guard
        node = self.graph.node(op_id)
        result = any(self.dependency_dead(dep, op_id) for dep in sorted(node.dependencies))
        if not result and self.graph.is_reserved(op_id):
            referrers = sorted(self.graph.fallback_referrers[op_id])
            result = not any(self.activates_fallback(r) for r in referrers) and all(
                self.is_terminal(r) or self.is_unreachable(r) for r in referrers
            )
        self._unreachable[op_id] = result
        return result

    # -- assembly ---------------------------------------------------------

    def run(self) -> Resolution:
        eligible: List[str] = []
        in_flight: List[str] = []
        waiting: List[str] = []
        bypassed: List[str] = []
        unreachable: List[str] = []

        for op_id in self.graph.order:
            if self.is_terminal(op_id):
                continue
            if self.is_eligible(op_id):
                eligible.append(op_id)
                if self.status(op_id) is not None:
                    in_flight.append(op_id)
            elif self.is_bypassed(op_id):
                bypassed.append(op_id)
            elif self.is_unreachable(op_id):
                unreachable.append(op_id)
            else:
                waiting.append(op_id)

        unresolved = []
        for op_id in self.graph.order:
            if self.is_dead_end(op_id) and not self.activates_fallback(op_id):
                unresolved.append(UnresolvedBranchError(op_id))

        eligible = self.graph.sorted_ids(eligible)
        groups: Dict[str, List[str]] = {}
        for op_id in eligible:
            group = self.graph.node(op_id).parallel_group
            if group:
                groups.setdefault(group, []).append(op_id)

        return Resolution(
            eligible=tuple(eligible),
            parallel_groups=MappingProxyType({g: tuple(ids) for g, ids in groups.items()}),
            in_flight=tuple(self.graph.sorted_ids(in_flight)),
            waiting=tuple(self.graph.sorted_ids(waiting)),
            bypassed=tuple(self.graph.sorted_ids(bypassed)),
            unreachable=tuple(self.graph.sorted_ids(unreachable)),
            substitutions=MappingProxyType(dict(sorted(self.substitutions.items()))),
            unresolved=tuple(unresolved),
            configuration_errors=tuple(self.config_errors.values()),
        )


class PathResolver:
    """Computes the eligible operation set for a graph and a run state."""

    def __init__(self, graph: OperationGraph, max_fallback_depth: int = MAX_FALLBACK_DEPTH):
        self.graph = graph
        self.max_fallback_depth = max_fallback_depth

    def resolve(self, state: RunState) -> Resolution:
        resolution = _ResolutionPass(self.graph, state, self.max_fallback_depth).run()
        for error in resolution.configuration_errors:
            logger.warning(f"Tree {self.graph.tree_id}: {error} (condition treated as false)")
        return resolution

    def resolve_next(
        self,
        completed_operation_ids: Iterable[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> List[str]:
        """Eligible operation ids, in display order, given completed ids and a context."""
        state = RunState.from_completed(completed_operation_ids, context)
        return list(self.resolve(state).eligible)


def resolve_next(
    graph: OperationGraph,
    completed_operation_ids: Iterable[str],
    context: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    """Module-level shorthand for PathResolver(graph).resolve_next(...)."""
    return PathResolver(graph).resolve_next(completed_operation_ids, context)
