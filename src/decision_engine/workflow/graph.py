"""Immutable operation graph built from a tree version's rows."""

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.errors import GraphValidationError
from ..core.models import DecisionTree, DecisionTreeCondition, DecisionTreeOperation
from .conditions import ConditionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationNode:
    """An operation plus everything the resolver needs about it, precomputed."""
    operation: DecisionTreeOperation
    conditions: Tuple[DecisionTreeCondition, ...]  # priority ascending, fallback last
    dependencies: FrozenSet[str]
    dependents: FrozenSet[str]
    ancestors: FrozenSet[str]
    branch_targets: FrozenSet[str]

    @property
    def id(self) -> str:
        return self.operation.id

    @property
    def phase_name(self) -> str:
        return self.operation.phase_name

    @property
    def operation_name(self) -> str:
        return self.operation.operation_name

    @property
    def is_optional(self) -> bool:
        return self.operation.is_optional

    @property
    def parallel_group(self) -> Optional[str]:
        return self.operation.parallel_group

    @property
    def fallback_operation_id(self) -> Optional[str]:
        return self.operation.fallback_operation_id

    @property
    def has_branches(self) -> bool:
        return bool(self.conditions)

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.operation.display_order, self.operation.id)


@dataclass(frozen=True)
class OperationGraph:
    """Directed acyclic graph of one tree version's operations.

    Nodes are keyed by operation id; dependencies, dependents and branch
    targets are held as ids and resolved through ``nodes`` at lookup time.
    """
    tree: DecisionTree
    nodes: Mapping[str, OperationNode]
    order: Tuple[str, ...]  # topological, ties broken by (display_order, id)
    fallback_referrers: Mapping[str, FrozenSet[str]]

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def tree_id(self) -> str:
        return self.tree.id

    def node(self, operation_id: str) -> OperationNode:
        return self.nodes[operation_id]

    def get(self, operation_id: str) -> Optional[OperationNode]:
        return self.nodes.get(operation_id)

    def roots(self) -> List[str]:
        """Operations without dependencies, in display order."""
        return self.sorted_ids(op_id for op_id, n in self.nodes.items() if not n.dependencies)

    def is_reserved(self, operation_id: str) -> bool:
        """True if the operation only runs as some other operation's fallback."""
        return operation_id in self.fallback_referrers

    def sorted_ids(self, operation_ids: Iterable[str]) -> List[str]:
        """Stable presentation order: display_order ascending, then id."""
        return sorted(operation_ids, key=lambda op_id: self.nodes[op_id].sort_key)

    def phases(self) -> List[str]:
        """Phase names ordered by the earliest display_order they contain."""
        first_seen: Dict[str, Tuple[int, str]] = {}
        for node in self.nodes.values():
            current = first_seen.get(node.phase_name)
            if current is None or node.sort_key < current:
                first_seen[node.phase_name] = node.sort_key
        return sorted(first_seen, key=lambda phase: (first_seen[phase], phase))

    def operations_in_phase(self, phase_name: str) -> List[OperationNode]:
        ids = [op_id for op_id, n in self.nodes.items() if n.phase_name == phase_name]
        return [self.nodes[op_id] for op_id in self.sorted_ids(ids)]

    @classmethod
    def build(
        cls,
        tree: DecisionTree,
        operations: Sequence[DecisionTreeOperation],
        conditions: Sequence[DecisionTreeCondition],
        *,
        strict_condition_types: bool = False,
    ) -> "OperationGraph":
        """Validate the rows and assemble the graph.

        Raises:
            GraphValidationError: listing every problem found (dangling
                references, duplicate priorities, cycles).
        """
        return GraphBuilder(tree, strict_condition_types=strict_condition_types).build(
            operations, conditions
        )


class GraphBuilder:
    """Collects validation problems while assembling an OperationGraph."""

    def __init__(self, tree: DecisionTree, *, strict_condition_types: bool = False):
        self.tree = tree
        self.strict_condition_types = strict_condition_types
        self.problems: List[str] = []

    def build(
        self,
        operations: Sequence[DecisionTreeOperation],
        conditions: Sequence[DecisionTreeCondition],
    ) -> OperationGraph:
        ops = self._index_operations(operations)
        by_operation = self._group_conditions(conditions, ops)
        self._check_references(ops)
        order = self._topological_order(ops)

        if self.problems:
            logger.error(
                f"Tree {self.tree.id} (v{self.tree.version}) failed validation: "
                f"{len(self.problems)} problem(s)"
            )
            raise GraphValidationError(self.tree.id, self.problems)

        dependents: Dict[str, set] = defaultdict(set)
        for op in ops.values():
            for dep in op.dependencies:
                dependents[dep].add(op.id)

        ancestors: Dict[str, FrozenSet[str]] = {}
        for op_id in order:
            deps = set(ops[op_id].dependencies)
            acc = set(deps)
            for dep in deps:
                acc |= ancestors[dep]
            ancestors[op_id] = frozenset(acc)

        self._check_fallback_ancestry(ops, ancestors)
        if self.problems:
            logger.error(f"Tree {self.tree.id} (v{self.tree.version}) failed validation")
            raise GraphValidationError(self.tree.id, self.problems)

        referrers: Dict[str, set] = defaultdict(set)
        for op in ops.values():
            if op.fallback_operation_id:
                referrers[op.fallback_operation_id].add(op.id)

        nodes = {}
        for op_id, op in ops.items():
            branch = by_operation.get(op_id, [])
            branch.sort(key=lambda c: (c.is_fallback, c.priority, c.id))
            nodes[op_id] = OperationNode(
                operation=op,
                conditions=tuple(branch),
                dependencies=frozenset(op.dependencies),
                dependents=frozenset(dependents.get(op_id, ())),
                ancestors=ancestors[op_id],
                branch_targets=frozenset(
                    c.next_operation_id for c in branch if c.next_operation_id
                ),
            )

        logger.debug(f"Built graph for tree {self.tree.id}: {len(nodes)} operations")
        return OperationGraph(
            tree=self.tree,
            nodes=MappingProxyType(nodes),
            order=tuple(order),
            fallback_referrers=MappingProxyType(
                {k: frozenset(v) for k, v in referrers.items()}
            ),
        )

    def _index_operations(
        self, operations: Sequence[DecisionTreeOperation]
    ) -> Dict[str, DecisionTreeOperation]:
        ops: Dict[str, DecisionTreeOperation] = {}
        for op in operations:
            if op.id in ops:
                self.problems.append(f"duplicate operation id '{op.id}'")
                continue
            if op.decision_tree_id != self.tree.id:
                self.problems.append(
                    f"operation '{op.id}' belongs to tree '{op.decision_tree_id}', not '{self.tree.id}'"
                )
            ops[op.id] = op
        return ops

    def _group_conditions(
        self,
        conditions: Sequence[DecisionTreeCondition],
        ops: Mapping[str, DecisionTreeOperation],
    ) -> Dict[str, List[DecisionTreeCondition]]:
        grouped: Dict[str, List[DecisionTreeCondition]] = defaultdict(list)
        seen_ids = set()
        for cond in conditions:
            if cond.id in seen_ids:
                self.problems.append(f"duplicate condition id '{cond.id}'")
                continue
            seen_ids.add(cond.id)
            if cond.operation_id not in ops:
                self.problems.append(
                    f"condition '{cond.id}' is attached to unknown operation '{cond.operation_id}'"
                )
                continue
            if cond.next_operation_id is not None:
                if cond.next_operation_id not in ops:
                    self.problems.append(
                        f"condition '{cond.id}' on '{cond.operation_id}' targets "
                        f"unknown operation '{cond.next_operation_id}'"
                    )
                elif cond.next_operation_id == cond.operation_id:
                    self.problems.append(
                        f"condition '{cond.id}' on '{cond.operation_id}' targets its own operation"
                    )
            if not ConditionRegistry.is_known(cond.condition_type) and not cond.is_fallback:
                if self.strict_condition_types:
                    self.problems.append(
                        f"condition '{cond.id}' uses unknown type '{cond.condition_type}'"
                    )
                else:
                    logger.warning(
                        f"Condition '{cond.id}' uses unknown type '{cond.condition_type}'; "
                        f"it will always evaluate false"
                    )
            grouped[cond.operation_id].append(cond)

        for op_id, conds in grouped.items():
            fallbacks = [c.id for c in conds if c.is_fallback]
            if len(fallbacks) > 1:
                self.problems.append(
                    f"operation '{op_id}' has {len(fallbacks)} fallback conditions "
                    f"({', '.join(sorted(fallbacks))})"
                )
            priorities: Dict[int, str] = {}
            for cond in sorted(conds, key=lambda c: c.id):
                if cond.is_fallback:
                    continue
                if cond.priority in priorities:
                    self.problems.append(
                        f"operation '{op_id}' has duplicate condition priority {cond.priority} "
                        f"('{priorities[cond.priority]}' and '{cond.id}')"
                    )
                else:
                    priorities[cond.priority] = cond.id
        return grouped

    def _check_fallback_ancestry(
        self,
        ops: Mapping[str, DecisionTreeOperation],
        ancestors: Mapping[str, FrozenSet[str]],
    ) -> None:
        """A fallback stays reserved until its referrer is stuck, so the
        referrer must not wait on it."""
        for op_id in sorted(ops):
            fallback = ops[op_id].fallback_operation_id
            if fallback is not None and fallback in ancestors[op_id]:
                self.problems.append(
                    f"operation '{op_id}' depends on its own fallback operation '{fallback}'"
                )

    def _check_references(self, ops: Mapping[str, DecisionTreeOperation]) -> None:
        for op in ops.values():
            for dep in op.dependencies:
                if dep == op.id:
                    self.problems.append(f"operation '{op.id}' depends on itself")
                elif dep not in ops:
                    self.problems.append(
                        f"operation '{op.id}' depends on unknown operation '{dep}'"
                    )
            fallback = op.fallback_operation_id
            if fallback is not None:
                if fallback == op.id:
                    self.problems.append(f"operation '{op.id}' is its own fallback")
                elif fallback not in ops:
                    self.problems.append(
                        f"operation '{op.id}' has unknown fallback operation '{fallback}'"
                    )

        # Fallback chains must terminate
        reported = set()
        for start in ops:
            seen = [start]
            current = ops[start].fallback_operation_id
            while current is not None and current in ops and current != start:
                if current in seen:
                    break
                seen.append(current)
                current = ops[current].fallback_operation_id
            if current == start and len(seen) > 1:
                cycle = frozenset(seen)
                if cycle not in reported:
                    reported.add(cycle)
                    self.problems.append(
                        f"fallback cycle: {' -> '.join(seen + [start])}"
                    )

    def _topological_order(self, ops: Mapping[str, DecisionTreeOperation]) -> List[str]:
        """Kahn's algorithm; anything left unvisited sits on a dependency cycle."""
        in_degree = {op_id: 0 for op_id in ops}
        dependents: Dict[str, List[str]] = defaultdict(list)
        for op in ops.values():
            for dep in set(op.dependencies):
                if dep in ops and dep != op.id:
                    in_degree[op.id] += 1
                    dependents[dep].append(op.id)

        def key(op_id: str) -> Tuple[int, str]:
            return (ops[op_id].display_order, op_id)

        ready = [(key(op_id), op_id) for op_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            _, op_id = heapq.heappop(ready)
            order.append(op_id)
            for child in dependents[op_id]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (key(child), child))

        if len(order) < len(ops):
            stuck = sorted(op_id for op_id in ops if op_id not in set(order))
            self.problems.append(f"dependency cycle among operations: {', '.join(stuck)}")
        return order


def build_graph(
    tree: DecisionTree,
    operations: Sequence[DecisionTreeOperation],
    conditions: Sequence[DecisionTreeCondition],
    *,
    strict_condition_types: bool = False,
) -> OperationGraph:
    """Build and validate the graph for one tree version."""
    return OperationGraph.build(
        tree, operations, conditions, strict_condition_types=strict_condition_types
    )
