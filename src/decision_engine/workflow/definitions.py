"""YAML authoring format for decision trees.

A definition file lists phases in order, each with its operations::

    name: Deck build
    phases:
      - name: Prep
        operations:
          - id: survey
            name: Survey the site
            conditions:
              - type: field_equals
                data: {skill: beginner}
                next: guided-layout
              - fallback: true
                next: freehand-layout
          - id: guided-layout
            name: Guided layout
            depends_on: [survey]

``to_rows`` turns it into the row models the graph builder consumes.
Operations get ``display_order`` from their position in the document.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from ..core.models import (
    DecisionTree,
    DecisionTreeCondition,
    DecisionTreeOperation,
    TreeRows,
)
from .conditions import ConditionType

logger = logging.getLogger(__name__)


class ConditionDefinition(BaseModel):
    """One branch rule on an operation."""
    type: str = ConditionType.ALWAYS.value
    data: dict[str, Any] = Field(default_factory=dict)
    next: Optional[str] = None
    priority: Optional[int] = None  # Defaults to position within the operation
    fallback: bool = False


class OperationDefinition(BaseModel):
    """One operation inside a phase."""
    id: str
    name: str
    type: str = "task"
    optional: bool = False
    parallel_group: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    fallback: Optional[str] = None
    rules: Any = None
    notes: Optional[str] = None
    conditions: List[ConditionDefinition] = Field(default_factory=list)

    @field_validator("depends_on", mode="before")
    @classmethod
    def single_dependency(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class PhaseDefinition(BaseModel):
    """A named phase; its operations keep document order."""
    name: str
    operations: List[OperationDefinition] = Field(default_factory=list)


class TreeDefinition(BaseModel):
    """A whole tree as authored in YAML."""
    name: str
    description: Optional[str] = None
    phases: List[PhaseDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_ids(self) -> "TreeDefinition":
        seen = set()
        for phase in self.phases:
            for op in phase.operations:
                if op.id in seen:
                    raise ValueError(f"Operation id '{op.id}' is defined more than once")
                seen.add(op.id)
        return self

    @property
    def operation_count(self) -> int:
        return sum(len(phase.operations) for phase in self.phases)

    def to_rows(self, tree: DecisionTree) -> TreeRows:
        """Expand into operation and condition rows owned by ``tree``."""
        operations: List[DecisionTreeOperation] = []
        conditions: List[DecisionTreeCondition] = []
        display_order = 0
        for phase in self.phases:
            for op in phase.operations:
                display_order += 1
                operations.append(
                    DecisionTreeOperation(
                        id=op.id,
                        decision_tree_id=tree.id,
                        phase_name=phase.name,
                        operation_name=op.name,
                        operation_type=op.type,
                        display_order=display_order,
                        dependencies=list(op.depends_on),
                        parallel_group=op.parallel_group,
                        fallback_operation_id=op.fallback,
                        is_optional=op.optional,
                        condition_rules=op.rules or {},
                        notes=op.notes,
                    )
                )
                for index, cond in enumerate(op.conditions, start=1):
                    conditions.append(
                        DecisionTreeCondition(
                            id=f"{op.id}#{index}",
                            operation_id=op.id,
                            condition_type=cond.type,
                            condition_data=dict(cond.data),
                            next_operation_id=cond.next,
                            priority=index if cond.priority is None else cond.priority,
                            is_fallback=cond.fallback,
                        )
                    )
        return TreeRows(tree=tree, operations=operations, conditions=conditions)


def load_tree_definition(path: Union[str, Path]) -> TreeDefinition:
    """Read and validate a tree definition file.

    Raises:
        FileNotFoundError: the file does not exist
        pydantic.ValidationError: the document does not match the format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tree definition not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    definition = TreeDefinition(**data)
    logger.debug(
        f"Loaded tree definition '{definition.name}' from {path} "
        f"({len(definition.phases)} phases, {definition.operation_count} operations)"
    )
    return definition
