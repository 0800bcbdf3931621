"""Row-shaped models for decision trees, their operations and run history."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Execution status values for a run's history records."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle (terminal states share a rank)."""
        if self == ExecutionStatus.PENDING:
            return 0
        if self == ExecutionStatus.IN_PROGRESS:
            return 1
        return 2


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETE,
    ExecutionStatus.SKIPPED,
    ExecutionStatus.FAILED,
})

# Statuses that satisfy a downstream dependency
SATISFYING_STATUSES = frozenset({ExecutionStatus.COMPLETE, ExecutionStatus.SKIPPED})


class DecisionTree(BaseModel):
    """A versioned decision tree owned by a project template."""

    id: str
    project_id: str
    name: str
    description: Optional[str] = None
    version: int = 1
    is_active: bool = False
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_serializer("created_at", "updated_at")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()


class DecisionTreeOperation(BaseModel):
    """A node in the decision graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    decision_tree_id: str
    phase_name: str
    operation_name: str
    operation_type: str = "task"
    display_order: int = 0
    dependencies: list[str] = Field(default_factory=list)
    parallel_group: Optional[str] = None
    fallback_operation_id: Optional[str] = None
    is_optional: bool = False
    condition_rules: Any = Field(default_factory=dict)
    notes: Optional[str] = None

    @field_validator("parallel_group", "fallback_operation_id")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        # The editor stores "" for cleared selects
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("dependencies", mode="before")
    @classmethod
    def null_dependencies(cls, v: Any) -> Any:
        return [] if v is None else v


class DecisionTreeCondition(BaseModel):
    """A branch rule attached to an operation."""

    model_config = ConfigDict(frozen=True)

    id: str
    operation_id: str
    condition_type: str
    condition_data: dict[str, Any] = Field(default_factory=dict)
    next_operation_id: Optional[str] = None
    priority: int = 0
    is_fallback: bool = False


class TreeRows(BaseModel):
    """Everything storage returns for one tree version."""

    tree: DecisionTree
    operations: list[DecisionTreeOperation] = Field(default_factory=list)
    conditions: list[DecisionTreeCondition] = Field(default_factory=list)


class ProjectRun(BaseModel):
    """One execution of a project template, pinned to a tree version."""

    id: str
    project_id: str
    decision_tree_id: str
    user_id: str
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @field_serializer("created_at")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()


class DecisionTreeExecutionPath(BaseModel):
    """Immutable record of one decision taken during a run."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_run_id: str
    decision_tree_id: str
    operation_id: str
    phase_name: str
    operation_name: str
    chosen_path: Optional[str] = None
    chosen_condition_id: Optional[str] = None
    next_operation_id: Optional[str] = None
    execution_timestamp: datetime = Field(default_factory=utc_now)
    user_id: str
    decision_data: dict[str, Any] = Field(default_factory=dict)
    execution_status: ExecutionStatus

    @property
    def idempotency_key(self) -> tuple[str, str, str]:
        return (self.project_run_id, self.operation_id, self.execution_status.value)

    @field_serializer("execution_timestamp")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat()
