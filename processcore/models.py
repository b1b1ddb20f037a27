"""Domain records for process definitions and running instances."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple

import pydantic
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_utc)]

InstanceStatus = Literal["in_progress", "completed", "failed"]
StepStatus = Literal["pending", "in_progress", "completed", "skipped"]
AssignmentStatus = Literal["active", "completed", "reassigned"]
EventType = Literal[
    "instance_started",
    "instance_completed",
    "instance_failed",
    "step_started",
    "step_completed",
    "step_assigned",
    "step_reassigned",
]


def new_id() -> str:
    return str(uuid.uuid4())


def unique_step_ids(steps):
    seen = set()
    for step in steps:
        if step.step_id in seen:
            raise ValueError(f"Duplicate step_id {step.step_id!r}")
        seen.add(step.step_id)
    return steps


# ----------------------------------------------------------------------
# Process definitions


class DecisionBranch(BaseModel):
    """One outgoing edge of a decision step.

    Branches are descriptive: step advancement is always sequential.
    """

    model_config = ConfigDict(frozen=True)

    label: str
    goto: str
    condition: Optional[str] = None


class StepDefinition(BaseModel):
    """A single step of a process definition."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    name: str
    type: str = "task"
    description: Optional[str] = None
    owner: Optional[str] = None
    decision_branches: Tuple[DecisionBranch, ...] = ()


class ProcessDefinition(BaseModel):
    """Live, editable process definition."""

    id: str
    name: str
    description: Optional[str] = None
    version: str = "1.0"
    steps: List[StepDefinition] = Field(default_factory=list)

    @field_validator("steps")
    @classmethod
    def check_step_ids(cls, steps: List[StepDefinition]) -> List[StepDefinition]:
        return unique_step_ids(steps)

    def snapshot(self) -> "ProcessSnapshot":
        """Return a deep, frozen copy of this definition."""
        try:
            return ProcessSnapshot.model_validate(self.model_dump())
        except pydantic.ValidationError as exc:
            # Definitions are editable, so steps may have changed since load.
            raise ValidationError(
                "Invalid process definition",
                {"process_id": self.id, "reason": str(exc)},
            ) from exc


class ProcessSnapshot(BaseModel):
    """Immutable copy of a definition, owned by one instance."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    version: str = "1.0"
    steps: Tuple[StepDefinition, ...] = ()

    @field_validator("steps")
    @classmethod
    def check_step_ids(
        cls, steps: Tuple[StepDefinition, ...]
    ) -> Tuple[StepDefinition, ...]:
        return unique_step_ids(steps)

    def index_of(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.step_id == step_id:
                return index
        return -1

    def get_step(self, step_id: Optional[str]) -> Optional[StepDefinition]:
        if step_id is None:
            return None
        index = self.index_of(step_id)
        return self.steps[index] if index >= 0 else None

    def next_step(self, step_id: str) -> Optional[StepDefinition]:
        """Return the sequential successor of ``step_id`` if any."""
        index = self.index_of(step_id)
        if index < 0 or index + 1 >= len(self.steps):
            return None
        return self.steps[index + 1]

    def step_names(self) -> Dict[str, str]:
        return {step.step_id: step.name for step in self.steps}


# ----------------------------------------------------------------------
# Instance state


class Instance(BaseModel):
    """One running execution of a process definition."""

    id: str = Field(default_factory=new_id)
    process_id: Optional[str] = None
    snapshot: ProcessSnapshot
    status: InstanceStatus = "in_progress"
    current_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    started_by: Optional[str] = None
    notes: Optional[str] = None
    started_at: UtcDatetime = Field(default_factory=utc_now)
    completed_at: Optional[UtcDatetime] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def trigger_process_id(self) -> str:
        """Process identifier used to look up triggers."""
        return self.process_id or self.snapshot.id


class InstanceStep(BaseModel):
    """Execution state of one snapshot step within an instance."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_id: str
    sequence: int
    status: StepStatus = "pending"
    started_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    completed_by: Optional[str] = None
    duration_seconds: Optional[int] = None
    output: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class Assignment(BaseModel):
    """Record of who owns a step of an instance."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_id: str
    assigned_to: str
    assigned_by: Optional[str] = None
    assigned_at: UtcDatetime = Field(default_factory=utc_now)
    status: AssignmentStatus = "active"
    notes: Optional[str] = None
    completed_at: Optional[UtcDatetime] = None


class TimelineEvent(BaseModel):
    """Append-only audit entry for an instance."""

    id: str = Field(default_factory=new_id)
    seq: Optional[int] = None
    instance_id: str
    event_type: EventType
    step_id: Optional[str] = None
    actor: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: UtcDatetime = Field(default_factory=utc_now)
