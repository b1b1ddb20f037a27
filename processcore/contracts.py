"""Request/response envelopes, trigger configuration and domain events."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_DELAY_MS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMELINE_LIMIT,
)
from .models import (
    Assignment,
    Instance,
    InstanceStep,
    StepDefinition,
    UtcDatetime,
    new_id,
    utc_now,
)

TriggerEvent = Literal[
    "process.started",
    "process.completed",
    "process.failed",
    "step.started",
    "step.completed",
    "step.failed",
]
Resolution = Literal["registered", "default_fallback"]


# ----------------------------------------------------------------------
# Inbound requests


class StartInstanceRequest(BaseModel):
    process_id: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    started_by: str = "system"
    notes: Optional[str] = None
    resolution: Resolution = "registered"


class CompleteStepRequest(BaseModel):
    step_id: str
    completed_by: str = "system"
    output: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class AssignStepRequest(BaseModel):
    step_id: str
    assigned_to: str = Field(min_length=1)
    assigned_by: str = "system"
    notes: Optional[str] = None


class CallbackRequest(BaseModel):
    """Status report from an external collaborator."""

    instance_id: str
    step_id: Optional[str] = None
    status: Literal["success", "failed", "pending"]
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class WebhookTriggerRequest(BaseModel):
    process_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    resolution: Resolution = "registered"


# ----------------------------------------------------------------------
# Outbound results


class StartResult(BaseModel):
    instance: Instance
    steps: List[InstanceStep]


class CompleteStepResult(BaseModel):
    instance: Instance
    steps: List[InstanceStep]
    completed_step: InstanceStep
    next_step: Optional[StepDefinition] = None


class AssignResult(BaseModel):
    assignment: Assignment


class InstanceDetails(Instance):
    steps: List[InstanceStep] = Field(default_factory=list)
    assignments: List[Assignment] = Field(default_factory=list)
    current_step: Optional[StepDefinition] = None


class TimelineEntry(BaseModel):
    id: str
    type: str
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    actor: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: UtcDatetime


class Pagination(BaseModel):
    total: int
    limit: int = DEFAULT_TIMELINE_LIMIT
    offset: int = 0
    has_more: bool = False


class TimelinePage(BaseModel):
    timeline: List[TimelineEntry] = Field(default_factory=list)
    pagination: Pagination


class WebhookTriggerResult(BaseModel):
    success: bool = True
    instance_id: str
    process_id: str
    status: str = "started"
    message: str = "Process instance created successfully"


class CallbackResult(BaseModel):
    success: bool = True
    instance_id: str
    updated: bool
    message: str


# ----------------------------------------------------------------------
# Triggers and actions


class RetryPolicy(BaseModel):
    """Exponential backoff policy for one action."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    initial_delay_ms: int = Field(default=DEFAULT_INITIAL_DELAY_MS, ge=0)
    max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)
    backoff_multiplier: float = Field(default=DEFAULT_BACKOFF_MULTIPLIER, ge=1.0)


class TriggerCondition(BaseModel):
    field: str
    operator: Literal[
        "equals", "not_equals", "contains", "not_contains", "gt", "lt", "exists"
    ]
    value: Any = None


class TriggerAction(BaseModel):
    id: str = Field(default_factory=new_id)
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    order: int = 0
    on_error: Literal["continue", "stop"] = "continue"
    retry_policy: Optional[RetryPolicy] = None

    @field_validator("on_error", mode="before")
    @classmethod
    def _legacy_on_error(cls, value: Any) -> Any:
        # Older trigger exports used "abort" and "retry".
        if value == "abort":
            return "stop"
        if value == "retry":
            return "continue"
        return value


class Trigger(BaseModel):
    """Rule mapping a domain event to an ordered list of actions."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    description: Optional[str] = None
    process_id: Optional[str] = None
    event: TriggerEvent
    step_id: Optional[str] = None
    conditions: List[TriggerCondition] = Field(default_factory=list)
    actions: List[TriggerAction] = Field(default_factory=list)
    is_active: bool = True

    def matches(self, process_id: str, event: str, step_id: Optional[str]) -> bool:
        if not self.is_active or self.event != event:
            return False
        if self.process_id is not None and self.process_id != process_id:
            return False
        return self.step_id is None or self.step_id == step_id


class ActionError(BaseModel):
    message: str
    code: Optional[str] = None


class ActionExecution(BaseModel):
    """Observability record for one action run."""

    id: str = Field(default_factory=new_id)
    trigger_id: str = ""
    action_id: str
    action_type: str
    instance_id: Optional[str] = None
    step_id: Optional[str] = None
    status: Literal["pending", "running", "success", "failed", "retrying"] = "pending"
    started_at: UtcDatetime = Field(default_factory=utc_now)
    completed_at: Optional[UtcDatetime] = None
    duration_ms: Optional[int] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[ActionError] = None
    retry_count: int = 0
    metadata: Dict[str, str] = Field(default_factory=dict)


class TriggerRunResult(BaseModel):
    executions: List[ActionExecution] = Field(default_factory=list)
    overall_success: bool = True
    failed_at: Optional[str] = None


# ----------------------------------------------------------------------
# Domain events published on the bus


class DomainEvent(BaseModel):
    """Event envelope exchanged over the event bus."""

    id: str = Field(default_factory=new_id)
    event: TriggerEvent
    process_id: Optional[str] = None
    instance_id: Optional[str] = None
    step_id: Optional[str] = None
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    data: Dict[str, Any] = Field(default_factory=dict)
    source: Literal["internal", "webhook", "api", "callback"] = "internal"

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "DomainEvent":
        return cls.model_validate_json(data)

    def topics(self) -> List[str]:
        """Topics this event is delivered on."""
        topics = ["events"]
        if self.instance_id:
            topics.append(f"instance:{self.instance_id}")
        if self.process_id:
            topics.append(f"process:{self.process_id}")
        return topics
