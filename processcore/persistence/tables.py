from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class InstanceRow(SQLModel, table=True):
    """Represents one process instance."""

    __tablename__ = "instances"

    id: str = Field(primary_key=True)
    process_id: Optional[str] = Field(default=None, index=True)
    snapshot: dict = Field(sa_column=Column(JSON, nullable=False))
    status: str = Field(default="in_progress", index=True)
    current_step_id: Optional[str] = None
    variables: dict = Field(default_factory=dict, sa_column=Column(JSON))
    started_by: Optional[str] = None
    notes: Optional[str] = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = None


class InstanceStepRow(SQLModel, table=True):
    """Execution state of one step of an instance."""

    __tablename__ = "instance_steps"
    __table_args__ = (UniqueConstraint("instance_id", "step_id"),)

    id: str = Field(primary_key=True)
    instance_id: str = Field(foreign_key="instances.id", index=True)
    step_id: str
    sequence: int
    status: str = Field(default="pending")
    started_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    completed_by: Optional[str] = None
    duration_seconds: Optional[int] = None
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    notes: Optional[str] = None


class AssignmentRow(SQLModel, table=True):
    """Step ownership record. Only one active row per step."""

    __tablename__ = "instance_assignments"
    __table_args__ = (
        Index(
            "uq_instance_assignments_active",
            "instance_id",
            "step_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: str = Field(primary_key=True)
    instance_id: str = Field(foreign_key="instances.id", index=True)
    step_id: str
    assigned_to: str
    assigned_by: Optional[str] = None
    assigned_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str = Field(default="active")
    notes: Optional[str] = None
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )


class EventRow(SQLModel, table=True):
    """Append-only timeline entry."""

    __tablename__ = "instance_events"

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(unique=True)
    instance_id: str = Field(foreign_key="instances.id", index=True)
    event_type: str
    step_id: Optional[str] = None
    actor: Optional[str] = None
    message: Optional[str] = None
    # ``metadata`` is reserved on declarative classes
    event_metadata: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


ALL_TABLES = [
    InstanceRow.__table__,
    InstanceStepRow.__table__,
    AssignmentRow.__table__,
    EventRow.__table__,
]
