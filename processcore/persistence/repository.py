"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from typing import AsyncContextManager, Optional, Protocol

from ..models import Assignment, Instance, InstanceStep, TimelineEvent


class ExecutionTransaction(Protocol):
    """Unit of work; every write is applied on commit or not at all."""

    async def get_instance(
        self, instance_id: str, for_update: bool = False
    ) -> Instance | None:
        """Fetch an instance, optionally locking its row."""

    async def insert_instance(self, instance: Instance) -> None:
        """Persist a new instance."""

    async def update_instance(self, instance: Instance) -> None:
        """Persist mutable instance fields."""

    async def insert_steps(self, steps: list[InstanceStep]) -> None:
        """Persist the full step batch of a new instance."""

    async def get_step(self, instance_id: str, step_id: str) -> InstanceStep | None:
        """Fetch one instance step."""

    async def list_steps(self, instance_id: str) -> list[InstanceStep]:
        """Return steps ordered by sequence."""

    async def update_step(
        self, step: InstanceStep, expected_status: Optional[str] = None
    ) -> bool:
        """Update a step; return ``False`` when ``expected_status`` no longer holds."""

    async def list_assignments(
        self,
        instance_id: str,
        step_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Assignment]:
        """Return assignments matching the filters."""

    async def transition_assignments(
        self,
        instance_id: str,
        step_id: str,
        from_status: str,
        to_status: str,
        completed_at=None,
    ) -> list[Assignment]:
        """Move matching assignments to ``to_status`` and return their prior state."""

    async def insert_assignment(self, assignment: Assignment) -> None:
        """Persist a new assignment."""


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends."""

    def transaction(self) -> AsyncContextManager[ExecutionTransaction]:
        """Open a unit of work."""

    async def get_instance(self, instance_id: str) -> Instance | None:
        """Retrieve an instance by id."""

    async def list_instances(self, status: Optional[str] = None) -> list[Instance]:
        """Return all instances, optionally filtered by status."""

    async def list_steps(self, instance_id: str) -> list[InstanceStep]:
        """Return instance steps ordered by sequence."""

    async def list_assignments(
        self,
        instance_id: str,
        step_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Assignment]:
        """Return assignments matching the filters."""

    async def append_event(self, event: TimelineEvent) -> TimelineEvent:
        """Append a timeline event and return it with its sequence number."""

    async def list_events(
        self, instance_id: str, limit: int, offset: int
    ) -> list[TimelineEvent]:
        """Return one page of events, newest first."""

    async def count_events(self, instance_id: str) -> int:
        """Return the exact number of events for an instance."""

    async def close(self) -> None:
        """Release backend resources."""
