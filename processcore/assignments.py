"""Step ownership tracking."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import Assignment
from .persistence import ExecutionRepository, ExecutionTransaction


class AssignmentTracker:
    """Keeps at most one active assignment per instance step.

    All writes happen inside the caller's transaction so demoting the old
    owner and inserting the new one commit together.
    """

    async def assign(
        self,
        tx: ExecutionTransaction,
        instance_id: str,
        step_id: str,
        assigned_to: str,
        assigned_by: Optional[str],
        notes: Optional[str],
        now: datetime,
    ) -> tuple[Assignment, list[Assignment]]:
        """Return the new assignment and the active ones it replaced."""
        previous = await tx.transition_assignments(
            instance_id, step_id, from_status="active", to_status="reassigned"
        )
        assignment = Assignment(
            instance_id=instance_id,
            step_id=step_id,
            assigned_to=assigned_to,
            assigned_by=assigned_by,
            assigned_at=now,
            notes=notes,
        )
        await tx.insert_assignment(assignment)
        return assignment, previous

    async def release(
        self,
        tx: ExecutionTransaction,
        instance_id: str,
        step_id: str,
        now: datetime,
    ) -> list[Assignment]:
        """Mark active assignments of a finished step as completed."""
        return await tx.transition_assignments(
            instance_id,
            step_id,
            from_status="active",
            to_status="completed",
            completed_at=now,
        )

    async def active(
        self, repository: ExecutionRepository, instance_id: str
    ) -> list[Assignment]:
        return await repository.list_assignments(instance_id, status="active")
