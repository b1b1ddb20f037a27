"""Instance state machine for process executions."""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Any, Callable, Dict, Literal, Optional

from .assignments import AssignmentTracker
from .constants import DEFAULT_TIMELINE_LIMIT
from .contracts import (
    AssignResult,
    CompleteStepResult,
    InstanceDetails,
    StartResult,
    TimelinePage,
)
from .errors import (
    AlreadyCompleted,
    EmptyProcessError,
    InstanceNotActive,
    InstanceNotFound,
    StepNotActive,
    StepNotFound,
)
from .models import Instance, InstanceStep, utc_now
from .persistence import ExecutionRepository, ExecutionTransaction
from .processes import ResolvedProcess
from .timeline import TimelineLog

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class InstanceLocks:
    """One ``asyncio.Lock`` per instance id, dropped once nobody holds it."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def for_instance(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock


class InstanceStateMachine:
    """Owns instance lifecycle transitions.

    Every transition runs under the instance lock inside one repository
    transaction. Timeline events are appended after the commit, so a
    failing audit write never rolls back state.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        timeline: Optional[TimelineLog] = None,
        assignments: Optional[AssignmentTracker] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._repository = repository
        self._timeline = timeline or TimelineLog(repository)
        self._assignments = assignments or AssignmentTracker()
        self._clock = clock
        self._locks = InstanceLocks()

    @property
    def repository(self) -> ExecutionRepository:
        return self._repository

    @property
    def timeline(self) -> TimelineLog:
        return self._timeline

    # ------------------------------------------------------------------
    # Transitions
    async def start_instance(
        self,
        resolved: ResolvedProcess,
        variables: Optional[Dict[str, Any]] = None,
        started_by: Optional[str] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StartResult:
        """Create an instance with its first step in progress.

        ``metadata`` describes how the start was requested and is recorded on
        the ``instance_started`` event only.
        """
        snapshot = resolved.snapshot
        if not snapshot.steps:
            raise EmptyProcessError(resolved.process_id or snapshot.id)

        now = self._clock()
        first = snapshot.steps[0]
        instance = Instance(
            process_id=resolved.process_id,
            snapshot=snapshot,
            current_step_id=first.step_id,
            variables=dict(variables or {}),
            started_by=started_by,
            notes=notes,
            started_at=now,
        )
        steps = [
            InstanceStep(
                instance_id=instance.id,
                step_id=definition.step_id,
                sequence=index + 1,
                status="in_progress" if index == 0 else "pending",
                started_at=now if index == 0 else None,
            )
            for index, definition in enumerate(snapshot.steps)
        ]

        async with self._locks.for_instance(instance.id):
            async with self._repository.transaction() as tx:
                await tx.insert_instance(instance)
                await tx.insert_steps(steps)

            await self._timeline.append(
                instance.id,
                "instance_started",
                actor=started_by,
                message=f'Process "{snapshot.name}" started',
                metadata={"variables": instance.variables, **(metadata or {})},
                created_at=now,
            )
            await self._timeline.append(
                instance.id,
                "step_started",
                step_id=first.step_id,
                actor=started_by,
                message=f'Step "{first.name}" started',
                created_at=now,
            )

        logger.info(
            f"Started instance_id={instance.id} of process {snapshot.id} "
            f"at step {first.step_id}"
        )
        return StartResult(instance=instance, steps=steps)

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        completed_by: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> CompleteStepResult:
        """Complete the in-progress step and advance to its successor."""
        async with self._locks.for_instance(instance_id):
            now = self._clock()
            async with self._repository.transaction() as tx:
                instance = await self._load_instance(tx, instance_id)
                step = await self._load_step(tx, instance_id, step_id)
                if step.status == "completed":
                    raise AlreadyCompleted(instance_id, step_id)
                if instance.status != "in_progress":
                    raise InstanceNotActive(instance_id, instance.status)
                if step.status != "in_progress":
                    raise StepNotActive(instance_id, step_id, step.status)

                started_at = step.started_at or now
                completed = step.model_copy(
                    update={
                        "status": "completed",
                        "completed_at": now,
                        "completed_by": completed_by,
                        "duration_seconds": max(
                            0, int((now - started_at).total_seconds())
                        ),
                        "output": output,
                        "notes": notes,
                    }
                )
                if not await tx.update_step(completed, expected_status="in_progress"):
                    raise AlreadyCompleted(instance_id, step_id)
                await self._assignments.release(tx, instance_id, step_id, now)

                next_definition = instance.snapshot.next_step(step_id)
                if next_definition is not None:
                    successor = await self._load_step(
                        tx, instance_id, next_definition.step_id
                    )
                    await tx.update_step(
                        successor.model_copy(
                            update={"status": "in_progress", "started_at": now}
                        )
                    )
                    instance = instance.model_copy(
                        update={"current_step_id": next_definition.step_id}
                    )
                else:
                    instance = instance.model_copy(
                        update={
                            "status": "completed",
                            "completed_at": now,
                            "current_step_id": None,
                        }
                    )
                await tx.update_instance(instance)
                steps = await tx.list_steps(instance_id)

            step_name = instance.snapshot.step_names().get(step_id, step_id)
            await self._timeline.append(
                instance_id,
                "step_completed",
                step_id=step_id,
                actor=completed_by,
                message=f'Step "{step_name}" completed',
                metadata={
                    "output": output,
                    "duration_seconds": completed.duration_seconds,
                },
                created_at=now,
            )
            if next_definition is not None:
                await self._timeline.append(
                    instance_id,
                    "step_started",
                    step_id=next_definition.step_id,
                    actor=completed_by,
                    message=f'Step "{next_definition.name}" started',
                    created_at=now,
                )
            else:
                await self._timeline.append(
                    instance_id,
                    "instance_completed",
                    actor=completed_by,
                    message=f'Process "{instance.snapshot.name}" completed',
                    created_at=now,
                )

        logger.info(
            f"Completed step {step_id} of instance_id={instance_id}, "
            f"next={next_definition.step_id if next_definition else None}"
        )
        return CompleteStepResult(
            instance=instance,
            steps=steps,
            completed_step=completed,
            next_step=next_definition,
        )

    async def assign_step(
        self,
        instance_id: str,
        step_id: str,
        assigned_to: str,
        assigned_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AssignResult:
        """Hand a step to a new owner, demoting any current owner."""
        async with self._locks.for_instance(instance_id):
            now = self._clock()
            async with self._repository.transaction() as tx:
                await self._load_instance(tx, instance_id)
                await self._load_step(tx, instance_id, step_id)
                assignment, previous = await self._assignments.assign(
                    tx, instance_id, step_id, assigned_to, assigned_by, notes, now
                )

            if previous:
                previous_owners = [a.assigned_to for a in previous]
                await self._timeline.append(
                    instance_id,
                    "step_reassigned",
                    step_id=step_id,
                    actor=assigned_by,
                    message=(
                        f"Step reassigned from {', '.join(previous_owners)} "
                        f"to {assigned_to}"
                    ),
                    metadata={
                        "previous_assignees": previous_owners,
                        "assigned_to": assigned_to,
                    },
                    created_at=now,
                )
            else:
                await self._timeline.append(
                    instance_id,
                    "step_assigned",
                    step_id=step_id,
                    actor=assigned_by,
                    message=f"Step assigned to {assigned_to}",
                    metadata={"assigned_to": assigned_to},
                    created_at=now,
                )

        logger.info(f"Assigned step {step_id} of instance_id={instance_id} to {assigned_to}")
        return AssignResult(assignment=assignment)

    async def finish_instance(
        self,
        instance_id: str,
        status: Literal["completed", "failed"],
        actor: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Instance:
        """Close an in-progress instance regardless of its current step.

        A completed instance marks its unfinished steps as skipped; a failed
        one keeps its steps where they stopped. Either way no step keeps an
        active owner.
        """
        async with self._locks.for_instance(instance_id):
            now = self._clock()
            async with self._repository.transaction() as tx:
                instance = await self._load_instance(tx, instance_id)
                if instance.status != "in_progress":
                    raise InstanceNotActive(instance_id, instance.status)
                for step in await tx.list_steps(instance_id):
                    await self._assignments.release(tx, instance_id, step.step_id, now)
                    if status == "completed" and step.status in ("pending", "in_progress"):
                        await tx.update_step(step.model_copy(update={"status": "skipped"}))
                instance = instance.model_copy(
                    update={
                        "status": status,
                        "completed_at": now,
                        "current_step_id": None,
                        "output": output,
                        "error": error,
                    }
                )
                await tx.update_instance(instance)

            if status == "completed":
                await self._timeline.append(
                    instance_id,
                    "instance_completed",
                    actor=actor,
                    message=f'Process "{instance.snapshot.name}" completed',
                    metadata={"output": output} if output else {},
                    created_at=now,
                )
            else:
                await self._timeline.append(
                    instance_id,
                    "instance_failed",
                    actor=actor,
                    message=f'Process "{instance.snapshot.name}" failed',
                    metadata={"error": error},
                    created_at=now,
                )

        logger.info(f"Instance instance_id={instance_id} finished with status {status}")
        return instance

    async def fail_instance(
        self,
        instance_id: str,
        error: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Instance:
        return await self.finish_instance(instance_id, "failed", actor=actor, error=error)

    async def annotate_step(
        self, instance_id: str, step_id: str, data: Dict[str, Any]
    ) -> InstanceStep:
        """Merge externally reported data into a step's output without moving it."""
        async with self._locks.for_instance(instance_id):
            async with self._repository.transaction() as tx:
                await self._load_instance(tx, instance_id)
                step = await self._load_step(tx, instance_id, step_id)
                step = step.model_copy(update={"output": {**(step.output or {}), **data}})
                await tx.update_step(step)
        return step

    # ------------------------------------------------------------------
    # Queries
    async def get_instance(self, instance_id: str) -> InstanceDetails:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        steps = await self._repository.list_steps(instance_id)
        assignments = await self._assignments.active(self._repository, instance_id)
        return InstanceDetails(
            **instance.model_dump(),
            steps=steps,
            assignments=assignments,
            current_step=instance.snapshot.get_step(instance.current_step_id),
        )

    async def get_timeline(
        self, instance_id: str, limit: int = DEFAULT_TIMELINE_LIMIT, offset: int = 0
    ) -> TimelinePage:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return await self._timeline.page(instance, limit, offset)

    async def list_instances(self, status: Optional[str] = None) -> list[Instance]:
        return await self._repository.list_instances(status)

    # ------------------------------------------------------------------
    @staticmethod
    async def _load_instance(tx: ExecutionTransaction, instance_id: str) -> Instance:
        instance = await tx.get_instance(instance_id, for_update=True)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    @staticmethod
    async def _load_step(
        tx: ExecutionTransaction, instance_id: str, step_id: str
    ) -> InstanceStep:
        step = await tx.get_step(instance_id, step_id)
        if step is None:
            raise StepNotFound(instance_id, step_id)
        return step
