"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..errors import DuplicateAssignment
from ..models import Assignment, Instance, InstanceStep, TimelineEvent
from .repository import ExecutionRepository


class _InMemoryTransaction:
    """Copy-on-write view over the repository maps.

    Records are never mutated in place; updates replace entries, so the
    committed maps can be swapped in a single step.
    """

    def __init__(self, repo: "InMemoryExecutionRepository") -> None:
        self.instances = dict(repo._instances)
        self.steps = dict(repo._steps)
        self.assignments = dict(repo._assignments)

    async def get_instance(
        self, instance_id: str, for_update: bool = False
    ) -> Instance | None:
        instance = self.instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def insert_instance(self, instance: Instance) -> None:
        self.instances[instance.id] = instance.model_copy(deep=True)

    async def update_instance(self, instance: Instance) -> None:
        if instance.id in self.instances:
            self.instances[instance.id] = instance.model_copy(deep=True)

    async def insert_steps(self, steps: list[InstanceStep]) -> None:
        for step in steps:
            self.steps[(step.instance_id, step.step_id)] = step.model_copy(deep=True)

    async def get_step(self, instance_id: str, step_id: str) -> InstanceStep | None:
        step = self.steps.get((instance_id, step_id))
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, instance_id: str) -> list[InstanceStep]:
        return _sorted_steps(self.steps, instance_id)

    async def update_step(
        self, step: InstanceStep, expected_status: Optional[str] = None
    ) -> bool:
        key = (step.instance_id, step.step_id)
        current = self.steps.get(key)
        if current is None:
            return False
        if expected_status is not None and current.status != expected_status:
            return False
        self.steps[key] = step.model_copy(deep=True)
        return True

    async def list_assignments(
        self,
        instance_id: str,
        step_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Assignment]:
        return _filter_assignments(self.assignments, instance_id, step_id, status)

    async def transition_assignments(
        self,
        instance_id: str,
        step_id: str,
        from_status: str,
        to_status: str,
        completed_at=None,
    ) -> list[Assignment]:
        matched = _filter_assignments(self.assignments, instance_id, step_id, from_status)
        for assignment in matched:
            update = {"status": to_status}
            if completed_at is not None:
                update["completed_at"] = completed_at
            self.assignments[assignment.id] = assignment.model_copy(update=update)
        return matched

    async def insert_assignment(self, assignment: Assignment) -> None:
        if assignment.status == "active" and _filter_assignments(
            self.assignments, assignment.instance_id, assignment.step_id, "active"
        ):
            raise DuplicateAssignment(assignment.instance_id, assignment.step_id)
        self.assignments[assignment.id] = assignment.model_copy(deep=True)


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, Instance] = {}
        self._steps: Dict[Tuple[str, str], InstanceStep] = {}
        self._assignments: Dict[str, Assignment] = {}
        self._events: Dict[str, List[TimelineEvent]] = defaultdict(list)
        self._event_seq = 0
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_InMemoryTransaction]:
        async with self._write_lock:
            tx = _InMemoryTransaction(self)
            yield tx
            self._commit(tx)

    def _commit(self, tx: _InMemoryTransaction) -> None:
        self._instances = tx.instances
        self._steps = tx.steps
        self._assignments = tx.assignments

    # ------------------------------------------------------------------
    async def get_instance(self, instance_id: str) -> Instance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(self, status: Optional[str] = None) -> list[Instance]:
        instances = [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if status is None or i.status == status
        ]
        return sorted(instances, key=lambda i: i.started_at, reverse=True)

    async def list_steps(self, instance_id: str) -> list[InstanceStep]:
        return _sorted_steps(self._steps, instance_id)

    async def list_assignments(
        self,
        instance_id: str,
        step_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Assignment]:
        return _filter_assignments(self._assignments, instance_id, step_id, status)

    async def append_event(self, event: TimelineEvent) -> TimelineEvent:
        self._event_seq += 1
        stored = event.model_copy(update={"seq": self._event_seq}, deep=True)
        self._events[event.instance_id].append(stored)
        return stored.model_copy(deep=True)

    async def list_events(
        self, instance_id: str, limit: int, offset: int
    ) -> list[TimelineEvent]:
        events = sorted(
            self._events.get(instance_id, []),
            key=lambda e: (e.created_at, e.seq or 0),
            reverse=True,
        )
        return [e.model_copy(deep=True) for e in events[offset : offset + limit]]

    async def count_events(self, instance_id: str) -> int:
        return len(self._events.get(instance_id, []))

    async def close(self) -> None:
        pass


def _sorted_steps(
    steps: Dict[Tuple[str, str], InstanceStep], instance_id: str
) -> list[InstanceStep]:
    rows = [s.model_copy(deep=True) for s in steps.values() if s.instance_id == instance_id]
    return sorted(rows, key=lambda s: s.sequence)


def _filter_assignments(
    assignments: Dict[str, Assignment],
    instance_id: str,
    step_id: Optional[str],
    status: Optional[str],
) -> list[Assignment]:
    rows = [
        a.model_copy(deep=True)
        for a in assignments.values()
        if a.instance_id == instance_id
        and (step_id is None or a.step_id == step_id)
        and (status is None or a.status == status)
    ]
    return sorted(rows, key=lambda a: a.assigned_at)
