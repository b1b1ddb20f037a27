"""Tests for instance lifecycle transitions."""

import asyncio

import pydantic
import pytest

from processcore.errors import (
    AlreadyCompleted,
    EmptyProcessError,
    InstanceNotActive,
    InstanceNotFound,
    StepNotActive,
    StepNotFound,
    UpstreamError,
    ValidationError,
)
from processcore.models import ProcessDefinition, ProcessSnapshot, StepDefinition
from processcore.persistence import inmemory
from processcore.processes import ResolvedProcess


async def _event_types(machine, instance_id):
    page = await machine.get_timeline(instance_id, limit=500)
    return [(entry.type, entry.step_id) for entry in reversed(page.timeline)]


@pytest.mark.asyncio
async def test_start_instance_activates_first_step(machine, resolved, clock):
    result = await machine.start_instance(
        resolved, variables={"client": "Acme"}, started_by="alice"
    )

    instance = result.instance
    assert instance.status == "in_progress"
    assert instance.current_step_id == "A"
    assert instance.process_id == "ONBOARD-001"
    assert instance.variables == {"client": "Acme"}
    assert [s.status for s in result.steps] == ["in_progress", "pending", "pending"]
    assert [s.sequence for s in result.steps] == [1, 2, 3]
    assert result.steps[0].started_at == clock.now
    assert result.steps[1].started_at is None

    events = await _event_types(machine, instance.id)
    assert events == [("instance_started", None), ("step_started", "A")]


@pytest.mark.asyncio
async def test_start_records_variables_on_started_event(machine, resolved):
    result = await machine.start_instance(
        resolved, variables={"budget": 5000}, metadata={"trigger": {"source": "crm"}}
    )

    page = await machine.get_timeline(result.instance.id)
    started = page.timeline[-1]
    assert started.type == "instance_started"
    assert started.message == 'Process "Client Onboarding" started'
    assert started.metadata == {"variables": {"budget": 5000}, "trigger": {"source": "crm"}}


@pytest.mark.asyncio
async def test_start_rejects_empty_process(machine, repository):
    empty = ProcessDefinition(id="EMPTY", name="Nothing to do")

    with pytest.raises(EmptyProcessError):
        await machine.start_instance(
            ResolvedProcess(snapshot=empty.snapshot(), process_id=empty.id)
        )

    assert await repository.list_instances() == []


@pytest.mark.asyncio
async def test_two_step_run_completes_instance(machine, clock):
    definition = ProcessDefinition(
        id="P2",
        name="Two steps",
        steps=[StepDefinition(step_id="A", name="First"), StepDefinition(step_id="B", name="Second")],
    )
    started = await machine.start_instance(
        ResolvedProcess(snapshot=definition.snapshot(), process_id="P2")
    )
    instance_id = started.instance.id

    clock.advance(90)
    first = await machine.complete_step(instance_id, "A", completed_by="alice")
    assert first.completed_step.duration_seconds == 90
    assert first.completed_step.completed_by == "alice"
    assert first.next_step.step_id == "B"
    assert first.instance.current_step_id == "B"
    assert first.instance.status == "in_progress"
    assert [s.status for s in first.steps] == ["completed", "in_progress"]

    clock.advance(30)
    second = await machine.complete_step(instance_id, "B", output={"ok": True})
    assert second.next_step is None
    assert second.instance.status == "completed"
    assert second.instance.current_step_id is None
    assert second.instance.completed_at == clock.now
    assert second.completed_step.output == {"ok": True}
    assert second.completed_step.duration_seconds == 30


@pytest.mark.asyncio
async def test_full_run_event_order(machine, resolved):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id

    for step_id in ("A", "B", "C"):
        await machine.complete_step(instance_id, step_id)

    assert await _event_types(machine, instance_id) == [
        ("instance_started", None),
        ("step_started", "A"),
        ("step_completed", "A"),
        ("step_started", "B"),
        ("step_completed", "B"),
        ("step_started", "C"),
        ("step_completed", "C"),
        ("instance_completed", None),
    ]


@pytest.mark.asyncio
async def test_steps_stay_sequential_while_advancing(machine, resolved):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id
    order = ["A", "B", "C"]

    for index, step_id in enumerate(order):
        details = await machine.get_instance(instance_id)
        statuses = [s.status for s in details.steps]
        assert statuses.count("in_progress") == 1
        assert statuses[:index] == ["completed"] * index
        assert statuses[index] == "in_progress"
        assert statuses[index + 1 :] == ["pending"] * (len(order) - index - 1)
        assert details.current_step.step_id == step_id
        await machine.complete_step(instance_id, step_id)

    details = await machine.get_instance(instance_id)
    assert [s.status for s in details.steps] == ["completed"] * 3
    assert details.current_step is None


@pytest.mark.asyncio
async def test_completing_twice_raises_already_completed(machine, resolved):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id
    await machine.complete_step(instance_id, "A")
    before = (await machine.get_timeline(instance_id)).pagination.total

    with pytest.raises(AlreadyCompleted):
        await machine.complete_step(instance_id, "A")

    after = await machine.get_timeline(instance_id)
    assert after.pagination.total == before
    details = await machine.get_instance(instance_id)
    assert details.current_step_id == "B"


@pytest.mark.asyncio
async def test_concurrent_completion_has_single_winner(machine, resolved):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id

    results = await asyncio.gather(
        machine.complete_step(instance_id, "A", completed_by="alice"),
        machine.complete_step(instance_id, "A", completed_by="bob"),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], AlreadyCompleted)

    events = await _event_types(machine, instance_id)
    assert events.count(("step_completed", "A")) == 1
    assert events.count(("step_started", "B")) == 1
    details = await machine.get_instance(instance_id)
    assert [s.status for s in details.steps] == ["completed", "in_progress", "pending"]


@pytest.mark.asyncio
async def test_completing_pending_step_is_rejected(machine, resolved):
    started = await machine.start_instance(resolved)

    with pytest.raises(StepNotActive) as excinfo:
        await machine.complete_step(started.instance.id, "C")

    assert excinfo.value.details["status"] == "pending"


@pytest.mark.asyncio
async def test_completing_step_of_failed_instance_is_rejected(machine, resolved):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id
    failed = await machine.fail_instance(instance_id, error="client churned", actor="ops")
    assert failed.status == "failed"
    assert failed.error == "client churned"

    with pytest.raises(InstanceNotActive):
        await machine.complete_step(instance_id, "A")


@pytest.mark.asyncio
async def test_unknown_instance_and_step(machine, resolved):
    started = await machine.start_instance(resolved)

    with pytest.raises(InstanceNotFound):
        await machine.complete_step("does-not-exist", "A")
    with pytest.raises(StepNotFound):
        await machine.complete_step(started.instance.id, "Z")
    with pytest.raises(InstanceNotFound):
        await machine.get_instance("does-not-exist")
    with pytest.raises(InstanceNotFound):
        await machine.get_timeline("does-not-exist")


@pytest.mark.asyncio
async def test_snapshot_is_isolated_from_definition_edits(machine, three_step_process):
    resolved = ResolvedProcess(
        snapshot=three_step_process.snapshot(), process_id=three_step_process.id
    )
    started = await machine.start_instance(resolved)

    three_step_process.name = "Renamed"
    three_step_process.steps.append(StepDefinition(step_id="D", name="Extra"))
    three_step_process.steps[0] = StepDefinition(step_id="A", name="Changed")

    details = await machine.get_instance(started.instance.id)
    assert details.snapshot.name == "Client Onboarding"
    assert [s.step_id for s in details.snapshot.steps] == ["A", "B", "C"]
    assert details.snapshot.steps[0].name == "Collect details"

    with pytest.raises(pydantic.ValidationError):
        details.snapshot.name = "Mutated"


@pytest.mark.asyncio
async def test_failed_write_leaves_no_partial_instance(machine, resolved, repository, monkeypatch):
    async def broken_insert_steps(self, steps):
        raise UpstreamError("Storage write failed, retry the operation")

    monkeypatch.setattr(inmemory._InMemoryTransaction, "insert_steps", broken_insert_steps)

    with pytest.raises(UpstreamError):
        await machine.start_instance(resolved)

    assert await repository.list_instances() == []


def test_duplicate_step_ids_are_rejected():
    steps = [StepDefinition(step_id="A", name="First"), StepDefinition(step_id="A", name="Again")]

    with pytest.raises(pydantic.ValidationError, match="Duplicate step_id 'A'"):
        ProcessDefinition(id="DUP", name="Duplicated", steps=steps)
    with pytest.raises(pydantic.ValidationError, match="Duplicate step_id 'A'"):
        ProcessSnapshot(id="DUP", name="Duplicated", steps=tuple(steps))


def test_edited_definition_with_duplicate_step_fails_to_snapshot(three_step_process):
    three_step_process.steps.append(StepDefinition(step_id="B", name="Review again"))

    with pytest.raises(ValidationError) as excinfo:
        three_step_process.snapshot()

    assert excinfo.value.status_code == 400
    assert excinfo.value.details["process_id"] == "ONBOARD-001"


@pytest.mark.asyncio
async def test_failed_completion_leaves_state_untouched(
    machine, resolved, repository, monkeypatch
):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id
    await machine.assign_step(instance_id, "A", "alice")
    working_update_instance = inmemory._InMemoryTransaction.update_instance
    events_before = await repository.count_events(instance_id)

    async def broken_update_instance(self, instance):
        raise UpstreamError("Storage write failed, retry the operation")

    monkeypatch.setattr(
        inmemory._InMemoryTransaction, "update_instance", broken_update_instance
    )

    with pytest.raises(UpstreamError):
        await machine.complete_step(instance_id, "A", completed_by="alice")

    stored = await repository.get_instance(instance_id)
    assert stored.current_step_id == "A"
    steps = await repository.list_steps(instance_id)
    assert [s.status for s in steps] == ["in_progress", "pending", "pending"]
    assert steps[0].completed_by is None
    [assignment] = await repository.list_assignments(instance_id)
    assert assignment.status == "active"
    assert await repository.count_events(instance_id) == events_before

    monkeypatch.setattr(
        inmemory._InMemoryTransaction, "update_instance", working_update_instance
    )
    result = await machine.complete_step(instance_id, "A", completed_by="alice")
    assert result.instance.current_step_id == "B"


@pytest.mark.asyncio
async def test_failed_reassignment_keeps_previous_owner(
    machine, resolved, repository, monkeypatch
):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id
    await machine.assign_step(instance_id, "A", "alice")
    events_before = await repository.count_events(instance_id)

    async def broken_insert_assignment(self, assignment):
        raise UpstreamError("Storage write failed, retry the operation")

    monkeypatch.setattr(
        inmemory._InMemoryTransaction, "insert_assignment", broken_insert_assignment
    )

    with pytest.raises(UpstreamError):
        await machine.assign_step(instance_id, "A", "bob")

    [assignment] = await repository.list_assignments(instance_id)
    assert assignment.assigned_to == "alice"
    assert assignment.status == "active"
    assert await repository.count_events(instance_id) == events_before


@pytest.mark.asyncio
async def test_timeline_failure_does_not_undo_transition(
    machine, resolved, repository, monkeypatch, caplog
):
    async def broken_append(event):
        raise RuntimeError("disk full")

    monkeypatch.setattr(repository, "append_event", broken_append)

    result = await machine.start_instance(resolved)

    stored = await repository.get_instance(result.instance.id)
    assert stored is not None
    assert stored.current_step_id == "A"
    assert "Failed to append instance_started" in caplog.text


@pytest.mark.asyncio
async def test_finish_completed_skips_remaining_steps(machine, resolved):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id
    await machine.complete_step(instance_id, "A")

    instance = await machine.finish_instance(
        instance_id, "completed", actor="crm", output={"deal": "won"}
    )

    assert instance.status == "completed"
    assert instance.output == {"deal": "won"}
    details = await machine.get_instance(instance_id)
    assert [s.status for s in details.steps] == ["completed", "skipped", "skipped"]

    with pytest.raises(InstanceNotActive):
        await machine.finish_instance(instance_id, "failed")


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["completed", "failed"])
async def test_finishing_instance_releases_owners(machine, resolved, repository, status):
    started = await machine.start_instance(resolved)
    instance_id = started.instance.id
    await machine.assign_step(instance_id, "A", "alice")
    await machine.assign_step(instance_id, "B", "bob")

    await machine.finish_instance(instance_id, status, actor="crm")

    details = await machine.get_instance(instance_id)
    assert details.assignments == []
    assignments = await repository.list_assignments(instance_id)
    assert [a.status for a in assignments] == ["completed", "completed"]
    assert all(a.completed_at is not None for a in assignments)


@pytest.mark.asyncio
async def test_list_instances_filters_by_status(machine, resolved):
    first = await machine.start_instance(resolved)
    second = await machine.start_instance(resolved)
    await machine.fail_instance(second.instance.id)

    in_progress = await machine.list_instances("in_progress")
    failed = await machine.list_instances("failed")

    assert [i.id for i in in_progress] == [first.instance.id]
    assert [i.id for i in failed] == [second.instance.id]
    assert len(await machine.list_instances()) == 2
