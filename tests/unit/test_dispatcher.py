"""Trigger matching, action chains, retries and the worker pool."""

import asyncio

import httpx
import pytest

from processcore.contracts import RetryPolicy, Trigger, TriggerAction, TriggerCondition
from processcore.errors import ValidationError
from processcore.integrations import (
    ActionExecutor,
    ActionWorkerPool,
    TriggerDispatcher,
    TriggerRegistry,
    execute_trigger_actions,
)
from processcore.models import Instance

FAST_RETRY = RetryPolicy(max_retries=3, initial_delay_ms=1, max_delay_ms=5)


def make_executor(handler):
    return ActionExecutor(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def make_instance(resolved, **kwargs):
    return Instance(
        process_id=resolved.process_id,
        snapshot=resolved.snapshot,
        current_step_id="A",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_actions_run_in_order_and_share_outputs():
    actions = [
        TriggerAction(
            id="second",
            type="transform_data",
            order=2,
            config={"transform_script": "{{output.first.name}}!", "output_variable": "shout"},
        ),
        TriggerAction(
            id="first",
            type="transform_data",
            order=1,
            config={"transform_script": "{{input.client|upper}}", "output_variable": "name"},
        ),
    ]

    result = await execute_trigger_actions(
        actions, {"input": {"client": "acme"}}, ActionExecutor()
    )

    assert result.overall_success
    assert [e.action_id for e in result.executions] == ["first", "second"]
    assert result.executions[1].output == {"shout": "ACME!"}
    assert all(e.status == "success" for e in result.executions)
    assert all(e.duration_ms is not None for e in result.executions)


@pytest.mark.asyncio
async def test_stop_ends_chain_at_first_failure():
    actions = [
        TriggerAction(id="bad", type="fax", order=1, on_error="stop"),
        TriggerAction(id="never", type="log", order=2, config={"message": "x"}),
    ]

    result = await execute_trigger_actions(actions, {}, ActionExecutor())

    assert not result.overall_success
    assert result.failed_at == "bad"
    assert [e.action_id for e in result.executions] == ["bad"]
    assert result.executions[0].error.code == "integration_error"


@pytest.mark.asyncio
async def test_continue_runs_remaining_actions():
    actions = [
        TriggerAction(id="bad", type="fax", order=1, on_error="continue"),
        TriggerAction(id="after", type="log", order=2, config={"message": "x"}),
    ]

    result = await execute_trigger_actions(actions, {}, ActionExecutor())

    assert not result.overall_success
    assert result.failed_at is None
    assert [e.status for e in result.executions] == ["failed", "success"]


def test_legacy_on_error_values_are_accepted():
    assert TriggerAction(type="log", on_error="abort").on_error == "stop"
    assert TriggerAction(type="log", on_error="retry").on_error == "continue"


@pytest.mark.asyncio
async def test_retry_recovers_after_transient_failures():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(500)
        return httpx.Response(200, json={"ok": True})

    action = TriggerAction(
        id="hook", type="webhook", config={"url": "https://h.example.com"}, retry_policy=FAST_RETRY
    )

    result = await execute_trigger_actions([action], {}, make_executor(handler))

    execution = result.executions[0]
    assert result.overall_success
    assert len(calls) == 3
    assert execution.status == "success"
    assert execution.retry_count == 2
    assert execution.output == {"status_code": 200, "response": {"ok": True}}


@pytest.mark.asyncio
async def test_retry_exhaustion_marks_failure():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    policy = RetryPolicy(max_retries=2, initial_delay_ms=1, max_delay_ms=2)
    action = TriggerAction(
        id="hook", type="webhook", config={"url": "https://h.example.com"}, retry_policy=policy
    )

    result = await execute_trigger_actions([action], {}, make_executor(handler))

    execution = result.executions[0]
    assert len(calls) == 3
    assert execution.status == "failed"
    assert execution.retry_count == 2
    assert execution.error.message == "HTTP 503"
    assert execution.metadata["http_status"] == "503"


@pytest.mark.asyncio
async def test_non_retryable_failures_skip_retry():
    action = TriggerAction(
        id="hook", type="webhook", config={"url": "not a url"}, retry_policy=FAST_RETRY
    )

    result = await execute_trigger_actions([action], {}, ActionExecutor())

    assert result.executions[0].retry_count == 0
    assert result.executions[0].status == "failed"


def test_registry_matches_process_event_and_step():
    process_wide = Trigger(id="t1", process_id="P", event="step.started")
    step_only = Trigger(id="t2", process_id="P", event="step.started", step_id="B")
    global_trigger = Trigger(id="t3", event="step.started")
    inactive = Trigger(id="t4", process_id="P", event="step.started", is_active=False)
    registry = TriggerRegistry([process_wide, step_only, global_trigger, inactive])

    assert {t.id for t in registry.find("P", "step.started", "A")} == {"t1", "t3"}
    assert {t.id for t in registry.find("P", "step.started", "B")} == {"t1", "t2", "t3"}
    assert {t.id for t in registry.find("Q", "step.started", "B")} == {"t3"}
    assert registry.find("P", "step.completed", "A") == []

    registry.remove("t3")
    assert len(registry.list()) == 3


def test_registry_rejects_unusable_action_configs():
    broken = Trigger(
        id="broken",
        event="step.completed",
        actions=[
            TriggerAction(id="mail", type="send_email", config={"to": "ops@example.com"}),
            TriggerAction(id="fax", type="fax"),
        ],
    )
    registry = TriggerRegistry()

    with pytest.raises(ValidationError) as excinfo:
        registry.register(broken)

    assert excinfo.value.details["problems"] == [
        "mail: Missing required field: subject",
        "mail: Missing required field: body",
        "fax: Unknown action type: fax",
    ]
    assert registry.list() == []


@pytest.mark.asyncio
async def test_unresolved_placeholders_are_logged(caplog):
    action = TriggerAction(
        id="note",
        type="log",
        config={"message": "{{vars.client}} by {{vars.owner|default:nobody}}"},
    )

    result = await execute_trigger_actions(
        [action], {"vars": {}}, ActionExecutor(), trigger_id="t1"
    )

    assert result.executions[0].status == "success"
    assert "Action note of trigger t1 has unresolved placeholders: vars.client" in caplog.text
    assert "vars.owner" not in caplog.text


@pytest.mark.asyncio
async def test_dispatch_checks_conditions(resolved):
    trigger = Trigger(
        process_id=resolved.process_id,
        event="process.started",
        conditions=[TriggerCondition(field="vars.priority", operator="equals", value="high")],
        actions=[TriggerAction(type="log", config={"message": "urgent"})],
    )
    dispatcher = TriggerDispatcher(TriggerRegistry([trigger]))

    low = make_instance(resolved, variables={"priority": "low"})
    high = make_instance(resolved, variables={"priority": "high"})

    assert dispatcher.dispatch("process.started", low) == 0
    assert dispatcher.dispatch("process.started", high) == 1
    await dispatcher.drain()

    [execution] = dispatcher.executions()
    assert execution.instance_id == high.id
    assert execution.status == "success"
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_sibling_triggers_run_independently(resolved):
    failing = Trigger(
        id="failing",
        process_id=resolved.process_id,
        event="step.completed",
        actions=[
            TriggerAction(type="webhook", config={"url": "not a url"}, on_error="stop")
        ],
    )
    healthy = Trigger(
        id="healthy",
        process_id=resolved.process_id,
        event="step.completed",
        actions=[TriggerAction(type="log", config={"message": "{{step.name}} done"})],
    )
    dispatcher = TriggerDispatcher(TriggerRegistry([failing, healthy]))
    instance = make_instance(resolved)

    scheduled = dispatcher.dispatch(
        "step.completed", instance, resolved.snapshot.steps[0], step_status="completed"
    )
    await dispatcher.drain()

    assert scheduled == 2
    outcomes = {e.trigger_id: e.status for e in dispatcher.executions(instance.id)}
    assert outcomes == {"failing": "failed", "healthy": "success"}
    healthy_run = next(e for e in dispatcher.executions() if e.trigger_id == "healthy")
    assert healthy_run.output == {"logged": "Collect details done"}
    assert len(dispatcher.results) == 2
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_triggers_match_snapshot_id_for_fallback_instances(resolved):
    trigger = Trigger(
        process_id=resolved.snapshot.id,
        event="process.started",
        actions=[TriggerAction(type="log", config={"message": "x"})],
    )
    dispatcher = TriggerDispatcher(TriggerRegistry([trigger]))
    fallback = Instance(process_id=None, snapshot=resolved.snapshot, current_step_id="A")

    assert dispatcher.dispatch("process.started", fallback) == 1
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_pool_drops_jobs_when_queue_is_full(caplog):
    pool = ActionWorkerPool(workers=1, queue_size=1)
    ran = []

    async def job():
        ran.append(True)

    accepted = [pool.submit(job, name=f"job-{i}") for i in range(3)]

    assert accepted == [True, False, False]
    assert pool.dropped == 2
    assert "Action queue full, dropping job-1" in caplog.text

    await pool.shutdown()
    assert ran == [True]


@pytest.mark.asyncio
async def test_pool_keeps_running_after_failing_job():
    pool = ActionWorkerPool(workers=2, queue_size=10)
    ran = []

    async def broken():
        raise RuntimeError("boom")

    async def fine():
        await asyncio.sleep(0)
        ran.append(True)

    pool.submit(broken)
    pool.submit(fine)
    pool.submit(fine)
    await pool.join()

    assert ran == [True, True]
    await pool.shutdown()
