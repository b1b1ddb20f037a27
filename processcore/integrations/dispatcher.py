"""Trigger matching, action chains and the background worker pool."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import deque
from functools import partial
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

from ..constants import DEFAULT_EXECUTION_LOG_SIZE, DEFAULT_QUEUE_SIZE, DEFAULT_WORKERS
from ..contracts import (
    ActionError,
    ActionExecution,
    RetryPolicy,
    Trigger,
    TriggerAction,
    TriggerEvent,
    TriggerRunResult,
)
from ..errors import IntegrationError, ValidationError
from ..models import Instance, StepDefinition, utc_now
from ..utils.retry import compute_backoff, schedule_retry
from .actions import ActionExecutor, validate_action_config
from .conditions import conditions_hold
from .context import build_action_context, missing_variables

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class TriggerRegistry:
    """In-process store of trigger definitions."""

    def __init__(self, triggers: Optional[Iterable[Trigger]] = None) -> None:
        self._triggers: Dict[str, Trigger] = {}
        for trigger in triggers or []:
            self.register(trigger)

    def register(self, trigger: Trigger) -> None:
        """Add or replace a trigger once every action config is usable."""
        problems = [
            f"{action.id}: {problem}"
            for action in trigger.actions
            for problem in validate_action_config(action.type, action.config)
        ]
        if problems:
            raise ValidationError(
                f"Invalid trigger {trigger.id}",
                {"trigger_id": trigger.id, "problems": problems},
            )
        self._triggers[trigger.id] = trigger

    def remove(self, trigger_id: str) -> None:
        self._triggers.pop(trigger_id, None)

    def list(self) -> List[Trigger]:
        return list(self._triggers.values())

    def find(
        self, process_id: str, event: str, step_id: Optional[str] = None
    ) -> List[Trigger]:
        return [t for t in self._triggers.values() if t.matches(process_id, event, step_id)]


async def execute_trigger_actions(
    actions: Iterable[TriggerAction],
    context: Dict[str, Any],
    executor: ActionExecutor,
    *,
    trigger_id: str = "",
    instance_id: Optional[str] = None,
    step_id: Optional[str] = None,
    default_retry: Optional[RetryPolicy] = None,
    record: Optional[Callable[[ActionExecution], None]] = None,
) -> TriggerRunResult:
    """Run actions sequentially in ascending ``order``.

    A successful action's output is visible to later actions as
    ``output.<action_id>``. ``on_error="stop"`` ends the chain at the first
    failing action.
    """
    executions: List[ActionExecution] = []
    running = dict(context)
    running["output"] = dict(context.get("output") or {})

    for action in sorted(actions, key=lambda a: a.order):
        unresolved = missing_variables(action.config, running)
        if unresolved:
            logger.warning(
                f"Action {action.id} of trigger {trigger_id} has unresolved "
                f"placeholders: {', '.join(unresolved)}"
            )
        execution = ActionExecution(
            trigger_id=trigger_id,
            action_id=action.id,
            action_type=action.type,
            instance_id=instance_id,
            step_id=step_id,
            input=dict(action.config),
        )
        executions.append(execution)
        if record is not None:
            record(execution)

        policy = action.retry_policy or default_retry or RetryPolicy(max_retries=0)
        output = await _run_with_retry(action, running, executor, execution, policy)
        if output is not None:
            running["output"][action.id] = output
        elif action.on_error == "stop":
            logger.warning(
                f"Action {action.id} of trigger {trigger_id} failed, stopping chain"
            )
            return TriggerRunResult(
                executions=executions, overall_success=False, failed_at=action.id
            )
        else:
            logger.warning(
                f"Action {action.id} of trigger {trigger_id} failed, continuing"
            )

    return TriggerRunResult(
        executions=executions,
        overall_success=all(e.status == "success" for e in executions),
    )


async def _run_with_retry(
    action: TriggerAction,
    context: Dict[str, Any],
    executor: ActionExecutor,
    execution: ActionExecution,
    policy: RetryPolicy,
) -> Optional[Dict[str, Any]]:
    """Run one action, retrying integration failures; ``None`` when it failed."""
    started = time.monotonic()
    execution.started_at = utc_now()
    execution.status = "running"
    attempt = 0
    while True:
        try:
            output = await executor.execute(action.type, action.config, context)
        except IntegrationError as exc:
            if exc.retryable and attempt < policy.max_retries:
                execution.status = "retrying"
                execution.retry_count = attempt + 1
                logger.info(
                    f"Retrying action {action.id} ({attempt + 1}/{policy.max_retries}) "
                    f"in {compute_backoff(attempt, policy):.3f}s: {exc.message}"
                )
                await schedule_retry(attempt, policy)
                attempt += 1
                execution.status = "running"
                continue
            _finish(execution, started, "failed")
            execution.error = ActionError(message=exc.message, code=exc.code)
            if exc.http_status is not None:
                execution.metadata["http_status"] = str(exc.http_status)
            logger.error(f"Action {action.id} ({action.type}) failed: {exc.message}")
            return None
        except Exception as exc:
            _finish(execution, started, "failed")
            execution.error = ActionError(message=str(exc), code="internal_error")
            logger.exception(f"Action {action.id} ({action.type}) raised unexpectedly")
            return None
        _finish(execution, started, "success")
        execution.output = output
        return output


def _finish(execution: ActionExecution, started: float, status: str) -> None:
    execution.status = status
    execution.completed_at = utc_now()
    execution.duration_ms = int((time.monotonic() - started) * 1000)


class ActionWorkerPool:
    """Fixed number of workers consuming a bounded job queue.

    ``submit`` never blocks: when the queue is full the job is dropped and
    logged. Workers start lazily on the running event loop.
    """

    def __init__(
        self, workers: int = DEFAULT_WORKERS, queue_size: int = DEFAULT_QUEUE_SIZE
    ) -> None:
        self._size = workers
        self._queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.dropped = 0

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is loop and self._workers:
            return
        # A new loop means the previous workers died with their loop.
        self._loop = loop
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._workers = [
            loop.create_task(self._worker(index)) for index in range(self._size)
        ]

    def submit(self, job: Job, name: str = "job") -> bool:
        self.start()
        assert self._queue is not None
        try:
            self._queue.put_nowait((name, job))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Action queue full, dropping {name}")
            return False
        return True

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            name, job = await queue.get()
            try:
                await job()
            except Exception:
                logger.exception(f"Worker {index} failed running {name}")
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has run."""
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def shutdown(self, drain: bool = True) -> None:
        if drain:
            await self.join()
        for task in self._workers:
            task.cancel()
        if self._workers and self._loop is asyncio.get_running_loop():
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        self._loop = None


class TriggerDispatcher:
    """Match fired events to triggers and enqueue their action chains."""

    def __init__(
        self,
        registry: TriggerRegistry,
        executor: Optional[ActionExecutor] = None,
        pool: Optional[ActionWorkerPool] = None,
        *,
        base_url: str = "http://localhost:8000",
        default_retry: Optional[RetryPolicy] = None,
        execution_log_size: int = DEFAULT_EXECUTION_LOG_SIZE,
    ) -> None:
        self.registry = registry
        self.executor = executor or ActionExecutor()
        self.pool = pool or ActionWorkerPool()
        self._base_url = base_url
        self._default_retry = default_retry or RetryPolicy()
        self._executions: Deque[ActionExecution] = deque(maxlen=execution_log_size)
        self.results: Deque[TriggerRunResult] = deque(maxlen=execution_log_size)

    def dispatch(
        self,
        event: TriggerEvent,
        instance: Instance,
        step: Optional[StepDefinition] = None,
        *,
        step_status: Optional[str] = None,
        input: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        user: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Enqueue every matching trigger; return how many were scheduled."""
        step_id = step.step_id if step else None
        triggers = self.registry.find(instance.trigger_process_id, event, step_id)
        if not triggers:
            return 0
        context = build_action_context(
            event=event,
            instance=instance,
            step=step,
            step_status=step_status,
            input=input,
            output=output,
            user=user,
            base_url=self._base_url,
        )
        scheduled = 0
        for trigger in triggers:
            if not conditions_hold(trigger.conditions, context):
                logger.debug(f"Trigger {trigger.id} conditions not met for {event}")
                continue
            job = partial(
                self.run_trigger, trigger, copy.deepcopy(context), instance.id, step_id
            )
            if self.pool.submit(job, name=f"trigger {trigger.id} on {event}"):
                scheduled += 1
        logger.info(
            f"Scheduled {scheduled} trigger(s) for {event} on instance_id={instance.id}"
        )
        return scheduled

    async def run_trigger(
        self,
        trigger: Trigger,
        context: Dict[str, Any],
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> TriggerRunResult:
        result = await execute_trigger_actions(
            trigger.actions,
            context,
            self.executor,
            trigger_id=trigger.id,
            instance_id=instance_id,
            step_id=step_id,
            default_retry=self._default_retry,
            record=self._executions.append,
        )
        self.results.append(result)
        if not result.overall_success:
            logger.warning(
                f"Trigger {trigger.id} finished with failures (failed_at={result.failed_at})"
            )
        return result

    def executions(self, instance_id: Optional[str] = None) -> List[ActionExecution]:
        return [
            e for e in self._executions if instance_id is None or e.instance_id == instance_id
        ]

    async def drain(self) -> None:
        await self.pool.join()

    async def aclose(self) -> None:
        await self.pool.shutdown(drain=True)
        await self.executor.aclose()
