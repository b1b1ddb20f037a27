"""Execution facade: the single entry point for HTTP handlers and the CLI."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import ProcessCoreConfig, load_config
from .contracts import (
    AssignResult,
    CallbackRequest,
    CallbackResult,
    CompleteStepResult,
    DomainEvent,
    InstanceDetails,
    Resolution,
    StartResult,
    TimelinePage,
    TriggerEvent,
    WebhookTriggerRequest,
    WebhookTriggerResult,
)
from .constants import DEFAULT_TIMELINE_LIMIT
from .engine import Clock, InstanceStateMachine
from .errors import AlreadyCompleted, InstanceNotFound
from .integrations import (
    ActionExecutor,
    ActionWorkerPool,
    TriggerDispatcher,
    TriggerRegistry,
)
from .models import Instance, StepDefinition, utc_now
from .persistence import ExecutionRepository, get_repository
from .processes import (
    DEFAULT_PROCESS,
    DefaultFallbackResolver,
    ProcessCatalog,
    ProcessRef,
    ProcessResolver,
    RegisteredProcessResolver,
)
from .transports import BaseTransport, InMemoryTransport, get_transport

logger = logging.getLogger(__name__)


class ExecutionService:
    """Coordinates transitions, trigger dispatch and event publishing.

    Transitions are committed by the state machine first; triggers and bus
    events are fired afterwards and never fail the calling operation.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        catalog: Optional[ProcessCatalog] = None,
        dispatcher: Optional[TriggerDispatcher] = None,
        transport: Optional[BaseTransport] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.catalog = catalog or ProcessCatalog([DEFAULT_PROCESS])
        self.machine = InstanceStateMachine(repository, clock=clock)
        self.dispatcher = dispatcher or TriggerDispatcher(TriggerRegistry())
        self.transport = transport or InMemoryTransport()
        self._resolvers: Dict[str, ProcessResolver] = {
            "registered": RegisteredProcessResolver(self.catalog),
            "default_fallback": DefaultFallbackResolver(self.catalog),
        }

    @classmethod
    def from_config(
        cls,
        config: Optional[ProcessCoreConfig] = None,
        repository: Optional[ExecutionRepository] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "ExecutionService":
        """Wire a service from configuration.

        ``repository`` and ``client`` override the configured database and the
        HTTP client used by actions.
        """
        config = config or load_config()
        settings = config.dispatcher
        executor = ActionExecutor(
            client=client,
            timeout=settings.webhook_timeout,
            slack_webhook_url=settings.slack_webhook_url,
            resend_api_key=settings.resend_api_key,
            email_from=settings.email_from,
        )
        dispatcher = TriggerDispatcher(
            TriggerRegistry(config.triggers),
            executor,
            ActionWorkerPool(settings.workers, settings.queue_size),
            base_url=settings.base_url,
            default_retry=settings.retry,
            execution_log_size=settings.execution_log_size,
        )
        return cls(
            repository or get_repository(config=config),
            catalog=ProcessCatalog([DEFAULT_PROCESS, *config.processes]),
            dispatcher=dispatcher,
            transport=get_transport(config=config),
        )

    def resolver(self, resolution: Resolution) -> ProcessResolver:
        return self._resolvers[resolution]

    # ------------------------------------------------------------------
    # Operations
    async def start_instance(
        self,
        process: ProcessRef,
        variables: Optional[Dict[str, Any]] = None,
        started_by: Optional[str] = "system",
        notes: Optional[str] = None,
        resolution: Resolution = "registered",
        metadata: Optional[Dict[str, Any]] = None,
        source: str = "api",
    ) -> StartResult:
        resolved = self.resolver(resolution).resolve(process)
        result = await self.machine.start_instance(
            resolved,
            variables=variables,
            started_by=started_by,
            notes=notes,
            metadata=metadata,
        )
        instance = result.instance
        first = instance.snapshot.steps[0]
        await self._fire(
            "process.started", instance, input=instance.variables, source=source
        )
        await self._fire(
            "step.started", instance, first, step_status="in_progress", source=source
        )
        return result

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        completed_by: Optional[str] = "system",
        output: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        source: str = "api",
    ) -> CompleteStepResult:
        result = await self.machine.complete_step(
            instance_id, step_id, completed_by=completed_by, output=output, notes=notes
        )
        instance = result.instance
        await self._fire(
            "step.completed",
            instance,
            instance.snapshot.get_step(step_id),
            step_status="completed",
            output=output,
            source=source,
        )
        if result.next_step is not None:
            await self._fire(
                "step.started",
                instance,
                result.next_step,
                step_status="in_progress",
                source=source,
            )
        else:
            await self._fire("process.completed", instance, output=output, source=source)
        return result

    async def assign_step(
        self,
        instance_id: str,
        step_id: str,
        assigned_to: str,
        assigned_by: Optional[str] = "system",
        notes: Optional[str] = None,
    ) -> AssignResult:
        return await self.machine.assign_step(
            instance_id, step_id, assigned_to, assigned_by=assigned_by, notes=notes
        )

    async def get_instance(self, instance_id: str) -> InstanceDetails:
        return await self.machine.get_instance(instance_id)

    async def get_timeline(
        self, instance_id: str, limit: int = DEFAULT_TIMELINE_LIMIT, offset: int = 0
    ) -> TimelinePage:
        return await self.machine.get_timeline(instance_id, limit, offset)

    async def list_instances(self, status: Optional[str] = None) -> list[Instance]:
        return await self.machine.list_instances(status)

    async def fail_instance(
        self, instance_id: str, error: Optional[str] = None, actor: Optional[str] = None
    ) -> Instance:
        instance = await self.machine.fail_instance(instance_id, error=error, actor=actor)
        await self._fire("process.failed", instance, data={"error": error})
        return instance

    async def trigger_webhook(
        self, request: WebhookTriggerRequest, principal_id: Optional[str] = None
    ) -> WebhookTriggerResult:
        """Start an instance on behalf of an external system."""
        metadata = {**request.metadata, "triggered_by": "webhook"}
        if principal_id:
            metadata["api_key_id"] = principal_id
        result = await self.start_instance(
            request.process_id,
            variables=request.input,
            started_by="webhook",
            resolution=request.resolution,
            metadata={"trigger": metadata},
            source="webhook",
        )
        return WebhookTriggerResult(
            instance_id=result.instance.id,
            process_id=result.instance.trigger_process_id,
        )

    async def handle_callback(
        self, request: CallbackRequest, actor: str = "callback"
    ) -> CallbackResult:
        """Apply an external status report to an instance or one of its steps."""
        if request.step_id:
            return await self._step_callback(request, actor)

        if request.status == "pending":
            if await self.repository.get_instance(request.instance_id) is None:
                raise InstanceNotFound(request.instance_id)
            return self._callback_result(request, False, "Pending status recorded")

        if request.status == "success":
            instance = await self.machine.finish_instance(
                request.instance_id, "completed", actor=actor, output=request.data
            )
            await self._fire(
                "process.completed", instance, output=request.data, source="callback"
            )
            return self._callback_result(request, True, "Process marked as completed")

        instance = await self.machine.finish_instance(
            request.instance_id,
            "failed",
            actor=actor,
            output=request.data,
            error=request.error,
        )
        await self._fire(
            "process.failed", instance, data={"error": request.error}, source="callback"
        )
        return self._callback_result(request, True, "Process marked as failed")

    async def _step_callback(
        self, request: CallbackRequest, actor: str
    ) -> CallbackResult:
        assert request.step_id is not None
        if request.status == "success":
            try:
                await self.complete_step(
                    request.instance_id,
                    request.step_id,
                    completed_by=actor,
                    output=request.data,
                    source="callback",
                )
            except AlreadyCompleted:
                return self._callback_result(request, False, "Step already completed")
            return self._callback_result(request, True, "Step completed")

        await self.machine.annotate_step(
            request.instance_id,
            request.step_id,
            {
                "callback": {
                    "status": request.status,
                    "data": request.data,
                    "error": request.error,
                }
            },
        )
        if request.status == "pending":
            return self._callback_result(request, True, "Pending status recorded")

        instance = await self.repository.get_instance(request.instance_id)
        if instance is not None:
            await self._fire(
                "step.failed",
                instance,
                instance.snapshot.get_step(request.step_id),
                step_status="failed",
                output=request.data,
                data={"error": request.error},
                source="callback",
            )
        return self._callback_result(request, True, "Step failure recorded")

    @staticmethod
    def _callback_result(
        request: CallbackRequest, updated: bool, message: str
    ) -> CallbackResult:
        return CallbackResult(
            instance_id=request.instance_id, updated=updated, message=message
        )

    # ------------------------------------------------------------------
    async def _fire(
        self,
        event: TriggerEvent,
        instance: Instance,
        step: Optional[StepDefinition] = None,
        *,
        step_status: Optional[str] = None,
        input: Optional[Dict[str, Any]] = None,
        output: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        source: str = "internal",
    ) -> None:
        try:
            self.dispatcher.dispatch(
                event,
                instance,
                step,
                step_status=step_status,
                input=input,
                output=output,
            )
        except Exception:
            logger.exception(f"Failed to dispatch {event} for instance_id={instance.id}")

        payload: Dict[str, Any] = dict(data or {})
        if output is not None:
            payload.setdefault("output", output)
        if input:
            payload.setdefault("input", input)
        domain_event = DomainEvent(
            event=event,
            process_id=instance.trigger_process_id,
            instance_id=instance.id,
            step_id=step.step_id if step else None,
            data=payload,
            source=source,
        )
        try:
            await self.transport.publish_event(domain_event)
        except Exception:
            logger.exception(f"Failed to publish {event} for instance_id={instance.id}")

    async def drain(self) -> None:
        """Wait for queued trigger actions to finish."""
        await self.dispatcher.drain()

    async def aclose(self) -> None:
        await self.dispatcher.aclose()
        await self.transport.disconnect()
        await self.repository.close()
