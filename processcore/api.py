"""FastAPI app factory.

Route handlers are thin wrappers over ``ExecutionService``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .auth import ApiKeyAuthorizer, AuthResult, Authorizer
from .config import ProcessCoreConfig, load_config
from .constants import (
    DEFAULT_TIMELINE_LIMIT,
    MAX_TIMELINE_LIMIT,
    PERMISSION_INSTANCES_READ,
    PERMISSION_INSTANCES_WRITE,
    PERMISSION_WEBHOOKS_CALLBACK,
    PERMISSION_WEBHOOKS_EVENTS,
    PERMISSION_WEBHOOKS_TRIGGER,
)
from .contracts import (
    AssignResult,
    AssignStepRequest,
    CallbackRequest,
    CallbackResult,
    CompleteStepRequest,
    CompleteStepResult,
    DomainEvent,
    InstanceDetails,
    StartInstanceRequest,
    StartResult,
    TimelinePage,
    WebhookTriggerRequest,
    WebhookTriggerResult,
)
from .errors import ProcessCoreError
from .facade import ExecutionService
from .models import new_id, utc_now
from .transports import BaseTransport

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 30.0


class AuthorizationFailed(Exception):
    def __init__(self, result: AuthResult) -> None:
        super().__init__(result.error)
        self.result = result


def require(permission: str):
    """Dependency that authorizes the request for ``permission``."""

    async def dependency(request: Request) -> AuthResult:
        authorizer: Authorizer = request.app.state.authorizer
        result = await authorizer.authorize(request.headers, permission)
        if not result.valid:
            raise AuthorizationFailed(result)
        return result

    return Depends(dependency)


def get_service(request: Request) -> ExecutionService:
    return request.app.state.service


# ----------------------------------------------------------------------
# Execution routes

execution_router = APIRouter(prefix="/api/execution", tags=["execution"])


@execution_router.post("/start", response_model=StartResult)
async def start_instance(
    body: StartInstanceRequest,
    service: ExecutionService = Depends(get_service),
    auth: AuthResult = require(PERMISSION_INSTANCES_WRITE),
) -> StartResult:
    return await service.start_instance(
        body.process_id,
        variables=body.variables,
        started_by=body.started_by,
        notes=body.notes,
        resolution=body.resolution,
    )


@execution_router.post("/{instance_id}/complete-step", response_model=CompleteStepResult)
async def complete_step(
    instance_id: str,
    body: CompleteStepRequest,
    service: ExecutionService = Depends(get_service),
    auth: AuthResult = require(PERMISSION_INSTANCES_WRITE),
) -> CompleteStepResult:
    return await service.complete_step(
        instance_id,
        body.step_id,
        completed_by=body.completed_by,
        output=body.output,
        notes=body.notes,
    )


@execution_router.post("/{instance_id}/assign", response_model=AssignResult)
async def assign_step(
    instance_id: str,
    body: AssignStepRequest,
    service: ExecutionService = Depends(get_service),
    auth: AuthResult = require(PERMISSION_INSTANCES_WRITE),
) -> AssignResult:
    return await service.assign_step(
        instance_id,
        body.step_id,
        body.assigned_to,
        assigned_by=body.assigned_by,
        notes=body.notes,
    )


@execution_router.get("/{instance_id}", response_model=InstanceDetails)
async def get_instance(
    instance_id: str,
    service: ExecutionService = Depends(get_service),
    auth: AuthResult = require(PERMISSION_INSTANCES_READ),
) -> InstanceDetails:
    return await service.get_instance(instance_id)


@execution_router.get("/{instance_id}/timeline", response_model=TimelinePage)
async def get_timeline(
    instance_id: str,
    limit: int = Query(DEFAULT_TIMELINE_LIMIT, ge=1, le=MAX_TIMELINE_LIMIT),
    offset: int = Query(0, ge=0),
    service: ExecutionService = Depends(get_service),
    auth: AuthResult = require(PERMISSION_INSTANCES_READ),
) -> TimelinePage:
    return await service.get_timeline(instance_id, limit=limit, offset=offset)


# ----------------------------------------------------------------------
# Webhook routes

webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@webhooks_router.post("/trigger", response_model=WebhookTriggerResult, status_code=201)
async def trigger(
    body: WebhookTriggerRequest,
    service: ExecutionService = Depends(get_service),
    auth: AuthResult = require(PERMISSION_WEBHOOKS_TRIGGER),
) -> WebhookTriggerResult:
    return await service.trigger_webhook(body, principal_id=auth.principal_id)


@webhooks_router.post("/callback", response_model=CallbackResult)
async def callback(
    body: CallbackRequest,
    service: ExecutionService = Depends(get_service),
    auth: AuthResult = require(PERMISSION_WEBHOOKS_CALLBACK),
) -> CallbackResult:
    return await service.handle_callback(body, actor=auth.principal_id or "callback")


def _sse(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


async def event_stream(
    transport: BaseTransport,
    topic: str,
    *,
    process_id: Optional[str] = None,
    instance_id: Optional[str] = None,
    events: Optional[List[str]] = None,
    lifespan: Optional[float] = None,
    heartbeat: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """Render bus events as Server-Sent Events."""
    yield _sse(
        "connected",
        json.dumps(
            {
                "connection_id": new_id(),
                "filters": {
                    "process_id": process_id,
                    "instance_id": instance_id,
                    "events": events,
                },
                "timestamp": utc_now().isoformat(),
            }
        ),
    )

    received: asyncio.Queue[Optional[DomainEvent]] = asyncio.Queue()

    async def pump() -> None:
        try:
            async for event in transport.subscribe(topic, lifespan=lifespan):
                await received.put(event)
        finally:
            await received.put(None)

    task = asyncio.create_task(pump())
    try:
        while True:
            try:
                event = await asyncio.wait_for(received.get(), heartbeat)
            except asyncio.TimeoutError:
                yield f": heartbeat {int(time.time() * 1000)}\n\n"
                continue
            if event is None:
                break
            if process_id and event.process_id != process_id:
                continue
            if events and event.event not in events:
                continue
            yield _sse(event.event, event.to_json())
    finally:
        task.cancel()


@webhooks_router.get("/events")
async def stream_events(
    request: Request,
    process_id: Optional[str] = None,
    instance_id: Optional[str] = None,
    events: Optional[str] = None,
    lifespan: Optional[float] = Query(None, gt=0),
    auth: AuthResult = require(PERMISSION_WEBHOOKS_EVENTS),
) -> StreamingResponse:
    service: ExecutionService = request.app.state.service
    if instance_id:
        topic = f"instance:{instance_id}"
    elif process_id:
        topic = f"process:{process_id}"
    else:
        topic = "events"
    wanted = [e.strip() for e in events.split(",") if e.strip()] if events else None
    return StreamingResponse(
        event_stream(
            service.transport,
            topic,
            process_id=process_id,
            instance_id=instance_id,
            events=wanted,
            lifespan=lifespan,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ----------------------------------------------------------------------


def create_app(
    service: Optional[ExecutionService] = None,
    config: Optional[ProcessCoreConfig] = None,
    authorizer: Optional[Authorizer] = None,
) -> FastAPI:
    config = config or load_config()
    service = service or ExecutionService.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        logger.info("Shutting down, draining queued trigger actions")
        await service.aclose()

    app = FastAPI(
        title="ProcessCore",
        version="1.0.0",
        description="Process instance execution engine.",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.authorizer = authorizer or ApiKeyAuthorizer(config.auth)

    @app.exception_handler(ProcessCoreError)
    async def handle_domain_error(request: Request, exc: ProcessCoreError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(AuthorizationFailed)
    async def handle_auth_error(request: Request, exc: AuthorizationFailed) -> JSONResponse:
        result = exc.result
        return JSONResponse(
            {
                "success": False,
                "error": result.error,
                "code": "forbidden" if result.status_code == 403 else "unauthorized",
            },
            status_code=result.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            {
                "success": False,
                "error": "Invalid request",
                "code": "validation_error",
                "details": jsonable_encoder(exc.errors()),
            },
            status_code=400,
        )

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(execution_router)
    app.include_router(webhooks_router)
    return app
