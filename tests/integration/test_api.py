"""HTTP surface tests using FastAPI's TestClient."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from processcore.api import create_app, event_stream
from processcore.auth import hash_api_key
from processcore.config import ApiKeyConfig, AuthConfig, ProcessCoreConfig
from processcore.contracts import DomainEvent
from processcore.facade import ExecutionService
from processcore.persistence import InMemoryExecutionRepository
from processcore.models import ProcessDefinition, StepDefinition
from processcore.processes import DEFAULT_PROCESS, ProcessCatalog
from processcore.transports import InMemoryTransport

WRITER = {"X-API-Key": "pk_test_writer"}
READER = {"X-API-Key": "pk_test_reader"}
FIRST_STEP = "MKT-FLOW-001-A"


@pytest.fixture
def config():
    return ProcessCoreConfig(
        auth=AuthConfig(
            api_keys=[
                ApiKeyConfig(
                    key_hash=hash_api_key("pk_test_writer"),
                    principal_id="writer",
                    permissions=["*"],
                ),
                ApiKeyConfig(
                    key_hash=hash_api_key("pk_test_reader"),
                    principal_id="reader",
                    permissions=["instances:read"],
                ),
            ]
        )
    )


@pytest.fixture
def client(config):
    service = ExecutionService(
        InMemoryExecutionRepository(), catalog=ProcessCatalog([DEFAULT_PROCESS])
    )
    with TestClient(create_app(service=service, config=config)) as client:
        yield client


def start(client, **body):
    response = client.post(
        "/api/execution/start",
        json={"process_id": DEFAULT_PROCESS.id, **body},
        headers=WRITER,
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_missing_key_is_unauthorized(client):
    response = client.post("/api/execution/start", json={"process_id": DEFAULT_PROCESS.id})

    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"
    assert response.json()["success"] is False


def test_reader_cannot_start(client):
    response = client.post(
        "/api/execution/start", json={"process_id": DEFAULT_PROCESS.id}, headers=READER
    )

    assert response.status_code == 403
    assert response.json() == {
        "success": False,
        "error": "Missing required permission: instances:write",
        "code": "forbidden",
    }


def test_start_complete_and_read(client):
    started = start(client, variables={"client": "Acme"}, started_by="alice")
    instance_id = started["instance"]["id"]
    assert started["instance"]["current_step_id"] == FIRST_STEP
    assert [s["status"] for s in started["steps"]][:2] == ["in_progress", "pending"]

    response = client.post(
        f"/api/execution/{instance_id}/complete-step",
        json={"step_id": FIRST_STEP, "completed_by": "alice", "output": {"keywords": 12}},
        headers=WRITER,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["next_step"]["step_id"] == "MKT-FLOW-001-B"
    assert body["completed_step"]["output"] == {"keywords": 12}

    details = client.get(f"/api/execution/{instance_id}", headers=READER).json()
    assert details["current_step_id"] == "MKT-FLOW-001-B"
    assert details["current_step"]["name"] == "Content Creation & Writing"
    assert details["variables"] == {"client": "Acme"}

    timeline = client.get(
        f"/api/execution/{instance_id}/timeline", params={"limit": 2}, headers=READER
    ).json()
    assert [e["type"] for e in timeline["timeline"]] == ["step_started", "step_completed"]
    assert timeline["pagination"] == {"total": 4, "limit": 2, "offset": 0, "has_more": True}


def test_repeat_completion_conflicts(client):
    instance_id = start(client)["instance"]["id"]
    payload = {"step_id": FIRST_STEP}
    url = f"/api/execution/{instance_id}/complete-step"

    assert client.post(url, json=payload, headers=WRITER).status_code == 200
    response = client.post(url, json=payload, headers=WRITER)

    assert response.status_code == 409
    assert response.json()["code"] == "already_completed"


def test_completing_pending_step_conflicts(client):
    instance_id = start(client)["instance"]["id"]

    response = client.post(
        f"/api/execution/{instance_id}/complete-step",
        json={"step_id": "MKT-FLOW-001-C"},
        headers=WRITER,
    )

    assert response.status_code == 409
    assert response.json()["code"] == "step_not_active"


def test_unknown_instance_and_process(client):
    response = client.get("/api/execution/missing", headers=READER)
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
    assert response.json()["details"] == {"instance_id": "missing"}

    response = client.post(
        "/api/execution/start", json={"process_id": "NOPE"}, headers=WRITER
    )
    assert response.status_code == 404


def test_definition_edited_into_duplicate_steps_is_rejected(config):
    definition = ProcessDefinition(
        id="EDITED", name="Edited", steps=[StepDefinition(step_id="A", name="First")]
    )
    definition.steps.append(StepDefinition(step_id="A", name="Again"))
    service = ExecutionService(
        InMemoryExecutionRepository(), catalog=ProcessCatalog([definition])
    )

    with TestClient(create_app(service=service, config=config)) as client:
        response = client.post(
            "/api/execution/start", json={"process_id": "EDITED"}, headers=WRITER
        )

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_assign_and_reassign(client):
    instance_id = start(client)["instance"]["id"]
    url = f"/api/execution/{instance_id}/assign"

    client.post(url, json={"step_id": FIRST_STEP, "assigned_to": "alice"}, headers=WRITER)
    response = client.post(
        url, json={"step_id": FIRST_STEP, "assigned_to": "bob"}, headers=WRITER
    )

    assert response.status_code == 200
    assert response.json()["assignment"]["assigned_to"] == "bob"
    details = client.get(f"/api/execution/{instance_id}", headers=READER).json()
    assert [a["assigned_to"] for a in details["assignments"]] == ["bob"]


def test_validation_errors_are_400(client):
    instance_id = start(client)["instance"]["id"]

    missing_field = client.post(
        f"/api/execution/{instance_id}/complete-step", json={}, headers=WRITER
    )
    bad_limit = client.get(
        f"/api/execution/{instance_id}/timeline", params={"limit": 0}, headers=READER
    )

    assert missing_field.status_code == 400
    assert missing_field.json()["code"] == "validation_error"
    assert bad_limit.status_code == 400


def test_webhook_trigger_and_callback(client):
    response = client.post(
        "/api/webhooks/trigger",
        json={"process_id": DEFAULT_PROCESS.id, "input": {"client": "Acme"}},
        headers=WRITER,
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "started"
    instance_id = body["instance_id"]

    callback = client.post(
        "/api/webhooks/callback",
        json={"instance_id": instance_id, "step_id": FIRST_STEP, "status": "success"},
        headers=WRITER,
    )
    assert callback.status_code == 200
    assert callback.json()["updated"] is True

    details = client.get(f"/api/execution/{instance_id}", headers=READER).json()
    assert details["started_by"] == "webhook"
    assert details["steps"][0]["completed_by"] == "writer"


def test_webhook_fallback_resolution(client):
    response = client.post(
        "/api/webhooks/trigger",
        json={"process_id": "UNKNOWN", "resolution": "default_fallback"},
        headers=WRITER,
    )

    assert response.status_code == 201
    assert response.json()["process_id"] == DEFAULT_PROCESS.id


def test_event_stream_sends_connected_event(client):
    with client.stream(
        "GET", "/api/webhooks/events", params={"lifespan": 0.1}, headers=WRITER
    ) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        body = "".join(response.iter_text())

    assert body.startswith("event: connected\n")


def test_event_stream_requires_permission(client):
    response = client.get("/api/webhooks/events", headers=READER)

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_event_stream_filters_and_formats():
    transport = InMemoryTransport()
    stream = event_stream(transport, "events", events=["step.completed"], lifespan=1.0)

    connected = await stream.__anext__()
    assert connected.startswith("event: connected\n")

    task = asyncio.ensure_future(stream.__anext__())

    while transport.subscriber_count("events") == 0:
        await asyncio.sleep(0)
    await transport.publish_event(DomainEvent(event="step.started", instance_id="i-1"))
    completed = DomainEvent(event="step.completed", instance_id="i-1", step_id="A")
    await transport.publish_event(completed)

    frame = await task
    assert frame == f"event: step.completed\ndata: {completed.to_json()}\n\n"
    await stream.aclose()
