"""Shared fixtures for the processcore test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from processcore.engine import InstanceStateMachine
from processcore.models import ProcessDefinition, StepDefinition
from processcore.persistence import InMemoryExecutionRepository
from processcore.processes import ResolvedProcess


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep a developer's config file and database settings out of the tests."""
    monkeypatch.setenv("PROCESSCORE_CONFIG", str(tmp_path / "missing-config.yaml"))
    for name in (
        "PROCESSCORE_DATABASE_URL",
        "DATABASE_URL",
        "PROCESSCORE_EVENT_BUS",
        "PROCESSCORE_REDIS_URL",
        "REDIS_URL",
        "PROCESSCORE_LOG_LEVEL",
        "SLACK_WEBHOOK_URL",
        "RESEND_API_KEY",
        "RESEND_FROM_EMAIL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return InMemoryExecutionRepository()


@pytest.fixture
def machine(repository, clock):
    return InstanceStateMachine(repository, clock=clock)


@pytest.fixture
def three_step_process():
    return ProcessDefinition(
        id="ONBOARD-001",
        name="Client Onboarding",
        steps=[
            StepDefinition(step_id="A", name="Collect details", owner="Account Manager"),
            StepDefinition(step_id="B", name="Review contract", owner="Legal"),
            StepDefinition(step_id="C", name="Kick-off call", owner="Account Manager"),
        ],
    )


@pytest.fixture
def resolved(three_step_process):
    return ResolvedProcess(
        snapshot=three_step_process.snapshot(), process_id=three_step_process.id
    )
