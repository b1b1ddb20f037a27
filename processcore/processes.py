"""Live process definitions and snapshot resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Union

from .errors import ProcessNotFound
from .models import DecisionBranch, ProcessDefinition, ProcessSnapshot, StepDefinition

logger = logging.getLogger(__name__)

ProcessRef = Union[str, ProcessDefinition]


DEFAULT_PROCESS = ProcessDefinition(
    id="MKT-FLOW-001",
    name="Marketing Flow",
    description="Content marketing pipeline from keyword research to closed deal.",
    steps=[
        StepDefinition(
            step_id="MKT-FLOW-001-A",
            name="Keyword Research & Topic Selection",
            owner="SEO Specialist",
        ),
        StepDefinition(
            step_id="MKT-FLOW-001-B",
            name="Content Creation & Writing",
            owner="Content Writer",
        ),
        StepDefinition(
            step_id="MKT-FLOW-001-C",
            name="Editorial Review & Approval",
            type="decision",
            owner="Marketing Lead",
            decision_branches=(
                DecisionBranch(label="Approved", goto="MKT-FLOW-001-D"),
                DecisionBranch(label="Needs revision", goto="MKT-FLOW-001-B"),
            ),
        ),
        StepDefinition(
            step_id="MKT-FLOW-001-D", name="Publish & Index", owner="Content Writer"
        ),
        StepDefinition(
            step_id="MKT-FLOW-001-E",
            name="Monitor Performance & Optimize",
            owner="SEO Specialist",
        ),
        StepDefinition(
            step_id="MKT-FLOW-001-F",
            name="Lead Capture & CRM Entry",
            owner="Sales Representative",
        ),
    ],
)


class ProcessCatalog:
    """Registry of live, editable process definitions."""

    def __init__(self, definitions: Optional[Iterable[ProcessDefinition]] = None) -> None:
        self._definitions: Dict[str, ProcessDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ProcessDefinition) -> None:
        """Add or replace a definition."""
        self._definitions[definition.id] = definition

    def get(self, process_id: str) -> Optional[ProcessDefinition]:
        return self._definitions.get(process_id)

    def remove(self, process_id: str) -> None:
        self._definitions.pop(process_id, None)

    def list(self) -> List[ProcessDefinition]:
        return list(self._definitions.values())


@dataclass(frozen=True)
class ResolvedProcess:
    """Snapshot plus the live definition id it was taken from, if any."""

    snapshot: ProcessSnapshot
    process_id: Optional[str]


class ProcessResolver(Protocol):
    def resolve(self, process: ProcessRef) -> ResolvedProcess:
        """Turn a process reference into an immutable snapshot."""


class RegisteredProcessResolver:
    """Resolve strictly by registered id."""

    def __init__(self, catalog: ProcessCatalog) -> None:
        self._catalog = catalog

    def resolve(self, process: ProcessRef) -> ResolvedProcess:
        if isinstance(process, ProcessDefinition):
            return ResolvedProcess(snapshot=process.snapshot(), process_id=process.id)
        definition = self._catalog.get(process)
        if definition is None:
            raise ProcessNotFound(process)
        return ResolvedProcess(snapshot=definition.snapshot(), process_id=definition.id)


class DefaultFallbackResolver:
    """Resolve by id, falling back to a default definition on a miss.

    The fallback instance keeps ``process_id=None`` since it is not tied to
    a live definition.
    """

    def __init__(
        self, catalog: ProcessCatalog, default: ProcessDefinition = DEFAULT_PROCESS
    ) -> None:
        self._registered = RegisteredProcessResolver(catalog)
        self._default = default

    def resolve(self, process: ProcessRef) -> ResolvedProcess:
        try:
            return self._registered.resolve(process)
        except ProcessNotFound:
            logger.warning(
                f"Process {process!r} not registered, using default definition "
                f"{self._default.id}"
            )
            return ResolvedProcess(snapshot=self._default.snapshot(), process_id=None)
