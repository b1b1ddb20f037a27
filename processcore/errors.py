"""Error taxonomy for the execution engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ProcessCoreError(Exception):
    """Base error carrying a stable code and an HTTP status."""

    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            body["details"] = self.details
        return body


class NotFound(ProcessCoreError):
    code = "not_found"
    status_code = 404


class InstanceNotFound(NotFound):
    def __init__(self, instance_id: str) -> None:
        super().__init__("Process instance not found", {"instance_id": instance_id})


class StepNotFound(NotFound):
    def __init__(self, instance_id: str, step_id: str) -> None:
        super().__init__(
            "Step not found in this instance",
            {"instance_id": instance_id, "step_id": step_id},
        )


class ProcessNotFound(NotFound):
    def __init__(self, process_id: str) -> None:
        super().__init__("Process definition not found", {"process_id": process_id})


class Conflict(ProcessCoreError):
    code = "conflict"
    status_code = 409


class AlreadyCompleted(Conflict):
    """Raised when a step completion loses the race or is repeated."""

    code = "already_completed"

    def __init__(self, instance_id: str, step_id: str) -> None:
        super().__init__(
            "Step already completed",
            {"instance_id": instance_id, "step_id": step_id},
        )


class StepNotActive(Conflict):
    code = "step_not_active"

    def __init__(self, instance_id: str, step_id: str, status: str) -> None:
        super().__init__(
            f"Step is {status}, only the in-progress step can be completed",
            {"instance_id": instance_id, "step_id": step_id, "status": status},
        )


class InstanceNotActive(Conflict):
    code = "instance_not_active"

    def __init__(self, instance_id: str, status: str) -> None:
        super().__init__(
            f"Process instance is {status}",
            {"instance_id": instance_id, "status": status},
        )


class DuplicateAssignment(Conflict):
    code = "duplicate_assignment"

    def __init__(self, instance_id: str, step_id: str) -> None:
        super().__init__(
            "Another active assignment was created concurrently",
            {"instance_id": instance_id, "step_id": step_id},
        )


class ValidationError(ProcessCoreError):
    code = "validation_error"
    status_code = 400


class EmptyProcessError(ProcessCoreError):
    code = "empty_process"
    status_code = 422

    def __init__(self, process_id: Optional[str]) -> None:
        super().__init__("Process has no steps", {"process_id": process_id})


class UpstreamError(ProcessCoreError):
    """Storage failure; the caller should retry the whole operation."""

    code = "upstream_error"
    status_code = 503


class IntegrationError(ProcessCoreError):
    """External action failure (non-2xx response or network error)."""

    code = "integration_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Any = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, {"http_status": status_code} if status_code else None)
        self.http_status = status_code
        self.response = response
        self.retryable = retryable


__all__ = [
    "ProcessCoreError",
    "NotFound",
    "InstanceNotFound",
    "StepNotFound",
    "ProcessNotFound",
    "Conflict",
    "AlreadyCompleted",
    "StepNotActive",
    "InstanceNotActive",
    "DuplicateAssignment",
    "ValidationError",
    "EmptyProcessError",
    "UpstreamError",
    "IntegrationError",
]
