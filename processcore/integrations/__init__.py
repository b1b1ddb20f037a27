"""External actions fired by process and step events."""

from .actions import ActionExecutor, validate_action_config
from .conditions import conditions_hold, evaluate_condition
from .context import build_action_context, resolve_object, resolve_template
from .dispatcher import (
    ActionWorkerPool,
    TriggerDispatcher,
    TriggerRegistry,
    execute_trigger_actions,
)

__all__ = [
    "ActionExecutor",
    "ActionWorkerPool",
    "TriggerDispatcher",
    "TriggerRegistry",
    "build_action_context",
    "conditions_hold",
    "evaluate_condition",
    "execute_trigger_actions",
    "resolve_object",
    "resolve_template",
    "validate_action_config",
]
