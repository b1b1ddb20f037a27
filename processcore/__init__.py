"""ProcessCore: execution engine for multi-step process instances."""

from .config import ProcessCoreConfig, load_config
from .engine import InstanceStateMachine
from .facade import ExecutionService
from .integrations import TriggerDispatcher, TriggerRegistry
from .persistence import get_repository
from .processes import DEFAULT_PROCESS, ProcessCatalog
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "DEFAULT_PROCESS",
    "ExecutionService",
    "InstanceStateMachine",
    "ProcessCatalog",
    "ProcessCoreConfig",
    "TriggerDispatcher",
    "TriggerRegistry",
    "get_repository",
    "get_transport",
    "load_config",
]
