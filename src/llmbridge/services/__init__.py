from .execution import ExecutionService
from .manager import Manager, ManagerState, bootstrap_manager, create_manager
from .registry import ProviderRegistry
from .streaming import StreamingService

__all__ = [
    "ExecutionService",
    "Manager",
    "ManagerState",
    "ProviderRegistry",
    "StreamingService",
    "bootstrap_manager",
    "create_manager",
]
