from .enums import ErrorKind, HealthState, ResolutionStrategy, TaskType, TransportKind
from .providers import (
    HEALTH_TRANSITIONS,
    PerformanceRecord,
    Provider,
    ProviderRegistration,
    is_allowed_transition,
    normalize_capabilities,
)
from .routing import Alternative, ConflictSet, IntegratedResult, RoutingPlan, ToolResponse
from .tasks import EMPTY_WORKSPACE, CancellationToken, OpenFile, Task, WorkspaceSnapshot

__all__ = [
    "Alternative",
    "CancellationToken",
    "ConflictSet",
    "EMPTY_WORKSPACE",
    "ErrorKind",
    "HEALTH_TRANSITIONS",
    "HealthState",
    "IntegratedResult",
    "OpenFile",
    "PerformanceRecord",
    "Provider",
    "ProviderRegistration",
    "ResolutionStrategy",
    "RoutingPlan",
    "Task",
    "TaskType",
    "ToolResponse",
    "TransportKind",
    "WorkspaceSnapshot",
    "is_allowed_transition",
    "normalize_capabilities",
]
