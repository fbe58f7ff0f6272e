"""Discovery, health tracking, routing and orchestration for heterogeneous tool providers."""

from .exceptions import (
    AllProvidersFailedError,
    NoCapableProviderError,
    OrchestrationError,
    TaskCancelledError,
)
from .orchestration.core import Orchestrator
from .schemas import (
    CancellationToken,
    HealthState,
    IntegratedResult,
    Provider,
    RoutingPlan,
    Task,
    ToolResponse,
    TransportKind,
    WorkspaceSnapshot,
)

__all__ = [
    "AllProvidersFailedError",
    "CancellationToken",
    "HealthState",
    "IntegratedResult",
    "NoCapableProviderError",
    "OrchestrationError",
    "Orchestrator",
    "Provider",
    "RoutingPlan",
    "Task",
    "TaskCancelledError",
    "ToolResponse",
    "TransportKind",
    "WorkspaceSnapshot",
]
