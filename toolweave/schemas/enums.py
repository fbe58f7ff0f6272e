from __future__ import annotations

from enum import Enum


class TransportKind(str, Enum):
    MESSAGE_RPC = "message-rpc"
    PLUGIN_COMMAND = "plugin-command"
    SUBPROCESS = "subprocess"
    DIRECT_NETWORK = "direct-network"


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    CONNECTION_RESET = "connection_reset"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    INVALID_RESPONSE = "invalid_response"
    PROVIDER_ERROR = "provider_error"
    CANCELLED = "cancelled"


class ResolutionStrategy(str, Enum):
    SINGLE = "single"
    CONSENSUS = "consensus"
    PREFER_RANKED = "prefer_ranked"
    CONFIRMED = "confirmed"
    PENDING_CONFIRMATION = "pending_confirmation"


class TaskType(str, Enum):
    """Well-known task types; any other string is accepted as a task type too."""

    PLANNING = "planning"
    COMPLETION = "completion"
    ANALYSIS = "analysis"
    REFACTORING = "refactoring"
    DEPLOYMENT = "deployment"
    DOCUMENTATION = "documentation"
    OPTIMIZATION = "optimization"
    SECURITY = "security"


__all__ = ["TransportKind", "HealthState", "ErrorKind", "ResolutionStrategy", "TaskType"]
