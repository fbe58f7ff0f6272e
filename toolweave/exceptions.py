from __future__ import annotations

from typing import TYPE_CHECKING, Mapping, Sequence

from .schemas.enums import ErrorKind

if TYPE_CHECKING:
    from .schemas.routing import RoutingPlan


_RETRYABLE_DEFAULT = frozenset({ErrorKind.TIMEOUT, ErrorKind.CONNECTION_RESET, ErrorKind.RATE_LIMITED})


class OrchestrationError(RuntimeError):
    """Base class for orchestration failures."""


class ProviderError(OrchestrationError):
    """Raised by connectors when a single provider invocation fails."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR

    def __init__(self, message: str, *, provider_id: str | None = None, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_DEFAULT


class ProviderConnectionError(ProviderError):
    """Transport unreachable, refused, or reset."""

    kind = ErrorKind.CONNECTION


class ProviderTimeoutError(ProviderError):
    """The task deadline elapsed before the provider answered."""

    kind = ErrorKind.TIMEOUT


class UnsupportedOperationError(ProviderError):
    """The provider does not implement the requested operation."""

    kind = ErrorKind.UNSUPPORTED_OPERATION


class CapabilityUnavailableError(UnsupportedOperationError):
    """The whole capability class is gone; forces a full re-route."""

    kind = ErrorKind.CAPABILITY_UNAVAILABLE


class ProviderInvocationError(ProviderError):
    """The provider answered, but with an error."""


class NoCapableProviderError(OrchestrationError):
    """No registered provider, generic fallbacks included, can serve the task."""

    def __init__(self, message: str, *, plan: "RoutingPlan | None" = None) -> None:
        super().__init__(message)
        self.plan = plan


class AllProvidersFailedError(OrchestrationError):
    """Every provider attempted for a task failed."""

    def __init__(self, message: str, *, failures: Mapping[str, Sequence[str]] | None = None) -> None:
        super().__init__(message)
        self.failures: dict[str, list[str]] = {key: list(value) for key, value in (failures or {}).items()}


class TaskCancelledError(OrchestrationError):
    """The caller withdrew the task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task '{task_id}' was cancelled by the caller")
        self.task_id = task_id


class ConflictResolutionError(OrchestrationError):
    """A conflict set could not be integrated."""


class ProviderNotFoundError(OrchestrationError):
    """Raised when a provider id is not present in the registry."""


class UnknownTaskError(OrchestrationError):
    """No routing plan is remembered for the given task id."""


__all__ = [
    "OrchestrationError",
    "ProviderError",
    "ProviderConnectionError",
    "ProviderTimeoutError",
    "UnsupportedOperationError",
    "CapabilityUnavailableError",
    "ProviderInvocationError",
    "NoCapableProviderError",
    "AllProvidersFailedError",
    "TaskCancelledError",
    "ConflictResolutionError",
    "ProviderNotFoundError",
    "UnknownTaskError",
]
