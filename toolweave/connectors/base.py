"""Transport-agnostic connector contract.

Every transport kind implements the same five coroutines and returns the same
``ToolResponse`` shape, so the executor never branches on transport. Variants are
independent classes that satisfy the ``Connector`` protocol; shared behaviour
lives in the module-level helpers below rather than in a base class.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Mapping, Protocol, TypeVar, runtime_checkable

from ..exceptions import ProviderError, ProviderTimeoutError
from ..schemas.enums import ErrorKind, TransportKind
from ..schemas.routing import ToolResponse
from ..schemas.tasks import Task, WorkspaceSnapshot

T = TypeVar("T")

_RETRYABLE_PATTERNS: tuple[tuple[re.Pattern[str], ErrorKind], ...] = (
    (re.compile(r"timed?\s*out|timeout", re.IGNORECASE), ErrorKind.TIMEOUT),
    (re.compile(r"connection reset|broken pipe|server disconnected", re.IGNORECASE), ErrorKind.CONNECTION_RESET),
    (re.compile(r"temporarily unavailable", re.IGNORECASE), ErrorKind.CONNECTION_RESET),
    (re.compile(r"rate.?limit|too many requests", re.IGNORECASE), ErrorKind.RATE_LIMITED),
    (re.compile(r"not supported|unsupported|unknown (tool|method|command)", re.IGNORECASE), ErrorKind.UNSUPPORTED_OPERATION),
)


@dataclass(slots=True)
class Connection:
    """Handle returned by ``connect``; owned by the connector that opened it."""

    transport: TransportKind
    handle: Any
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    info: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Connector(Protocol):
    provider_id: str
    transport: TransportKind

    async def connect(self) -> Connection:
        ...

    async def invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        ...

    async def health(self) -> bool:
        ...

    async def disconnect(self) -> None:
        ...

    async def list_operations(self) -> frozenset[str] | None:
        """Capabilities the provider reports through a listing call, or ``None`` if it has none."""
        ...


def classify_error_message(message: str, *, default: ErrorKind = ErrorKind.PROVIDER_ERROR) -> ErrorKind:
    for pattern, kind in _RETRYABLE_PATTERNS:
        if pattern.search(message or ""):
            return kind
    return default


def remaining_timeout(task: Task, default_timeout: float) -> float:
    remaining = task.remaining_seconds()
    if remaining is None:
        return max(0.0, float(default_timeout))
    return max(0.0, remaining)


async def enforce_deadline(
    awaitable: Awaitable[T],
    *,
    timeout: float,
    provider_id: str,
    operation: str,
) -> T:
    """Await ``awaitable`` but raise ``ProviderTimeoutError`` instead of hanging past ``timeout``."""
    if timeout <= 0:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise ProviderTimeoutError(
            f"Deadline already elapsed before '{operation}' on provider '{provider_id}'",
            provider_id=provider_id,
        )
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProviderTimeoutError(
            f"Provider '{provider_id}' did not finish '{operation}' within {timeout:.2f}s",
            provider_id=provider_id,
        ) from exc


def build_envelope(task: Task, workspace: WorkspaceSnapshot) -> dict[str, Any]:
    return {
        "task_id": task.id,
        "type": task.task_type,
        "description": task.description,
        "required_capabilities": sorted(task.required_capabilities),
        "language": task.language,
        "domain": task.domain,
        "deadline": task.deadline.isoformat() if task.deadline else None,
        "context": workspace.as_payload(),
    }


def success_response(
    *,
    provider_id: str,
    task: Task,
    payload: Any,
    started: float,
    transport: TransportKind,
    metadata: Mapping[str, Any] | None = None,
) -> ToolResponse:
    details = {"transport": transport.value}
    if metadata:
        details.update(metadata)
    return ToolResponse.ok(
        provider_id=provider_id,
        task_id=task.id,
        payload=payload,
        latency_seconds=time.perf_counter() - started,
        metadata=details,
    )


def attach_provider(exc: ProviderError, provider_id: str) -> ProviderError:
    if exc.provider_id is None:
        exc.provider_id = provider_id
    return exc


__all__ = [
    "Connection",
    "Connector",
    "attach_provider",
    "build_envelope",
    "classify_error_message",
    "enforce_deadline",
    "remaining_timeout",
    "success_response",
]
