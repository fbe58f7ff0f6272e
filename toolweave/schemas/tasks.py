from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Iterable, Mapping


class CancellationToken:
    """Caller-owned flag that in-flight invocations watch for withdrawal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True, slots=True)
class OpenFile:
    path: str
    language: str | None = None
    content: str = ""


@dataclass(frozen=True, slots=True)
class WorkspaceSnapshot:
    """Read-only view of the caller's workspace handed to connectors."""

    workspace_root: str | None = None
    open_files: tuple[OpenFile, ...] = ()
    selection: str | None = None
    project_type: str | None = None
    technologies: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()

    def as_payload(self) -> dict[str, Any]:
        return {
            "workspace_root": self.workspace_root,
            "open_files": [
                {"path": item.path, "language": item.language, "content": item.content}
                for item in self.open_files
            ],
            "selection": self.selection,
            "project_info": {
                "type": self.project_type,
                "technologies": list(self.technologies),
                "dependencies": list(self.dependencies),
            },
        }

    def summary(self) -> str:
        lines = [
            f"Project: {self.project_type or 'unknown'}",
            f"Technologies: {', '.join(self.technologies) or 'none'}",
            f"Open files: {len(self.open_files)}",
        ]
        if self.open_files:
            lines.append(f"Current files: {', '.join(item.path for item in self.open_files)}")
        return "\n".join(lines)


EMPTY_WORKSPACE = WorkspaceSnapshot()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of work submitted to the orchestrator. Immutable after creation."""

    id: str
    task_type: str
    description: str
    required_capabilities: frozenset[str]
    language: str | None = None
    domain: str | None = None
    deadline: datetime | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken, compare=False, repr=False)
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), compare=False)
    created_at: datetime = field(default_factory=_utcnow, compare=False)

    @classmethod
    def create(
        cls,
        task_type: str,
        description: str,
        *,
        required_capabilities: Iterable[str] | None = None,
        language: str | None = None,
        domain: str | None = None,
        timeout_seconds: float | None = None,
        deadline: datetime | None = None,
        cancellation: CancellationToken | None = None,
        metadata: Mapping[str, Any] | None = None,
        task_id: str | None = None,
    ) -> "Task":
        task_type = str(task_type).strip().lower()
        if not task_type:
            raise ValueError("task_type cannot be empty")
        capabilities = frozenset(
            str(item).strip().lower() for item in (required_capabilities or (task_type,)) if str(item).strip()
        )
        if deadline is None and timeout_seconds is not None:
            deadline = _utcnow() + timedelta(seconds=max(0.0, float(timeout_seconds)))
        elif deadline is not None:
            deadline = _as_utc(deadline)
        return cls(
            id=task_id or uuid.uuid4().hex,
            task_type=task_type,
            description=description,
            required_capabilities=capabilities,
            language=language,
            domain=domain,
            deadline=deadline,
            cancellation=cancellation or CancellationToken(),
            metadata=MappingProxyType(dict(metadata or {})),
        )

    def remaining_seconds(self, *, now: datetime | None = None) -> float | None:
        if self.deadline is None:
            return None
        current = now or _utcnow()
        return (self.deadline - current).total_seconds()

    def is_expired(self, *, now: datetime | None = None) -> bool:
        remaining = self.remaining_seconds(now=now)
        return remaining is not None and remaining <= 0.0

    def with_deadline(self, deadline: datetime) -> "Task":
        return Task(
            id=self.id,
            task_type=self.task_type,
            description=self.description,
            required_capabilities=self.required_capabilities,
            language=self.language,
            domain=self.domain,
            deadline=_as_utc(deadline),
            cancellation=self.cancellation,
            metadata=self.metadata,
            created_at=self.created_at,
        )


__all__ = ["CancellationToken", "OpenFile", "WorkspaceSnapshot", "EMPTY_WORKSPACE", "Task"]
