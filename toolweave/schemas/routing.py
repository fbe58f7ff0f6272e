from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from .enums import ErrorKind, ResolutionStrategy


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ToolResponse:
    """Outcome of one (provider, task) invocation attempt, whatever the transport."""

    provider_id: str
    task_id: str
    success: bool
    payload: Any = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    latency_seconds: float | None = None
    attempt: int = 1
    started_at: datetime = field(default_factory=_utcnow)
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def ok(
        cls,
        *,
        provider_id: str,
        task_id: str,
        payload: Any,
        latency_seconds: float | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> "ToolResponse":
        return cls(
            provider_id=provider_id,
            task_id=task_id,
            success=True,
            payload=payload,
            latency_seconds=latency_seconds,
            metadata=MappingProxyType(dict(metadata or {})),
        )

    @classmethod
    def failed(
        cls,
        *,
        provider_id: str,
        task_id: str,
        error_kind: ErrorKind,
        error: str,
        latency_seconds: float | None = None,
        attempt: int = 1,
        metadata: Mapping[str, Any] | None = None,
    ) -> "ToolResponse":
        return cls(
            provider_id=provider_id,
            task_id=task_id,
            success=False,
            error_kind=error_kind,
            error=error,
            latency_seconds=latency_seconds,
            attempt=attempt,
            metadata=MappingProxyType(dict(metadata or {})),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "task_id": self.task_id,
            "success": self.success,
            "payload": self.payload,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "latency_seconds": self.latency_seconds,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True, slots=True)
class RoutingPlan:
    """The router's decision for one task. Superseded, never mutated, on re-route."""

    task_id: str
    primary: str | None
    supporting: tuple[str, ...] = ()
    fallback: tuple[str, ...] = ()
    rationale: str = ""
    degraded: bool = False
    scores: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    snapshot_version: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def ranked(self) -> tuple[str, ...]:
        head = (self.primary,) if self.primary else ()
        return head + self.supporting + self.fallback

    def rank_of(self, provider_id: str) -> int:
        try:
            return self.ranked.index(provider_id)
        except ValueError:
            return len(self.ranked)

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "primary": self.primary,
            "supporting": list(self.supporting),
            "fallback": list(self.fallback),
            "rationale": self.rationale,
            "degraded": self.degraded,
            "scores": dict(self.scores),
            "snapshot_version": self.snapshot_version,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class Alternative:
    provider_id: str
    payload: Any
    similarity: float


@dataclass(frozen=True, slots=True)
class ConflictSet:
    """Successful responses to one task whose payloads differ materially."""

    task_id: str
    responses: tuple[ToolResponse, ...]
    similarity: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def provider_ids(self) -> tuple[str, ...]:
        return tuple(response.provider_id for response in self.responses)


@dataclass(frozen=True, slots=True)
class IntegratedResult:
    """What the caller receives for a successfully served task."""

    task_id: str
    payload: Any
    primary_provider_id: str
    provider_ids: tuple[str, ...]
    resolution: ResolutionStrategy
    degraded: bool
    alternatives: tuple[Alternative, ...] = ()
    requires_confirmation: bool = False
    responses: tuple[ToolResponse, ...] = ()
    plan: RoutingPlan | None = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "payload": self.payload,
            "primary_provider_id": self.primary_provider_id,
            "provider_ids": list(self.provider_ids),
            "resolution": self.resolution.value,
            "degraded": self.degraded,
            "requires_confirmation": self.requires_confirmation,
            "alternatives": [
                {"provider_id": item.provider_id, "payload": item.payload, "similarity": round(item.similarity, 4)}
                for item in self.alternatives
            ],
            "responses": [response.as_dict() for response in self.responses],
            "plan": self.plan.as_dict() if self.plan else None,
            "metadata": dict(self.metadata),
        }


__all__ = ["ToolResponse", "RoutingPlan", "Alternative", "ConflictSet", "IntegratedResult"]
