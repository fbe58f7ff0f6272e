from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .enums import HealthState, TransportKind


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


HEALTH_TRANSITIONS: Mapping[HealthState, frozenset[HealthState]] = MappingProxyType(
    {
        HealthState.UNKNOWN: frozenset({HealthState.HEALTHY}),
        HealthState.HEALTHY: frozenset({HealthState.DEGRADED, HealthState.UNAVAILABLE}),
        HealthState.DEGRADED: frozenset({HealthState.HEALTHY, HealthState.UNAVAILABLE}),
        HealthState.UNAVAILABLE: frozenset({HealthState.HEALTHY}),
    }
)


def is_allowed_transition(source: HealthState, target: HealthState) -> bool:
    return source == target or target in HEALTH_TRANSITIONS[source]


def normalize_capabilities(values: Iterable[str] | None) -> frozenset[str]:
    if not values:
        return frozenset()
    return frozenset(str(value).strip().lower() for value in values if str(value).strip())


@dataclass(frozen=True, slots=True)
class PerformanceRecord:
    """Exponentially-weighted success rate and latency for one provider."""

    success_rate: float = 1.0
    latency_seconds: float | None = None
    samples: int = 0
    successes: int = 0
    failures: int = 0
    updated_at: datetime | None = None

    def observe(
        self,
        *,
        success: bool,
        latency_seconds: float | None,
        smoothing: float,
        now: datetime | None = None,
    ) -> "PerformanceRecord":
        alpha = max(0.0, min(1.0, smoothing))
        outcome = 1.0 if success else 0.0
        if self.samples == 0:
            success_rate = outcome
        else:
            success_rate = (alpha * outcome) + ((1.0 - alpha) * self.success_rate)

        latency = self.latency_seconds
        if latency_seconds is not None:
            observed = max(0.0, float(latency_seconds))
            latency = observed if latency is None else (alpha * observed) + ((1.0 - alpha) * latency)

        return PerformanceRecord(
            success_rate=success_rate,
            latency_seconds=latency,
            samples=self.samples + 1,
            successes=self.successes + (1 if success else 0),
            failures=self.failures + (0 if success else 1),
            updated_at=now or _utcnow(),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "success_rate": round(self.success_rate, 4),
            "latency_seconds": None if self.latency_seconds is None else round(self.latency_seconds, 4),
            "samples": self.samples,
            "successes": self.successes,
            "failures": self.failures,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True, slots=True)
class ProviderRegistration:
    """What an external discovery source or config loader knows about a provider."""

    id: str
    transport: TransportKind
    config: Mapping[str, Any] = field(default_factory=dict)
    declared_capabilities: frozenset[str] = frozenset()
    exclusive: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "transport", TransportKind(self.transport))
        object.__setattr__(self, "declared_capabilities", normalize_capabilities(self.declared_capabilities))
        object.__setattr__(self, "config", MappingProxyType(dict(self.config)))


@dataclass(frozen=True, slots=True)
class Provider:
    """Registry-owned record. Every change produces a new instance."""

    id: str
    transport: TransportKind
    config: Mapping[str, Any]
    declared_capabilities: frozenset[str] = frozenset()
    probed_capabilities: frozenset[str] = frozenset()
    health: HealthState = HealthState.UNKNOWN
    performance: PerformanceRecord = field(default_factory=PerformanceRecord)
    exclusive: bool = False
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_check_latency: float | None = None
    last_checked_at: datetime | None = None
    health_changed_at: datetime | None = None
    unreachable_since: datetime | None = None
    last_probed_at: datetime | None = None
    registered_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_registration(cls, registration: ProviderRegistration) -> "Provider":
        return cls(
            id=registration.id,
            transport=registration.transport,
            config=registration.config,
            declared_capabilities=registration.declared_capabilities,
            exclusive=registration.exclusive,
        )

    def evolve(self, **changes: Any) -> "Provider":
        return replace(self, **changes)

    @property
    def routable(self) -> bool:
        return self.health in (HealthState.HEALTHY, HealthState.DEGRADED)

    def covers(self, capabilities: Iterable[str]) -> bool:
        return frozenset(capabilities) <= self.probed_capabilities

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "transport": self.transport.value,
            "declared_capabilities": sorted(self.declared_capabilities),
            "probed_capabilities": sorted(self.probed_capabilities),
            "health": self.health.value,
            "performance": self.performance.as_dict(),
            "exclusive": self.exclusive,
            "consecutive_failures": self.consecutive_failures,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "health_changed_at": self.health_changed_at.isoformat() if self.health_changed_at else None,
            "last_probed_at": self.last_probed_at.isoformat() if self.last_probed_at else None,
            "registered_at": self.registered_at.isoformat(),
        }


__all__ = [
    "HEALTH_TRANSITIONS",
    "is_allowed_transition",
    "normalize_capabilities",
    "PerformanceRecord",
    "ProviderRegistration",
    "Provider",
]
