from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping

from ..core import metrics
from ..core.logging import get_logger
from ..exceptions import ProviderNotFoundError
from ..schemas.enums import HealthState
from ..schemas.providers import (
    PerformanceRecord,
    Provider,
    ProviderRegistration,
    is_allowed_transition,
    normalize_capabilities,
)

__all__ = ["normalize_provider_id", "RegistrySnapshot", "ProviderRegistry", "RegistrationOutcome"]

logger = get_logger(name=__name__)

_ID_PATTERN = re.compile(r"[\\/\s]+")
_DOT_COLLAPSE = re.compile(r"\.+")


def normalize_provider_id(provider_id: str) -> str:
    """Return the normalized identifier used for registry lookups."""
    if not isinstance(provider_id, str):
        raise TypeError("Provider id must be a string")
    collapsed = _ID_PATTERN.sub(".", provider_id.strip())
    collapsed = _DOT_COLLAPSE.sub(".", collapsed)
    collapsed = collapsed.strip(".")
    if not collapsed:
        raise ValueError("Provider id cannot be empty")
    return collapsed.lower()


class RegistrationOutcome:
    CREATED = "created"
    UNCHANGED = "unchanged"
    UPDATED = "updated"


@dataclass(frozen=True, slots=True)
class RegistrySnapshot:
    """Immutable, versioned view of the registry taken at one instant."""

    version: int
    providers: Mapping[str, Provider]
    taken_at: datetime

    def get(self, provider_id: str) -> Provider | None:
        return self.providers.get(normalize_provider_id(provider_id))

    def __iter__(self) -> Iterator[Provider]:
        for key in sorted(self.providers):
            yield self.providers[key]

    def __len__(self) -> int:
        return len(self.providers)

    def filter(
        self,
        *,
        capabilities: Iterable[str] | None = None,
        states: Iterable[HealthState] | None = None,
    ) -> list[Provider]:
        required = normalize_capabilities(capabilities)
        allowed = frozenset(states) if states is not None else None
        selected: list[Provider] = []
        for provider in self:
            if allowed is not None and provider.health not in allowed:
                continue
            if required and not provider.covers(required):
                continue
            selected.append(provider)
        return selected


class ProviderRegistry:
    """Concurrent-safe catalog of providers.

    Readers take snapshots; every mutation goes through ``_apply`` under a single
    lock, replaces the stored record with a new immutable instance, and bumps the
    version so a snapshot never observes a provider half-updated.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._version = 0
        self._lock = threading.RLock()

    # -- reads -----------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            return RegistrySnapshot(
                version=self._version,
                providers=MappingProxyType(dict(self._providers)),
                taken_at=datetime.now(timezone.utc),
            )

    def get(self, provider_id: str) -> Provider | None:
        key = normalize_provider_id(provider_id)
        with self._lock:
            return self._providers.get(key)

    def require(self, provider_id: str) -> Provider:
        provider = self.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(f"Provider '{provider_id}' is not registered")
        return provider

    def list(
        self,
        *,
        capabilities: Iterable[str] | None = None,
        states: Iterable[HealthState] | None = None,
    ) -> list[Provider]:
        return self.snapshot().filter(capabilities=capabilities, states=states)

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        if not isinstance(provider_id, str):
            return False
        return self.get(provider_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._providers)

    # -- writes ----------------------------------------------------------------

    def register(self, registration: ProviderRegistration) -> tuple[Provider, str]:
        """Create, update, or leave unchanged the record for ``registration.id``.

        Identical repeated registrations are no-ops. A changed config or transport
        replaces the connection details and starts a fresh performance record.
        """
        key = normalize_provider_id(registration.id)
        with self._lock:
            existing = self._providers.get(key)
            if existing is None:
                provider = Provider.from_registration(registration).evolve(id=key)
                self._store(provider)
                outcome = RegistrationOutcome.CREATED
            elif self._same_registration(existing, registration):
                return existing, RegistrationOutcome.UNCHANGED
            else:
                provider = existing.evolve(
                    transport=registration.transport,
                    config=registration.config,
                    declared_capabilities=registration.declared_capabilities,
                    exclusive=registration.exclusive,
                    performance=PerformanceRecord(),
                    registered_at=datetime.now(timezone.utc),
                )
                self._store(provider)
                outcome = RegistrationOutcome.UPDATED
            count = len(self._providers)
        metrics.set_registered_providers(count)
        logger.info(
            "provider_registered",
            provider=key,
            transport=registration.transport.value,
            outcome=outcome,
            declared=sorted(registration.declared_capabilities),
        )
        return provider, outcome

    def deregister(self, provider_id: str, *, reason: str = "explicit") -> bool:
        key = normalize_provider_id(provider_id)
        with self._lock:
            if key not in self._providers:
                return False
            del self._providers[key]
            self._version += 1
            count = len(self._providers)
        metrics.set_registered_providers(count)
        logger.info("provider_deregistered", provider=key, reason=reason)
        return True

    def update_health(self, provider_id: str, **changes: Any) -> Provider:
        """Apply health-monitor bookkeeping; rejects state edges the state machine forbids."""

        def _mutate(current: Provider) -> Provider:
            target = changes.get("health", current.health)
            if not is_allowed_transition(current.health, target):
                raise ValueError(
                    f"Illegal health transition for '{current.id}': {current.health.value} -> {target.value}"
                )
            return current.evolve(**changes)

        return self._apply(provider_id, _mutate)

    def set_probed_capabilities(self, provider_id: str, capabilities: Iterable[str]) -> Provider:
        probed = normalize_capabilities(capabilities)
        now = datetime.now(timezone.utc)
        return self._apply(
            provider_id,
            lambda current: current.evolve(probed_capabilities=probed, last_probed_at=now),
        )

    def record_performance(
        self,
        provider_id: str,
        *,
        success: bool,
        latency_seconds: float | None,
        smoothing: float,
    ) -> Provider:
        return self._apply(
            provider_id,
            lambda current: current.evolve(
                performance=current.performance.observe(
                    success=success,
                    latency_seconds=latency_seconds,
                    smoothing=smoothing,
                )
            ),
        )

    def clear(self) -> None:
        with self._lock:
            self._providers.clear()
            self._version += 1
        metrics.set_registered_providers(0)

    # -- internals -------------------------------------------------------------

    def _apply(self, provider_id: str, mutate: Callable[[Provider], Provider]) -> Provider:
        key = normalize_provider_id(provider_id)
        with self._lock:
            current = self._providers.get(key)
            if current is None:
                raise ProviderNotFoundError(f"Provider '{provider_id}' is not registered")
            updated = mutate(current)
            self._store(updated)
            return updated

    def _store(self, provider: Provider) -> None:
        self._providers[provider.id] = provider
        self._version += 1

    @staticmethod
    def _same_registration(existing: Provider, registration: ProviderRegistration) -> bool:
        return (
            existing.transport == registration.transport
            and dict(existing.config) == dict(registration.config)
            and existing.declared_capabilities == registration.declared_capabilities
            and existing.exclusive == registration.exclusive
        )
