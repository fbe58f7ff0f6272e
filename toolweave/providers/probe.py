from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..core import metrics
from ..core.config import ProbeSettings
from ..core.logging import get_logger
from ..exceptions import ProviderError, ProviderNotFoundError, UnsupportedOperationError
from ..schemas.providers import Provider
from ..schemas.tasks import EMPTY_WORKSPACE, Task
from .registry import ProviderRegistry

if TYPE_CHECKING:
    from ..connectors import ConnectorPool

logger = get_logger(name=__name__)

_CANARY_DESCRIPTION = "Capability probe: reply with a short acknowledgement."


@dataclass(slots=True)
class ProbeResult:
    provider_id: str
    method: str
    capabilities: frozenset[str]
    errors: tuple[str, ...]
    probed_at: datetime
    duration_seconds: float

    @property
    def outcome(self) -> str:
        if self.capabilities:
            return "partial" if self.errors else "confirmed"
        return "empty"

    def as_dict(self) -> dict[str, object]:
        return {
            "provider_id": self.provider_id,
            "method": self.method,
            "capabilities": sorted(self.capabilities),
            "errors": list(self.errors),
            "outcome": self.outcome,
            "probed_at": self.probed_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 4),
        }


class CapabilityProbe:
    """Confirms what a provider can actually do, independent of what it declares.

    A documented listing call is preferred. Providers without one get a canary
    task per declared capability; only canaries answered successfully inside the
    latency budget count. A failed probe never removes a provider, it only
    leaves it with an empty or reduced capability set.
    """

    def __init__(self, registry: ProviderRegistry, pool: "ConnectorPool", settings: ProbeSettings) -> None:
        self._registry = registry
        self._pool = pool
        self._settings = settings

    async def probe(self, provider: Provider) -> ProbeResult:
        started = time.perf_counter()
        errors: list[str] = []
        method = "listing"
        capabilities: frozenset[str] = frozenset()
        listed: frozenset[str] | None = None

        try:
            connector = await self._pool.acquire(provider)
        except (ProviderError, ValueError) as exc:
            errors.append(f"connector: {exc}")
            return self._finish(provider, "none", capabilities, errors, started)

        try:
            listed = await asyncio.wait_for(connector.list_operations(), timeout=self._settings.latency_budget_seconds)
        except UnsupportedOperationError:
            listed = None
        except asyncio.TimeoutError:
            errors.append("listing: exceeded latency budget")
            return self._finish(provider, method, capabilities, errors, started)
        except (ProviderError, ValueError) as exc:
            errors.append(f"listing: {exc}")
            return self._finish(provider, method, capabilities, errors, started)

        if listed is not None:
            capabilities = listed
        elif self._settings.allow_canary_tasks:
            method = "canary"
            capabilities = await self._run_canaries(provider, connector, errors)
        else:
            method = "none"
            errors.append("no listing call and canary probing is disabled")

        return self._finish(provider, method, capabilities, errors, started)

    async def _run_canaries(self, provider: Provider, connector, errors: list[str]) -> frozenset[str]:
        confirmed: set[str] = set()
        budget = self._settings.latency_budget_seconds
        # One canary at a time; connectors serialize requests per instance.
        for capability in sorted(provider.declared_capabilities):
            canary = Task.create(
                capability,
                _CANARY_DESCRIPTION,
                timeout_seconds=budget,
                metadata={"canary": True},
            )
            attempt_started = time.perf_counter()
            try:
                response = await asyncio.wait_for(connector.invoke(canary, EMPTY_WORKSPACE), timeout=budget)
            except asyncio.TimeoutError:
                errors.append(f"{capability}: exceeded latency budget")
                continue
            except (ProviderError, ValueError) as exc:
                errors.append(f"{capability}: {exc}")
                continue
            elapsed = time.perf_counter() - attempt_started
            if response.success and elapsed <= budget:
                confirmed.add(capability)
            else:
                errors.append(f"{capability}: {response.error or 'unsuccessful canary'}")
        return frozenset(confirmed)

    def _finish(
        self,
        provider: Provider,
        method: str,
        capabilities: frozenset[str],
        errors: list[str],
        started: float,
    ) -> ProbeResult:
        result = ProbeResult(
            provider_id=provider.id,
            method=method,
            capabilities=capabilities,
            errors=tuple(errors),
            probed_at=datetime.now(timezone.utc),
            duration_seconds=time.perf_counter() - started,
        )
        try:
            self._registry.set_probed_capabilities(provider.id, capabilities)
        except ProviderNotFoundError:
            logger.info("probe_discarded", provider=provider.id, reason="provider_removed")
            return result
        metrics.record_probe(
            provider=provider.id,
            method=method,
            outcome=result.outcome,
            capability_count=len(capabilities),
        )
        if errors:
            logger.warning("capability_probe_incomplete", report=result.as_dict())
        else:
            logger.info("capability_probe_completed", report=result.as_dict())
        return result


__all__ = ["CapabilityProbe", "ProbeResult"]
