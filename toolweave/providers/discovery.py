from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from ..core.config import DiscoverySettings, ProbeSettings
from ..core.logging import get_logger
from ..schemas.providers import ProviderRegistration
from .probe import CapabilityProbe
from .registry import ProviderRegistry, RegistrationOutcome, normalize_provider_id

logger = get_logger(name=__name__)

DiscoverySource = Callable[[], Awaitable[Iterable[ProviderRegistration]]]
RegisterCallback = Callable[[ProviderRegistration], Awaitable[str]]
DeregisterCallback = Callable[[str, str], Awaitable[bool]]


@dataclass(slots=True)
class DiscoveryReport:
    generated_at: datetime
    discovered: tuple[str, ...] = ()
    created: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    failed_sources: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "discovered": list(self.discovered),
            "created": list(self.created),
            "updated": list(self.updated),
            "unchanged": list(self.unchanged),
            "removed": list(self.removed),
            "failed_sources": list(self.failed_sources),
        }


def _source_name(source: DiscoverySource, index: int) -> str:
    return getattr(source, "__name__", None) or f"source-{index}"


class DiscoveryService:
    """Background discovery cycle plus the long-interval capability re-probe."""

    def __init__(
        self,
        registry: ProviderRegistry,
        probe: CapabilityProbe,
        *,
        sources: Sequence[DiscoverySource] = (),
        register: RegisterCallback,
        deregister: DeregisterCallback,
        settings: DiscoverySettings,
        probe_settings: ProbeSettings,
    ) -> None:
        self._registry = registry
        self._probe = probe
        self._sources = list(sources)
        self._register = register
        self._deregister = deregister
        self._settings = settings
        self._probe_settings = probe_settings
        self._discovered: set[str] = set()
        self._tasks: list[asyncio.Task[None]] = []
        self._last_report: DiscoveryReport | None = None

    @property
    def last_report(self) -> DiscoveryReport | None:
        return self._last_report

    def add_source(self, source: DiscoverySource) -> None:
        self._sources.append(source)

    async def run_cycle(self) -> DiscoveryReport:
        found: dict[str, ProviderRegistration] = {}
        failed: list[str] = []
        for index, source in enumerate(self._sources):
            name = _source_name(source, index)
            try:
                registrations = list(await source())
            except Exception as exc:
                logger.warning("discovery_source_failed", source=name, error=str(exc))
                failed.append(name)
                continue
            for registration in registrations:
                try:
                    provider_id = normalize_provider_id(registration.id)
                except ValueError as exc:
                    logger.warning(
                        "discovery_registration_rejected", provider=registration.id, source=name, error=str(exc)
                    )
                    continue
                found[provider_id] = registration

        buckets: dict[str, list[str]] = {
            RegistrationOutcome.CREATED: [],
            RegistrationOutcome.UPDATED: [],
            RegistrationOutcome.UNCHANGED: [],
        }
        for provider_id, registration in sorted(found.items()):
            try:
                outcome = await self._register(registration)
            except ValueError as exc:
                logger.warning("discovery_registration_rejected", provider=provider_id, error=str(exc))
                continue
            buckets.setdefault(outcome, []).append(provider_id)

        removed: list[str] = []
        if self._settings.deregister_missing and not failed:
            for provider_id in sorted(self._discovered - set(found)):
                if provider_id in self._registry and await self._deregister(provider_id, "no_longer_discovered"):
                    removed.append(provider_id)
            self._discovered = set(found)
        else:
            self._discovered |= set(found)

        report = DiscoveryReport(
            generated_at=datetime.now(timezone.utc),
            discovered=tuple(sorted(found)),
            created=tuple(buckets[RegistrationOutcome.CREATED]),
            updated=tuple(buckets[RegistrationOutcome.UPDATED]),
            unchanged=tuple(buckets[RegistrationOutcome.UNCHANGED]),
            removed=tuple(removed),
            failed_sources=tuple(failed),
        )
        self._last_report = report
        if failed:
            logger.warning("discovery_cycle_partial", report=report.as_dict())
        else:
            logger.info("discovery_cycle_completed", report=report.as_dict())
        return report

    async def reprobe_all(self) -> int:
        count = 0
        for provider in self._registry.snapshot():
            await self._probe.probe(provider)
            count += 1
        logger.info("capability_reprobe_completed", providers=count)
        return count

    def start(self) -> None:
        if self._tasks:
            return
        if self._settings.enabled and self._sources:
            self._tasks.append(asyncio.create_task(self._discovery_loop(), name="discovery-cycle"))
        self._tasks.append(asyncio.create_task(self._reprobe_loop(), name="capability-reprobe"))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _discovery_loop(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.exception("discovery_cycle_failed", error=str(exc))
            await asyncio.sleep(self._settings.interval_seconds)

    async def _reprobe_loop(self) -> None:
        while True:
            await asyncio.sleep(self._probe_settings.reprobe_interval_seconds)
            try:
                await self.reprobe_all()
            except Exception as exc:
                logger.exception("capability_reprobe_failed", error=str(exc))


__all__ = ["DiscoveryReport", "DiscoveryService", "DiscoverySource"]
