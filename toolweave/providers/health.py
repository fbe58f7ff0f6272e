from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ..core import metrics
from ..core.config import HealthSettings
from ..core.logging import get_logger
from ..exceptions import ProviderError, ProviderNotFoundError
from ..schemas.enums import HealthState
from ..schemas.providers import Provider
from .registry import ProviderRegistry, normalize_provider_id

if TYPE_CHECKING:
    from ..connectors import ConnectorPool
    from .probe import CapabilityProbe

logger = get_logger(name=__name__)

_STATES = tuple(state.value for state in HealthState)

RemovalCallback = Callable[[str], Awaitable[None]]


@dataclass(slots=True)
class CheckOutcome:
    ok: bool
    latency_seconds: float | None
    error: str | None = None
    connection_lost: bool = False


@dataclass(slots=True)
class HealthDecision:
    changes: dict[str, Any] = field(default_factory=dict)
    source: HealthState = HealthState.UNKNOWN
    target: HealthState = HealthState.UNKNOWN
    reason: str = ""
    remove: bool = False

    @property
    def transitioned(self) -> bool:
        return self.source != self.target

    @property
    def reprobe(self) -> bool:
        return self.source is HealthState.UNAVAILABLE and self.target is HealthState.HEALTHY


def _elapsed(since: datetime | None, now: datetime) -> float:
    if since is None:
        return 0.0
    return (now - since).total_seconds()


def _performance_poor(provider: Provider, settings: HealthSettings) -> bool:
    record = provider.performance
    return record.samples >= settings.min_samples and record.success_rate < settings.success_rate_threshold


def evaluate_check(
    provider: Provider,
    outcome: CheckOutcome,
    settings: HealthSettings,
    *,
    now: datetime | None = None,
) -> HealthDecision:
    """Pure transition function for one check result.

    Only edges in ``HEALTH_TRANSITIONS`` are ever produced: an ``unknown``
    provider stays ``unknown`` until its first successful check, and an
    ``unavailable`` one only returns to ``healthy``.
    """
    now = now or datetime.now(timezone.utc)
    state = provider.health
    decision = HealthDecision(source=state, target=state)
    changes = decision.changes
    changes["last_checked_at"] = now
    changes["last_check_latency"] = outcome.latency_seconds

    if not outcome.ok:
        failures = provider.consecutive_failures + 1
        changes["consecutive_failures"] = failures
        changes["consecutive_successes"] = 0
        unreachable_since = provider.unreachable_since or now
        changes["unreachable_since"] = unreachable_since
        if state in (HealthState.HEALTHY, HealthState.DEGRADED):
            if outcome.connection_lost:
                decision.target = HealthState.UNAVAILABLE
                decision.reason = "connection_error"
            elif failures >= settings.failures_to_unavailable:
                decision.target = HealthState.UNAVAILABLE
                decision.reason = f"{failures}_consecutive_failures"
        if _elapsed(unreachable_since, now) >= settings.removal_grace_seconds and provider.unreachable_since:
            decision.remove = True
            decision.reason = "unreachable_past_grace"
    else:
        changes["consecutive_failures"] = 0
        changes["unreachable_since"] = None
        slow = outcome.latency_seconds is not None and outcome.latency_seconds > settings.latency_threshold_seconds
        within = not slow and not _performance_poor(provider, settings)
        successes = provider.consecutive_successes + 1 if within else 0
        changes["consecutive_successes"] = successes

        if state is HealthState.UNKNOWN:
            decision.target = HealthState.HEALTHY
            decision.reason = "first_successful_check"
        elif state is HealthState.HEALTHY and not within:
            decision.target = HealthState.DEGRADED
            decision.reason = "latency_threshold" if slow else "success_rate_threshold"
        elif state is HealthState.DEGRADED and successes >= settings.recoveries_to_healthy:
            decision.target = HealthState.HEALTHY
            decision.reason = f"{successes}_checks_within_threshold"
        elif state is HealthState.UNAVAILABLE:
            if _elapsed(provider.health_changed_at, now) >= settings.recovery_grace_seconds:
                decision.target = HealthState.HEALTHY
                decision.reason = "recovered_after_grace"
            else:
                decision.reason = "recovery_within_grace"

    if decision.transitioned:
        changes["health"] = decision.target
        changes["health_changed_at"] = now
        if decision.target is HealthState.HEALTHY:
            changes["consecutive_successes"] = 0
    return decision


class HealthMonitor:
    """Runs one periodic health timer per provider and applies the state machine.

    Each provider has its own asyncio task, so a hung provider only stalls its
    own timer. Every check is bounded by ``check_timeout_seconds`` and a timeout
    counts as a failure. Checks for the same provider are serialized so
    transitions are applied strictly in order.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        pool: "ConnectorPool",
        settings: HealthSettings,
        *,
        probe: "CapabilityProbe | None" = None,
        on_removed: RemovalCallback | None = None,
    ) -> None:
        self._registry = registry
        self._pool = pool
        self._settings = settings
        self._probe = probe
        self._on_removed = on_removed
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def tracked(self) -> list[str]:
        return sorted(self._timers)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for provider_id in self._registry.ids():
            self.track(provider_id)
        logger.info("health_monitor_started", providers=len(self._timers))

    async def stop(self) -> None:
        self._running = False
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        logger.info("health_monitor_stopped")

    def track(self, provider_id: str) -> None:
        provider_id = normalize_provider_id(provider_id)
        if not self._running or provider_id in self._timers:
            return
        self._timers[provider_id] = asyncio.create_task(
            self._run_timer(provider_id), name=f"health-check:{provider_id}"
        )

    def untrack(self, provider_id: str) -> None:
        provider_id = normalize_provider_id(provider_id)
        timer = self._timers.pop(provider_id, None)
        self._locks.pop(provider_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _run_timer(self, provider_id: str) -> None:
        interval = self._settings.check_interval_seconds
        while True:
            try:
                await self.check_now(provider_id)
            except ProviderNotFoundError:
                self._timers.pop(provider_id, None)
                return
            except Exception as exc:
                logger.exception("health_check_crashed", provider=provider_id, error=str(exc))
            if provider_id not in self._registry:
                self._timers.pop(provider_id, None)
                return
            await asyncio.sleep(interval)

    async def check_now(self, provider_id: str, *, timeout: float | None = None) -> HealthState | None:
        """Run one bounded health check and apply it; ``None`` means the provider was removed."""
        lock = self._lock_for(provider_id)
        async with lock:
            provider = self._registry.require(provider_id)
            outcome = await self._run_check(provider, timeout or self._settings.check_timeout_seconds)
            return await self._apply(provider.id, outcome)

    async def report_connection_failure(self, provider_id: str, error: str) -> HealthState | None:
        """Hard connection error observed outside a health check, e.g. during a task."""
        lock = self._lock_for(provider_id)
        async with lock:
            if provider_id not in self._registry:
                return None
            outcome = CheckOutcome(ok=False, latency_seconds=None, error=error, connection_lost=True)
            return await self._apply(provider_id, outcome)

    async def reevaluate_performance(self, provider_id: str) -> HealthState | None:
        """Degrade a healthy provider whose task success rate fell below the threshold."""
        lock = self._lock_for(provider_id)
        async with lock:
            provider = self._registry.get(provider_id)
            if provider is None:
                return None
            if provider.health is not HealthState.HEALTHY or not _performance_poor(provider, self._settings):
                return provider.health
            now = datetime.now(timezone.utc)
            updated = self._registry.update_health(
                provider.id,
                health=HealthState.DEGRADED,
                health_changed_at=now,
                consecutive_successes=0,
            )
            self._log_transition(
                HealthDecision(
                    source=HealthState.HEALTHY,
                    target=HealthState.DEGRADED,
                    reason="success_rate_threshold",
                ),
                provider.id,
            )
            return updated.health

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        return self._locks.setdefault(normalize_provider_id(provider_id), asyncio.Lock())

    async def _run_check(self, provider: Provider, timeout: float) -> CheckOutcome:
        started = time.perf_counter()
        try:
            connector = await self._pool.acquire(provider)
            healthy = await asyncio.wait_for(connector.health(), timeout=timeout)
        except asyncio.TimeoutError:
            metrics.record_health_check(provider=provider.id, result="timeout")
            return CheckOutcome(ok=False, latency_seconds=timeout, error="health check timed out")
        except (ProviderError, ValueError) as exc:
            metrics.record_health_check(provider=provider.id, result="error")
            return CheckOutcome(ok=False, latency_seconds=time.perf_counter() - started, error=str(exc))
        latency = time.perf_counter() - started
        metrics.record_health_check(provider=provider.id, result="ok" if healthy else "failed")
        return CheckOutcome(ok=bool(healthy), latency_seconds=latency, error=None if healthy else "reported unhealthy")

    async def _apply(self, provider_id: str, outcome: CheckOutcome) -> HealthState | None:
        provider = self._registry.require(provider_id)
        decision = evaluate_check(provider, outcome, self._settings)
        if decision.remove:
            await self._remove(provider.id, decision)
            return None
        updated = self._registry.update_health(provider.id, **decision.changes)
        if decision.transitioned:
            self._log_transition(decision, provider.id)
        elif not outcome.ok:
            logger.debug(
                "health_check_failed",
                provider=provider.id,
                state=provider.health.value,
                failures=updated.consecutive_failures,
                error=outcome.error,
            )
        if decision.reprobe and self._probe is not None:
            await self._probe.probe(updated)
        return updated.health

    async def _remove(self, provider_id: str, decision: HealthDecision) -> None:
        logger.warning("provider_removed_unreachable", provider=provider_id, reason=decision.reason)
        self._registry.deregister(provider_id, reason=decision.reason)
        self._timers.pop(provider_id, None)
        self._locks.pop(provider_id, None)
        await self._pool.release(provider_id)
        if self._on_removed is not None:
            await self._on_removed(provider_id)

    @staticmethod
    def _log_transition(decision: HealthDecision, provider_id: str) -> None:
        metrics.record_health_transition(
            provider=provider_id,
            source=decision.source.value,
            target=decision.target.value,
            states=_STATES,
        )
        logger.info(
            "health_transition",
            provider=provider_id,
            source=decision.source.value,
            target=decision.target.value,
            reason=decision.reason,
        )


__all__ = ["CheckOutcome", "HealthDecision", "HealthMonitor", "evaluate_check"]
