from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Sequence

import httpx

from ..connectors import CommandHost, ConnectorFactory, ConnectorPool
from ..core import metrics
from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..exceptions import (
    AllProvidersFailedError,
    NoCapableProviderError,
    ProviderNotFoundError,
    TaskCancelledError,
    UnknownTaskError,
)
from ..providers.discovery import DiscoveryService, DiscoverySource
from ..providers.health import HealthMonitor
from ..providers.probe import CapabilityProbe
from ..providers.registry import ProviderRegistry, RegistrationOutcome, normalize_provider_id
from ..schemas.enums import TransportKind
from ..schemas.providers import Provider, ProviderRegistration
from ..schemas.routing import IntegratedResult, RoutingPlan
from ..schemas.tasks import EMPTY_WORKSPACE, Task, WorkspaceSnapshot
from .conflict import ConfirmCallback, ConflictResolver, build_strategy
from .executor import ExecutionOutcome, PlanExecutor
from .preferences import PreferenceStore
from .routing import AdaptiveTaskRouter

logger = get_logger(name=__name__)


@dataclass(slots=True)
class PlanRecord:
    task: Task
    plans: list[RoutingPlan] = field(default_factory=list)

    @property
    def current(self) -> RoutingPlan:
        return self.plans[-1]


class Orchestrator:
    """Entry point for hosts: registration, task submission, status and feedback.

    Owns the registry and wires probe, health monitor, discovery, router,
    executor and conflict resolver around it. Background loops only run
    between ``start()`` and ``stop()``; everything else works without them.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        command_host: CommandHost | None = None,
        http_client: httpx.AsyncClient | None = None,
        sources: Sequence[DiscoverySource] = (),
        confirm: ConfirmCallback | None = None,
        connector_factory: ConnectorFactory | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = ProviderRegistry()
        factory = connector_factory or ConnectorFactory(
            self._settings,
            command_host=command_host,
            http_client=http_client,
        )
        self._pool = ConnectorPool(factory)
        self._probe = CapabilityProbe(self._registry, self._pool, self._settings.probe)
        self._health = HealthMonitor(
            self._registry,
            self._pool,
            self._settings.health,
            probe=self._probe,
            on_removed=self._forget_provider,
        )
        self._preferences = PreferenceStore(self._settings.preferences)
        self._router = AdaptiveTaskRouter(self._settings.routing)
        self._resolver = ConflictResolver(
            self._settings.conflict,
            build_strategy(self._settings.conflict, confirm=confirm),
        )
        self._executor = PlanExecutor(
            self._registry,
            self._pool,
            self._settings.execution,
            smoothing=self._settings.performance.smoothing,
            on_connection_lost=self._health.report_connection_failure,
        )
        self._discovery = DiscoveryService(
            self._registry,
            self._probe,
            sources=sources,
            register=self._register_from_discovery,
            deregister=self.deregister_provider,
            settings=self._settings.discovery,
            probe_settings=self._settings.probe,
        )
        self._plans: OrderedDict[str, PlanRecord] = OrderedDict()

    # -- wiring ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def preferences(self) -> PreferenceStore:
        return self._preferences

    @property
    def health_monitor(self) -> HealthMonitor:
        return self._health

    @property
    def discovery(self) -> DiscoveryService:
        return self._discovery

    async def start(self) -> None:
        self._health.start()
        self._discovery.start()
        logger.info("orchestrator_started", providers=len(self._registry))

    async def stop(self) -> None:
        await self._discovery.stop()
        await self._health.stop()
        await self._pool.close()
        logger.info("orchestrator_stopped")

    # -- registration ------------------------------------------------------------

    async def register_provider(
        self,
        provider_id: str,
        transport: TransportKind | str,
        config: Mapping[str, Any] | None = None,
        declared_capabilities: Iterable[str] = (),
        *,
        exclusive: bool = False,
    ) -> Provider:
        registration = ProviderRegistration(
            id=provider_id,
            transport=TransportKind(transport),
            config=dict(config or {}),
            declared_capabilities=frozenset(declared_capabilities),
            exclusive=exclusive,
        )
        provider, _ = await self._admit(registration)
        return provider

    async def deregister_provider(self, provider_id: str, reason: str = "explicit") -> bool:
        key = normalize_provider_id(provider_id)
        removed = self._registry.deregister(key, reason=reason)
        if removed:
            self._health.untrack(key)
            await self._forget_provider(key)
        return removed

    async def _register_from_discovery(self, registration: ProviderRegistration) -> str:
        _, outcome = await self._admit(registration)
        return outcome

    async def _admit(self, registration: ProviderRegistration) -> tuple[Provider, str]:
        provider, outcome = self._registry.register(registration)
        if outcome == RegistrationOutcome.UNCHANGED:
            return provider, outcome
        await self._probe.probe(provider)
        if outcome == RegistrationOutcome.CREATED:
            await self._health.check_now(provider.id)
        self._health.track(provider.id)
        return self._registry.get(provider.id) or provider, outcome

    async def _forget_provider(self, provider_id: str) -> None:
        await self._pool.release(provider_id)
        self._preferences.forget_provider(provider_id)

    # -- status ------------------------------------------------------------------

    def list_providers(self) -> list[Provider]:
        return list(self._registry.snapshot())

    def recall_plan(self, task_id: str) -> RoutingPlan:
        return self._record(task_id).current

    def explain_routing(self, task_id: str) -> str:
        record = self._record(task_id)
        rationale = record.current.rationale
        if len(record.plans) > 1:
            rationale = f"{rationale} (re-routed {len(record.plans) - 1} time(s))"
        return rationale

    def record_user_override(self, task_id: str, chosen_provider_id: str) -> float:
        record = self._record(task_id)
        chosen = self._registry.require(chosen_provider_id).id
        return self._preferences.record_override(record.task.task_type, chosen, record.current.primary)

    def _record(self, task_id: str) -> PlanRecord:
        record = self._plans.get(task_id)
        if record is None:
            raise UnknownTaskError(f"No routing plan is known for task '{task_id}'")
        return record

    # -- tasks -------------------------------------------------------------------

    async def submit_task(self, task: Task, workspace: WorkspaceSnapshot = EMPTY_WORKSPACE) -> IntegratedResult:
        started = time.perf_counter()
        if task.deadline is None:
            task = task.with_deadline(
                datetime.now(timezone.utc) + timedelta(seconds=self._settings.execution.default_timeout_seconds)
            )
        try:
            result = await self._serve(task, workspace)
        except TaskCancelledError:
            self._observe_outcome(task, "cancelled", started)
            raise
        except NoCapableProviderError:
            self._observe_outcome(task, "no_capable_provider", started)
            raise
        except AllProvidersFailedError:
            self._observe_outcome(task, "all_failed", started)
            raise
        self._observe_outcome(task, "degraded" if result.degraded else "success", started)
        return result

    async def _serve(self, task: Task, workspace: WorkspaceSnapshot) -> IntegratedResult:
        plan = self._route(task)
        plan = await self._confirm_primary(task, plan)

        outcome = ExecutionOutcome(task_id=task.id)
        reroutes = 0
        while True:
            attempt = await self._executor.execute(task, plan, workspace)
            self._executor.commit(attempt)
            outcome.merge(attempt)
            await self._reevaluate(attempt.attempted)
            if attempt.successes:
                break
            if not attempt.capability_unavailable or reroutes >= self._settings.execution.max_reroutes:
                break
            reroutes += 1
            logger.info("task_rerouting", task_id=task.id, excluded=list(outcome.attempted), reroute=reroutes)
            try:
                plan = self._route(task, exclude=outcome.attempted)
            except NoCapableProviderError:
                break

        if not outcome.successes:
            raise AllProvidersFailedError(
                f"All {len(outcome.attempted)} attempted provider(s) failed for task '{task.id}'",
                failures=outcome.failures,
            )

        resolution = await self._resolver.resolve(plan, outcome.successes)
        producers = sorted({response.provider_id for response in outcome.successes}, key=plan.rank_of)
        metadata: dict[str, Any] = {
            "attempted": list(outcome.attempted),
            "failures": outcome.failures,
            "reroutes": reroutes,
        }
        if resolution.note:
            metadata["resolution_note"] = resolution.note
        return IntegratedResult(
            task_id=task.id,
            payload=resolution.base.payload,
            primary_provider_id=resolution.base.provider_id,
            provider_ids=tuple(producers),
            resolution=resolution.strategy,
            degraded=plan.degraded,
            alternatives=resolution.alternatives,
            requires_confirmation=resolution.requires_confirmation,
            responses=tuple(outcome.responses),
            plan=plan,
            metadata=metadata,
        )

    def _route(self, task: Task, *, exclude: Iterable[str] = ()) -> RoutingPlan:
        snapshot = self._registry.snapshot()
        try:
            plan = self._router.route(task, snapshot, self._preferences.view(), exclude=exclude)
        except NoCapableProviderError as exc:
            if exc.plan is not None:
                self._remember(task, exc.plan)
            raise
        self._remember(task, plan)
        return plan

    async def _confirm_primary(self, task: Task, plan: RoutingPlan) -> RoutingPlan:
        """On-demand health check of the primary before a time-sensitive task."""
        remaining = task.remaining_seconds()
        threshold = self._settings.routing.time_sensitive_threshold_seconds
        if plan.primary is None or remaining is None or remaining >= threshold:
            return plan
        try:
            await self._health.check_now(
                plan.primary,
                timeout=min(self._settings.execution.on_demand_check_timeout_seconds, max(remaining, 0.001)),
            )
        except ProviderNotFoundError:
            pass
        current = self._registry.get(plan.primary)
        if current is not None and current.routable and current.consecutive_failures == 0:
            return plan
        logger.info("primary_failed_on_demand_check", task_id=task.id, provider=plan.primary)
        return self._route(task, exclude=(plan.primary,))

    async def _reevaluate(self, provider_ids: Sequence[str]) -> None:
        for provider_id in provider_ids:
            await self._health.reevaluate_performance(provider_id)

    def _remember(self, task: Task, plan: RoutingPlan) -> None:
        record = self._plans.get(task.id)
        if record is None:
            record = PlanRecord(task=task)
            self._plans[task.id] = record
        else:
            self._plans.move_to_end(task.id)
        record.plans.append(plan)
        while len(self._plans) > self._settings.execution.plan_history_size:
            self._plans.popitem(last=False)

    @staticmethod
    def _observe_outcome(task: Task, outcome: str, started: float) -> None:
        latency = time.perf_counter() - started
        metrics.record_task_outcome(task_type=task.task_type, outcome=outcome, latency=latency)
        logger.info("task_completed", task_id=task.id, task_type=task.task_type, outcome=outcome, latency=latency)


__all__ = ["Orchestrator", "PlanRecord"]
