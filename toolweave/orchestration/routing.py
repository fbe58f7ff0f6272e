from __future__ import annotations

import math
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from ..core import metrics
from ..core.config import RoutingSettings
from ..core.logging import get_logger
from ..exceptions import NoCapableProviderError
from ..providers.registry import RegistrySnapshot
from ..schemas.enums import HealthState
from ..schemas.providers import PerformanceRecord, Provider, normalize_capabilities
from ..schemas.routing import RoutingPlan
from ..schemas.tasks import Task
from .preferences import PreferenceView

logger = get_logger(name=__name__)

_UNKNOWN_LATENCY_SCORE = 0.5
_SCORE_PRECISION = 9


@dataclass(frozen=True, slots=True)
class CandidateScore:
    provider_id: str
    fit: float
    preference: float
    performance: float
    health: float
    total: float
    latency: float | None
    exclusive: bool

    def sort_key(self) -> tuple[float, float, str]:
        latency = self.latency if self.latency is not None else math.inf
        return (-self.total, latency, self.provider_id)

    def describe(self) -> str:
        return (
            f"{self.provider_id}={self.total:.3f}"
            f" (fit {self.fit:.2f}, pref {self.preference:.2f},"
            f" perf {self.performance:.2f}, health {self.health:.2f})"
        )


class AdaptiveTaskRouter:
    """Deterministic weighted scoring over one registry snapshot.

    The router only reads: it never mutates providers, and given the same
    snapshot, preferences, and performance history it returns the same plan.
    """

    def __init__(self, settings: RoutingSettings) -> None:
        self._settings = settings
        self._generic = normalize_capabilities(settings.generic_capabilities)
        self._parallel_types = normalize_capabilities(settings.parallel_task_types)

    def route(
        self,
        task: Task,
        snapshot: RegistrySnapshot,
        preferences: PreferenceView,
        performance: Mapping[str, PerformanceRecord] | None = None,
        *,
        exclude: Iterable[str] = (),
    ) -> RoutingPlan:
        excluded = frozenset(exclude)
        routable = [
            provider
            for provider in snapshot
            if provider.health in (HealthState.HEALTHY, HealthState.DEGRADED) and provider.id not in excluded
        ]
        candidates = [provider for provider in routable if provider.covers(task.required_capabilities)]
        degraded = False
        if not candidates:
            candidates = [provider for provider in routable if provider.probed_capabilities & self._generic]
            degraded = True

        if not candidates:
            plan = RoutingPlan(
                task_id=task.id,
                primary=None,
                rationale=(
                    f"no provider offers {sorted(task.required_capabilities)} or a generic fallback"
                    f" among {len(routable)} routable provider(s)"
                ),
                degraded=True,
                snapshot_version=snapshot.version,
            )
            metrics.record_routing_failure(task_type=task.task_type)
            logger.warning(
                "routing_no_capable_provider",
                task_id=task.id,
                task_type=task.task_type,
                required=sorted(task.required_capabilities),
                snapshot_version=snapshot.version,
            )
            raise NoCapableProviderError(
                f"No provider can serve task '{task.id}' ({task.task_type})",
                plan=plan,
            )

        scored = self._score(task, candidates, preferences, performance or {}, degraded=degraded)
        ranked = sorted(scored, key=CandidateScore.sort_key)
        primary, rest = ranked[0], ranked[1:]

        supporting: list[str] = []
        fallback: list[str] = []
        budget = self._settings.max_parallelism - 1 if self._parallel_worthy(task, primary) else 0
        for candidate in rest:
            if budget > 0 and not candidate.exclusive:
                supporting.append(candidate.provider_id)
                budget -= 1
            else:
                fallback.append(candidate.provider_id)

        plan = RoutingPlan(
            task_id=task.id,
            primary=primary.provider_id,
            supporting=tuple(supporting),
            fallback=tuple(fallback),
            rationale=self._rationale(task, ranked, degraded),
            degraded=degraded,
            scores=MappingProxyType({item.provider_id: item.total for item in ranked}),
            snapshot_version=snapshot.version,
        )
        metrics.record_routing_decision(task_type=task.task_type, degraded=degraded)
        logger.info(
            "routing_plan_built",
            task_id=task.id,
            task_type=task.task_type,
            primary=plan.primary,
            supporting=list(plan.supporting),
            fallback=list(plan.fallback),
            degraded=degraded,
            snapshot_version=snapshot.version,
        )
        return plan

    def _parallel_worthy(self, task: Task, primary: CandidateScore) -> bool:
        return task.task_type in self._parallel_types and not primary.exclusive

    def _score(
        self,
        task: Task,
        candidates: list[Provider],
        preferences: PreferenceView,
        performance: Mapping[str, PerformanceRecord],
        *,
        degraded: bool,
    ) -> list[CandidateScore]:
        settings = self._settings
        records = {provider.id: performance.get(provider.id, provider.performance) for provider in candidates}
        latencies = [record.latency_seconds for record in records.values() if record.latency_seconds is not None]
        fastest = min(latencies) if latencies else None

        scores: list[CandidateScore] = []
        for provider in candidates:
            record = records[provider.id]
            if degraded:
                fit = settings.generic_fit
            elif task.task_type in provider.probed_capabilities:
                fit = settings.exact_match_fit
            else:
                fit = settings.covered_fit
            preference = preferences.weight(task.task_type, provider.id)
            perf = self._performance_component(record, fastest)
            health = settings.healthy_bonus if provider.health is HealthState.HEALTHY else settings.degraded_bonus
            total = (
                settings.capability_weight * fit
                + settings.preference_weight * preference
                + settings.performance_weight * perf
                + settings.health_weight * health
            )
            scores.append(
                CandidateScore(
                    provider_id=provider.id,
                    fit=fit,
                    preference=preference,
                    performance=perf,
                    health=health,
                    total=round(total, _SCORE_PRECISION),
                    latency=record.latency_seconds,
                    exclusive=provider.exclusive,
                )
            )
        return scores

    def _performance_component(self, record: PerformanceRecord, fastest: float | None) -> float:
        share = self._settings.success_rate_share
        if record.latency_seconds is None or fastest is None:
            latency_score = _UNKNOWN_LATENCY_SCORE
        elif record.latency_seconds <= 0:
            latency_score = 1.0
        else:
            latency_score = fastest / record.latency_seconds
        return share * record.success_rate + (1.0 - share) * latency_score

    @staticmethod
    def _rationale(task: Task, ranked: list[CandidateScore], degraded: bool) -> str:
        head = (
            f"degraded: no provider covers {sorted(task.required_capabilities)}; using generic fallback"
            if degraded
            else f"{len(ranked)} provider(s) cover {sorted(task.required_capabilities)}"
        )
        ordering = "; ".join(item.describe() for item in ranked)
        return f"{head}. primary {ranked[0].provider_id}. ranking: {ordering}"


__all__ = ["AdaptiveTaskRouter", "CandidateScore"]
