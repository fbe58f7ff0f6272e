from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from difflib import SequenceMatcher
from types import MappingProxyType
from typing import Any

from ..core import metrics
from ..core.config import ConflictSettings
from ..core.logging import get_logger
from ..exceptions import ConflictResolutionError
from ..schemas.enums import ResolutionStrategy
from ..schemas.routing import Alternative, ConflictSet, RoutingPlan, ToolResponse

logger = get_logger(name=__name__)

ConfirmCallback = Callable[[ConflictSet, RoutingPlan], Awaitable[str | None]]


def canonical_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload.strip()
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def payload_similarity(left: Any, right: Any) -> float:
    a, b = canonical_payload(left), canonical_payload(right)
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b, autojunk=False).ratio()


@dataclass(slots=True)
class Resolution:
    base: ToolResponse
    strategy: ResolutionStrategy
    alternatives: tuple[Alternative, ...] = ()
    requires_confirmation: bool = False
    note: str | None = None


class ConflictStrategy:
    name = "base"

    async def resolve(self, conflict: ConflictSet, plan: RoutingPlan) -> Resolution:
        raise NotImplementedError


def _alternatives(conflict: ConflictSet, base: ToolResponse) -> tuple[Alternative, ...]:
    return tuple(
        Alternative(
            provider_id=response.provider_id,
            payload=response.payload,
            similarity=payload_similarity(base.payload, response.payload),
        )
        for response in conflict.responses
        if response.provider_id != base.provider_id
    )


class PreferRankedStrategy(ConflictStrategy):
    """Highest-ranked provider's payload wins; the others ride along as alternatives."""

    name = "prefer_ranked"

    async def resolve(self, conflict: ConflictSet, plan: RoutingPlan) -> Resolution:
        base = min(conflict.responses, key=lambda item: plan.rank_of(item.provider_id))
        return Resolution(
            base=base,
            strategy=ResolutionStrategy.PREFER_RANKED,
            alternatives=_alternatives(conflict, base),
        )


class RequireConfirmationStrategy(ConflictStrategy):
    """Strict integration: strongly divergent payloads need an explicit pick.

    Below ``confirmation_threshold`` the ``confirm`` callback chooses the base
    provider. Without a callback the ranked payload is returned provisionally
    and the result is flagged ``requires_confirmation``.
    """

    name = "require_confirmation"

    def __init__(self, *, confirmation_threshold: float, confirm: ConfirmCallback | None = None) -> None:
        self.confirmation_threshold = confirmation_threshold
        self._confirm = confirm
        self._fallback = PreferRankedStrategy()

    async def resolve(self, conflict: ConflictSet, plan: RoutingPlan) -> Resolution:
        ranked = await self._fallback.resolve(conflict, plan)
        lowest = min(conflict.similarity.values(), default=1.0)
        if lowest >= self.confirmation_threshold:
            return ranked
        if self._confirm is None:
            return Resolution(
                base=ranked.base,
                strategy=ResolutionStrategy.PENDING_CONFIRMATION,
                alternatives=ranked.alternatives,
                requires_confirmation=True,
                note=f"similarity {lowest:.2f} below {self.confirmation_threshold:.2f}",
            )
        chosen = await self._confirm(conflict, plan)
        if chosen is None:
            return Resolution(
                base=ranked.base,
                strategy=ResolutionStrategy.PENDING_CONFIRMATION,
                alternatives=ranked.alternatives,
                requires_confirmation=True,
                note="confirmation declined",
            )
        for response in conflict.responses:
            if response.provider_id == chosen:
                return Resolution(
                    base=response,
                    strategy=ResolutionStrategy.CONFIRMED,
                    alternatives=_alternatives(conflict, response),
                )
        raise ConflictResolutionError(
            f"Confirmed provider '{chosen}' did not produce a response for task '{conflict.task_id}'"
        )


def build_strategy(settings: ConflictSettings, *, confirm: ConfirmCallback | None = None) -> ConflictStrategy:
    if settings.strategy == "require_confirmation":
        return RequireConfirmationStrategy(confirmation_threshold=settings.confirmation_threshold, confirm=confirm)
    return PreferRankedStrategy()


class ConflictResolver:
    """Turns the successful responses for one task into a single integration decision."""

    def __init__(self, settings: ConflictSettings, strategy: ConflictStrategy | None = None) -> None:
        self._settings = settings
        self._strategy = strategy or build_strategy(settings)

    @property
    def strategy(self) -> ConflictStrategy:
        return self._strategy

    async def resolve(self, plan: RoutingPlan, successes: Sequence[ToolResponse]) -> Resolution:
        if not successes:
            raise ConflictResolutionError(f"No successful responses to integrate for task '{plan.task_id}'")
        ordered = sorted(successes, key=lambda item: plan.rank_of(item.provider_id))
        base = ordered[0]
        if len(ordered) == 1:
            return Resolution(base=base, strategy=ResolutionStrategy.SINGLE)

        similarity = {
            response.provider_id: payload_similarity(base.payload, response.payload) for response in ordered[1:]
        }
        if min(similarity.values()) >= self._settings.similarity_threshold:
            logger.debug("conflict_consensus", task_id=plan.task_id, similarity=similarity)
            return Resolution(base=base, strategy=ResolutionStrategy.CONSENSUS)

        conflict = ConflictSet(
            task_id=plan.task_id,
            responses=tuple(ordered),
            similarity=MappingProxyType(similarity),
        )
        resolution = await self._strategy.resolve(conflict, plan)
        metrics.record_conflict(strategy=resolution.strategy.value)
        logger.info(
            "conflict_resolved",
            task_id=plan.task_id,
            providers=list(conflict.provider_ids),
            base=resolution.base.provider_id,
            strategy=resolution.strategy.value,
            similarity={key: round(value, 4) for key, value in similarity.items()},
            requires_confirmation=resolution.requires_confirmation,
        )
        return resolution


__all__ = [
    "ConflictResolver",
    "ConflictStrategy",
    "PreferRankedStrategy",
    "RequireConfirmationStrategy",
    "Resolution",
    "build_strategy",
    "canonical_payload",
    "payload_similarity",
]
