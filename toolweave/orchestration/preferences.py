from __future__ import annotations

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from ..core.config import PreferenceSettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class PreferenceView:
    """Frozen copy of the preference weights handed to the router for one decision."""

    weights: Mapping[tuple[str, str], float]
    default_weight: float

    def weight(self, task_type: str, provider_id: str) -> float:
        return self.weights.get((task_type, provider_id), self.default_weight)


class PreferenceStore:
    """User/team preference weight per (task type, provider), in ``[minimum, maximum]``."""

    def __init__(self, settings: PreferenceSettings) -> None:
        self._settings = settings
        self._weights: dict[tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def weight(self, task_type: str, provider_id: str) -> float:
        with self._lock:
            return self._weights.get((task_type, provider_id), self._settings.default_weight)

    def set_weight(self, task_type: str, provider_id: str, weight: float) -> float:
        bounded = self._clamp(weight)
        with self._lock:
            self._weights[(task_type, provider_id)] = bounded
        return bounded

    def record_override(self, task_type: str, chosen_provider_id: str, replaced_provider_id: str | None) -> float:
        """Shift weight toward the provider the user picked and away from the one they rejected."""
        step = self._settings.override_step
        with self._lock:
            key = (task_type, chosen_provider_id)
            chosen = self._clamp(self._weights.get(key, self._settings.default_weight) + step)
            self._weights[key] = chosen
            if replaced_provider_id and replaced_provider_id != chosen_provider_id:
                other = (task_type, replaced_provider_id)
                self._weights[other] = self._clamp(self._weights.get(other, self._settings.default_weight) - step)
        logger.info(
            "preference_override_recorded",
            task_type=task_type,
            chosen=chosen_provider_id,
            replaced=replaced_provider_id,
            weight=round(chosen, 4),
        )
        return chosen

    def forget_provider(self, provider_id: str) -> None:
        with self._lock:
            for key in [key for key in self._weights if key[1] == provider_id]:
                del self._weights[key]

    def view(self) -> PreferenceView:
        with self._lock:
            return PreferenceView(
                weights=MappingProxyType(dict(self._weights)),
                default_weight=self._settings.default_weight,
            )

    def as_dict(self) -> dict[str, dict[str, float]]:
        result: dict[str, dict[str, float]] = {}
        with self._lock:
            for (task_type, provider_id), weight in sorted(self._weights.items()):
                result.setdefault(task_type, {})[provider_id] = round(weight, 4)
        return result

    def _clamp(self, value: float) -> float:
        return max(self._settings.minimum, min(self._settings.maximum, value))


__all__ = ["PreferenceStore", "PreferenceView"]
