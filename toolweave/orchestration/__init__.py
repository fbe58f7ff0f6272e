from .conflict import (
    ConflictResolver,
    ConflictStrategy,
    PreferRankedStrategy,
    RequireConfirmationStrategy,
    Resolution,
    build_strategy,
    payload_similarity,
)
from .core import Orchestrator, PlanRecord
from .executor import ExecutionOutcome, PlanExecutor
from .preferences import PreferenceStore, PreferenceView
from .routing import AdaptiveTaskRouter, CandidateScore

__all__ = [
    "AdaptiveTaskRouter",
    "CandidateScore",
    "ConflictResolver",
    "ConflictStrategy",
    "ExecutionOutcome",
    "Orchestrator",
    "PlanExecutor",
    "PlanRecord",
    "PreferRankedStrategy",
    "PreferenceStore",
    "PreferenceView",
    "RequireConfirmationStrategy",
    "Resolution",
    "build_strategy",
    "payload_similarity",
]
