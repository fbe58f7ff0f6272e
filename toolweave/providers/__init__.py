from .discovery import DiscoveryReport, DiscoveryService, DiscoverySource
from .health import CheckOutcome, HealthDecision, HealthMonitor, evaluate_check
from .probe import CapabilityProbe, ProbeResult
from .registry import ProviderRegistry, RegistrationOutcome, RegistrySnapshot, normalize_provider_id

__all__ = [
    "CapabilityProbe",
    "CheckOutcome",
    "DiscoveryReport",
    "DiscoveryService",
    "DiscoverySource",
    "HealthDecision",
    "HealthMonitor",
    "ProbeResult",
    "ProviderRegistry",
    "RegistrationOutcome",
    "RegistrySnapshot",
    "evaluate_check",
    "normalize_provider_id",
]
