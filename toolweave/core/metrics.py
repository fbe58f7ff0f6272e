from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

PROVIDER_INVOCATIONS_TOTAL = Counter(
    "toolweave_provider_invocations_total",
    "Provider invocation attempts grouped by transport and outcome",
    labelnames=("provider", "transport", "outcome"),
)

PROVIDER_INVOCATION_LATENCY_SECONDS = Histogram(
    "toolweave_provider_invocation_latency_seconds",
    "Latency of individual provider invocations",
    labelnames=("provider",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

PROVIDER_RETRIES_TOTAL = Counter(
    "toolweave_provider_retries_total",
    "Retries issued against a provider grouped by error kind",
    labelnames=("provider", "error_kind"),
)

HEALTH_CHECKS_TOTAL = Counter(
    "toolweave_health_checks_total",
    "Health checks grouped by result",
    labelnames=("provider", "result"),
)

HEALTH_TRANSITIONS_TOTAL = Counter(
    "toolweave_health_transitions_total",
    "Health state machine transitions",
    labelnames=("source", "target"),
)

PROVIDER_HEALTH_STATE = Gauge(
    "toolweave_provider_health_state",
    "Current health state per provider (1 for the active state)",
    labelnames=("provider", "state"),
)

PROBE_RUNS_TOTAL = Counter(
    "toolweave_probe_runs_total",
    "Capability probe runs grouped by method and outcome",
    labelnames=("method", "outcome"),
)

PROBED_CAPABILITIES = Gauge(
    "toolweave_probed_capabilities",
    "Number of capabilities confirmed by the last probe",
    labelnames=("provider",),
)

ROUTING_DECISIONS_TOTAL = Counter(
    "toolweave_routing_decisions_total",
    "Routing plans produced grouped by task type and degraded flag",
    labelnames=("task_type", "degraded"),
)

ROUTING_FAILURES_TOTAL = Counter(
    "toolweave_routing_failures_total",
    "Tasks for which no capable provider existed",
    labelnames=("task_type",),
)

CONFLICTS_TOTAL = Counter(
    "toolweave_conflicts_total",
    "Conflict sets resolved grouped by strategy tag",
    labelnames=("strategy",),
)

TASK_OUTCOMES_TOTAL = Counter(
    "toolweave_task_outcomes_total",
    "Submitted task outcomes",
    labelnames=("task_type", "outcome"),
)

TASK_LATENCY_SECONDS = Histogram(
    "toolweave_task_latency_seconds",
    "End-to-end task latency",
    labelnames=("task_type",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

REGISTERED_PROVIDERS = Gauge(
    "toolweave_registered_providers",
    "Providers currently held by the registry",
)


def record_provider_invocation(*, provider: str, transport: str, outcome: str, latency: float | None) -> None:
    PROVIDER_INVOCATIONS_TOTAL.labels(provider=provider, transport=transport, outcome=outcome).inc()
    if latency is not None:
        PROVIDER_INVOCATION_LATENCY_SECONDS.labels(provider=provider).observe(max(0.0, latency))


def increment_provider_retry(*, provider: str, error_kind: str) -> None:
    PROVIDER_RETRIES_TOTAL.labels(provider=provider, error_kind=error_kind).inc()


def record_health_check(*, provider: str, result: str) -> None:
    HEALTH_CHECKS_TOTAL.labels(provider=provider, result=result).inc()


def record_health_transition(*, provider: str, source: str, target: str, states: tuple[str, ...]) -> None:
    HEALTH_TRANSITIONS_TOTAL.labels(source=source, target=target).inc()
    for state in states:
        PROVIDER_HEALTH_STATE.labels(provider=provider, state=state).set(1 if state == target else 0)


def record_probe(*, provider: str, method: str, outcome: str, capability_count: int) -> None:
    PROBE_RUNS_TOTAL.labels(method=method, outcome=outcome).inc()
    PROBED_CAPABILITIES.labels(provider=provider).set(capability_count)


def record_routing_decision(*, task_type: str, degraded: bool) -> None:
    ROUTING_DECISIONS_TOTAL.labels(task_type=task_type, degraded=str(degraded).lower()).inc()


def record_routing_failure(*, task_type: str) -> None:
    ROUTING_FAILURES_TOTAL.labels(task_type=task_type).inc()


def record_conflict(*, strategy: str) -> None:
    CONFLICTS_TOTAL.labels(strategy=strategy).inc()


def record_task_outcome(*, task_type: str, outcome: str, latency: float) -> None:
    TASK_OUTCOMES_TOTAL.labels(task_type=task_type, outcome=outcome).inc()
    TASK_LATENCY_SECONDS.labels(task_type=task_type).observe(max(0.0, latency))


def set_registered_providers(count: int) -> None:
    REGISTERED_PROVIDERS.set(max(0, count))
