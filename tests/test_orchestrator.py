from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from toolweave import Orchestrator
from toolweave.exceptions import (
    AllProvidersFailedError,
    CapabilityUnavailableError,
    NoCapableProviderError,
    ProviderInvocationError,
    ProviderNotFoundError,
    TaskCancelledError,
    UnknownTaskError,
)
from toolweave.schemas.enums import HealthState, ResolutionStrategy, TransportKind
from toolweave.schemas.providers import ProviderRegistration
from toolweave.schemas.tasks import Task

from tests.helpers.stubs import FakeConnector, FakeConnectorFactory, fast_settings


async def _orchestrator(*connectors: FakeConnector, **sections) -> Orchestrator:
    factory = FakeConnectorFactory(connectors)
    orchestrator = Orchestrator(fast_settings(**sections), connector_factory=factory)
    for connector in connectors:
        await orchestrator.register_provider(
            connector.provider_id,
            TransportKind.DIRECT_NETWORK,
            {"base_url": f"http://{connector.provider_id}.invalid"},
            declared_capabilities=connector.operations or (),
        )
    return orchestrator


def _connector(provider_id: str, *capabilities: str, **kwargs) -> FakeConnector:
    return FakeConnector(provider_id, operations=frozenset(capabilities), **kwargs)


@pytest.mark.asyncio
async def test_registration_probes_and_checks_new_provider() -> None:
    orchestrator = await _orchestrator(_connector("a", "completion"))

    provider = orchestrator.registry.require("a")
    assert provider.health is HealthState.HEALTHY
    assert provider.probed_capabilities == frozenset({"completion"})


@pytest.mark.asyncio
async def test_malformed_listing_still_admits_provider() -> None:
    connector = FakeConnector("a", operations=ValueError("Expecting value: line 1 column 1"))
    orchestrator = Orchestrator(fast_settings(), connector_factory=FakeConnectorFactory([connector]))

    await orchestrator.register_provider(
        "a",
        TransportKind.DIRECT_NETWORK,
        {"base_url": "http://a.invalid"},
        declared_capabilities=("completion",),
    )

    provider = orchestrator.registry.require("a")
    assert provider.health is HealthState.HEALTHY
    assert provider.probed_capabilities == frozenset()
    assert connector.health_checks == 1


@pytest.mark.asyncio
async def test_completion_task_is_served_by_best_provider() -> None:
    orchestrator = await _orchestrator(_connector("a", "completion"), _connector("b", "completion", "planning"))

    result = await orchestrator.submit_task(Task.create("completion", "finish this line"))

    assert result.primary_provider_id == "a"
    assert result.payload == {"provider": "a"}
    assert result.resolution is ResolutionStrategy.SINGLE
    assert result.degraded is False
    assert orchestrator.registry.require("a").performance.samples == 1


@pytest.mark.asyncio
async def test_naive_deadline_is_read_as_utc() -> None:
    orchestrator = await _orchestrator(_connector("a", "completion"))
    naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=60)
    task = Task.create("completion", "finish this line", deadline=naive)

    result = await orchestrator.submit_task(task)

    assert task.deadline.tzinfo is timezone.utc
    assert 0 < task.remaining_seconds() <= 60
    assert result.primary_provider_id == "a"


@pytest.mark.asyncio
async def test_divergent_supporting_answer_becomes_alternative() -> None:
    orchestrator = await _orchestrator(
        _connector("a", "analysis", payload="the loop is quadratic"),
        _connector("b", "analysis", payload={"finding": "missing index on users.email"}),
    )

    result = await orchestrator.submit_task(Task.create("analysis", "why is this slow"))

    assert result.payload == "the loop is quadratic"
    assert result.primary_provider_id == "a"
    assert [item.provider_id for item in result.alternatives] == ["b"]
    assert result.provider_ids == ("a", "b")
    for provider_id in ("a", "b"):
        record = orchestrator.registry.require(provider_id).performance
        assert record.samples == 1 and record.successes == 1


@pytest.mark.asyncio
async def test_cancelled_task_leaves_no_performance_trace() -> None:
    primary = _connector("a", "analysis", gate=asyncio.Event())
    supporting = _connector("b", "analysis")
    orchestrator = await _orchestrator(primary, supporting)
    task = Task.create("analysis", "long running")

    running = asyncio.create_task(orchestrator.submit_task(task))
    await asyncio.wait_for(primary.started.wait(), 1.0)
    task.cancellation.cancel("user closed the panel")

    with pytest.raises(TaskCancelledError):
        await running

    assert orchestrator.registry.require("a").performance.samples == 0
    assert orchestrator.registry.require("b").performance.samples == 0


@pytest.mark.asyncio
async def test_all_failures_are_reported_per_provider() -> None:
    orchestrator = await _orchestrator(
        _connector("a", "completion", errors=[ProviderInvocationError("model overloaded")]),
        _connector("b", "completion", errors=[ProviderInvocationError("bad prompt")]),
    )

    with pytest.raises(AllProvidersFailedError) as excinfo:
        await orchestrator.submit_task(Task.create("completion", "x"))

    failures = excinfo.value.failures
    assert set(failures) == {"a", "b"}
    assert "model overloaded" in failures["a"][0]


@pytest.mark.asyncio
async def test_unservable_task_remembers_empty_plan() -> None:
    orchestrator = await _orchestrator(_connector("a", "completion"))
    task = Task.create("security-scan", "scan")

    with pytest.raises(NoCapableProviderError):
        await orchestrator.submit_task(task)

    plan = orchestrator.recall_plan(task.id)
    assert plan.primary is None
    assert "no provider offers" in orchestrator.explain_routing(task.id)


@pytest.mark.asyncio
async def test_capability_class_failure_triggers_full_reroute() -> None:
    orchestrator = await _orchestrator(
        _connector("a", "completion", errors=[CapabilityUnavailableError("completion removed")]),
        _connector("b", "completion"),
    )
    task = Task.create("completion", "x")

    result = await orchestrator.submit_task(task)

    assert result.primary_provider_id == "b"
    assert result.metadata["reroutes"] == 1
    assert "re-routed 1 time(s)" in orchestrator.explain_routing(task.id)


@pytest.mark.asyncio
async def test_time_sensitive_task_checks_primary_before_dispatch() -> None:
    primary = _connector("a", "completion")
    orchestrator = await _orchestrator(primary, _connector("b", "completion"))
    primary.healthy = False

    result = await orchestrator.submit_task(Task.create("completion", "x", timeout_seconds=1.0))

    assert result.primary_provider_id == "b"
    assert primary.invocations == []
    assert orchestrator.registry.require("a").consecutive_failures == 1


@pytest.mark.asyncio
async def test_routing_explanation_and_user_override() -> None:
    orchestrator = await _orchestrator(_connector("a", "completion"), _connector("b", "completion"))
    task = Task.create("completion", "x")
    await orchestrator.submit_task(task)

    assert "primary a" in orchestrator.explain_routing(task.id)

    weight = orchestrator.record_user_override(task.id, "B")

    assert weight == pytest.approx(0.7)
    assert orchestrator.preferences.weight("completion", "a") == pytest.approx(0.3)
    with pytest.raises(UnknownTaskError):
        orchestrator.explain_routing("missing")
    with pytest.raises(ProviderNotFoundError):
        orchestrator.record_user_override(task.id, "nobody")


@pytest.mark.asyncio
async def test_deregistration_releases_connector_and_preferences() -> None:
    connector = _connector("a", "completion")
    orchestrator = await _orchestrator(connector)
    orchestrator.preferences.set_weight("completion", "a", 0.9)

    assert await orchestrator.deregister_provider("A") is True
    assert await orchestrator.deregister_provider("a") is False
    assert connector.disconnects == 1
    assert orchestrator.preferences.as_dict() == {}
    assert orchestrator.list_providers() == []


@pytest.mark.asyncio
async def test_discovery_cycle_registers_and_removes_providers() -> None:
    factory = FakeConnectorFactory([_connector("found", "documentation")])
    orchestrator = Orchestrator(
        fast_settings(discovery={"deregister_missing": True}),
        connector_factory=factory,
    )
    advertised = [
        ProviderRegistration(
            id="Found",
            transport=TransportKind.DIRECT_NETWORK,
            config={"base_url": "http://found.invalid"},
            declared_capabilities=frozenset({"documentation"}),
        )
    ]

    async def local_manifest():
        return list(advertised)

    orchestrator.discovery.add_source(local_manifest)

    first = await orchestrator.discovery.run_cycle()
    assert first.created == ("found",)
    assert orchestrator.registry.require("found").health is HealthState.HEALTHY

    second = await orchestrator.discovery.run_cycle()
    assert second.unchanged == ("found",)

    advertised.clear()
    third = await orchestrator.discovery.run_cycle()
    assert third.removed == ("found",)
    assert "found" not in orchestrator.registry


@pytest.mark.asyncio
async def test_blank_discovered_id_does_not_abort_the_cycle() -> None:
    orchestrator = Orchestrator(
        fast_settings(),
        connector_factory=FakeConnectorFactory([_connector("found", "documentation")]),
    )

    async def local_manifest():
        return [
            ProviderRegistration(id="  ", transport=TransportKind.DIRECT_NETWORK),
            ProviderRegistration(
                id="found",
                transport=TransportKind.DIRECT_NETWORK,
                config={"base_url": "http://found.invalid"},
                declared_capabilities=frozenset({"documentation"}),
            ),
        ]

    orchestrator.discovery.add_source(local_manifest)

    report = await orchestrator.discovery.run_cycle()

    assert report.created == ("found",)
    assert report.failed_sources == ()
    assert [provider.id for provider in orchestrator.list_providers()] == ["found"]
