from __future__ import annotations

import asyncio

import pytest

from toolweave.connectors import ConnectorPool
from toolweave.core import metrics
from toolweave.core.config import ProbeSettings
from toolweave.exceptions import ProviderConnectionError, ProviderInvocationError, UnsupportedOperationError
from toolweave.providers.probe import CapabilityProbe
from toolweave.providers.registry import ProviderRegistry
from toolweave.schemas.enums import HealthState
from toolweave.schemas.routing import ToolResponse

from tests.helpers.stubs import FakeConnector, FakeConnectorFactory, seed_provider


class _SlowListing(FakeConnector):
    async def list_operations(self) -> frozenset[str] | None:
        await asyncio.sleep(1.0)
        return frozenset({"completion"})


class _CanaryConnector(FakeConnector):
    """Answers canaries only for the capabilities in ``works``."""

    def __init__(self, provider_id: str, works: set[str], slow: set[str] = frozenset()) -> None:
        super().__init__(provider_id, operations=None)
        self.works = works
        self.slow = slow

    async def invoke(self, task, workspace) -> ToolResponse:
        self.invocations.append(task)
        if task.task_type in self.slow:
            await asyncio.sleep(1.0)
        if task.task_type not in self.works:
            raise UnsupportedOperationError(f"{task.task_type} not supported")
        return ToolResponse.ok(provider_id=self.provider_id, task_id=task.id, payload="ack")


def _setup(connector: FakeConnector, declared: set[str], **settings) -> tuple[ProviderRegistry, CapabilityProbe]:
    registry = ProviderRegistry()
    seed_provider(registry, connector.provider_id, declared)
    registry.set_probed_capabilities(connector.provider_id, ())
    pool = ConnectorPool(FakeConnectorFactory([connector]))
    return registry, CapabilityProbe(registry, pool, ProbeSettings(**{"latency_budget_seconds": 0.2, **settings}))


@pytest.mark.asyncio
async def test_listing_call_defines_capabilities(monkeypatch) -> None:
    recorded = []
    monkeypatch.setattr(metrics, "record_probe", lambda **kwargs: recorded.append(kwargs))
    connector = FakeConnector("svc", operations=frozenset({"completion", "analysis"}))
    registry, probe = _setup(connector, {"completion", "deployment"})

    result = await probe.probe(registry.require("svc"))

    assert result.method == "listing"
    assert result.outcome == "confirmed"
    provider = registry.require("svc")
    assert provider.probed_capabilities == frozenset({"completion", "analysis"})
    assert provider.declared_capabilities == frozenset({"completion", "deployment"})
    assert provider.last_probed_at is not None
    assert recorded and recorded[-1]["capability_count"] == 2


@pytest.mark.asyncio
async def test_canary_tasks_confirm_only_answered_capabilities() -> None:
    connector = _CanaryConnector("plug", works={"completion", "planning"}, slow={"planning"})
    registry, probe = _setup(connector, {"completion", "planning", "deployment"})

    result = await probe.probe(registry.require("plug"))

    assert result.method == "canary"
    assert result.capabilities == frozenset({"completion"})
    assert result.outcome == "partial"
    assert sorted(task.task_type for task in connector.invocations) == ["completion", "deployment", "planning"]
    assert all(task.metadata.get("canary") for task in connector.invocations)


@pytest.mark.asyncio
async def test_canary_probing_can_be_disabled() -> None:
    connector = _CanaryConnector("plug", works={"completion"})
    registry, probe = _setup(connector, {"completion"}, allow_canary_tasks=False)

    result = await probe.probe(registry.require("plug"))

    assert result.method == "none"
    assert result.capabilities == frozenset()
    assert connector.invocations == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "connector",
    [
        _SlowListing("svc"),
        FakeConnector("svc", operations=ProviderConnectionError("refused")),
        FakeConnector("svc", operations=ProviderInvocationError("bad listing")),
    ],
)
async def test_probe_failures_yield_empty_set_without_removal(connector: FakeConnector) -> None:
    registry, probe = _setup(connector, {"completion"})
    registry.set_probed_capabilities("svc", {"completion"})

    result = await probe.probe(registry.require("svc"))

    assert result.capabilities == frozenset()
    assert result.errors
    provider = registry.require("svc")
    assert provider.probed_capabilities == frozenset()
    assert provider.health is HealthState.HEALTHY


@pytest.mark.asyncio
async def test_probe_result_for_removed_provider_is_discarded() -> None:
    connector = FakeConnector("svc", operations=frozenset({"completion"}))
    registry, probe = _setup(connector, {"completion"})
    provider = registry.require("svc")
    registry.deregister("svc")

    result = await probe.probe(provider)

    assert result.capabilities == frozenset({"completion"})
    assert "svc" not in registry


@pytest.mark.asyncio
async def test_malformed_listing_yields_empty_capabilities() -> None:
    connector = FakeConnector("svc", operations=ValueError("Expecting value: line 1 column 1"))
    registry, probe = _setup(connector, {"completion"})

    result = await probe.probe(registry.require("svc"))

    assert result.method == "listing"
    assert result.capabilities == frozenset()
    assert any("Expecting value" in error for error in result.errors)
    assert registry.require("svc").probed_capabilities == frozenset()
