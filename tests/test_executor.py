from __future__ import annotations

import asyncio

import pytest

from toolweave.connectors import ConnectorPool
from toolweave.core.config import ExecutionSettings
from toolweave.exceptions import (
    CapabilityUnavailableError,
    ProviderConnectionError,
    ProviderInvocationError,
    ProviderTimeoutError,
    TaskCancelledError,
    UnsupportedOperationError,
)
from toolweave.orchestration.executor import PlanExecutor
from toolweave.providers.registry import ProviderRegistry
from toolweave.schemas.enums import ErrorKind
from toolweave.schemas.routing import RoutingPlan
from toolweave.schemas.tasks import EMPTY_WORKSPACE, Task

from tests.helpers.stubs import FakeConnector, FakeConnectorFactory, seed_provider


def _executor(
    registry: ProviderRegistry,
    connectors: list[FakeConnector],
    *,
    on_connection_lost=None,
    **settings,
) -> PlanExecutor:
    values = {"retry_backoff_seconds": 0.0, "retries_per_provider": 1, **settings}
    return PlanExecutor(
        registry,
        ConnectorPool(FakeConnectorFactory(connectors)),
        ExecutionSettings(**values),
        smoothing=0.5,
        on_connection_lost=on_connection_lost,
    )


def _registry(*ids: str) -> ProviderRegistry:
    registry = ProviderRegistry()
    for provider_id in ids:
        seed_provider(registry, provider_id, {"completion", "analysis"})
    return registry


def _plan(task: Task, primary: str, *, supporting=(), fallback=()) -> RoutingPlan:
    return RoutingPlan(task_id=task.id, primary=primary, supporting=tuple(supporting), fallback=tuple(fallback))


@pytest.mark.asyncio
async def test_retryable_error_is_retried_on_same_provider() -> None:
    registry = _registry("a")
    connector = FakeConnector("a", errors=[ProviderTimeoutError("slow")])
    executor = _executor(registry, [connector])
    task = Task.create("completion", "x", timeout_seconds=5)

    outcome = await executor.execute(task, _plan(task, "a"), EMPTY_WORKSPACE)

    assert len(connector.invocations) == 2
    assert [response.attempt for response in outcome.responses] == [1, 2]
    assert outcome.successes[0].provider_id == "a"


@pytest.mark.asyncio
async def test_unsupported_operation_advances_to_fallback_without_retry() -> None:
    registry = _registry("a", "b")
    primary = FakeConnector("a", errors=[UnsupportedOperationError("nope")])
    fallback = FakeConnector("b")
    executor = _executor(registry, [primary, fallback])
    task = Task.create("completion", "x", timeout_seconds=5)

    outcome = await executor.execute(task, _plan(task, "a", fallback=["b"]), EMPTY_WORKSPACE)

    assert len(primary.invocations) == 1
    assert outcome.attempted == ["a", "b"]
    assert [response.provider_id for response in outcome.successes] == ["b"]
    assert outcome.failures["a"][0].startswith("unsupported_operation")


@pytest.mark.asyncio
async def test_connection_error_reports_loss_and_moves_on() -> None:
    registry = _registry("a", "b")
    lost: list[tuple[str, str]] = []

    async def _lost(provider_id: str, error: str) -> None:
        lost.append((provider_id, error))

    primary = FakeConnector("a", errors=[ProviderConnectionError("refused")])
    executor = _executor(registry, [primary, FakeConnector("b")], on_connection_lost=_lost)
    task = Task.create("completion", "x", timeout_seconds=5)

    outcome = await executor.execute(task, _plan(task, "a", fallback=["b"]), EMPTY_WORKSPACE)

    assert len(primary.invocations) == 1
    assert lost == [("a", "refused")]
    assert outcome.successes[0].provider_id == "b"


@pytest.mark.asyncio
async def test_capability_unavailable_stops_the_lane() -> None:
    registry = _registry("a", "b")
    fallback = FakeConnector("b")
    executor = _executor(registry, [FakeConnector("a", errors=[CapabilityUnavailableError("gone")]), fallback])
    task = Task.create("completion", "x", timeout_seconds=5)

    outcome = await executor.execute(task, _plan(task, "a", fallback=["b"]), EMPTY_WORKSPACE)

    assert outcome.capability_unavailable is True
    assert outcome.skipped == ["b"]
    assert fallback.invocations == []
    assert outcome.successes == []


@pytest.mark.asyncio
async def test_expired_deadline_skips_remaining_providers() -> None:
    registry = _registry("a", "b")
    primary = FakeConnector("a")
    executor = _executor(registry, [primary, FakeConnector("b")])
    task = Task.create("completion", "x", timeout_seconds=0)

    outcome = await executor.execute(task, _plan(task, "a", fallback=["b"]), EMPTY_WORKSPACE)

    assert outcome.skipped == ["a", "b"]
    assert primary.invocations == []
    assert outcome.failures["a"] == ["skipped: deadline elapsed"]


@pytest.mark.asyncio
async def test_supporting_providers_run_concurrently_with_primary() -> None:
    registry = _registry("a", "b")
    gate = asyncio.Event()
    primary = FakeConnector("a", gate=gate)
    supporting = FakeConnector("b", gate=gate)
    executor = _executor(registry, [primary, supporting])
    task = Task.create("analysis", "x", timeout_seconds=5)

    running = asyncio.create_task(executor.execute(task, _plan(task, "a", supporting=["b"]), EMPTY_WORKSPACE))
    await asyncio.wait_for(primary.started.wait(), 1.0)
    await asyncio.wait_for(supporting.started.wait(), 1.0)
    gate.set()
    outcome = await running

    assert sorted(response.provider_id for response in outcome.successes) == ["a", "b"]


@pytest.mark.asyncio
async def test_cancellation_discards_buffered_responses() -> None:
    registry = _registry("a", "b")
    primary = FakeConnector("a", gate=asyncio.Event())
    supporting = FakeConnector("b")
    executor = _executor(registry, [primary, supporting])
    task = Task.create("analysis", "x", timeout_seconds=5)

    running = asyncio.create_task(executor.execute(task, _plan(task, "a", supporting=["b"]), EMPTY_WORKSPACE))
    await asyncio.wait_for(primary.started.wait(), 1.0)
    await asyncio.sleep(0.01)
    task.cancellation.cancel("user withdrew")

    with pytest.raises(TaskCancelledError):
        await running

    assert primary.cancelled == 1
    assert registry.require("a").performance.samples == 0
    assert registry.require("b").performance.samples == 0


@pytest.mark.asyncio
async def test_commit_records_performance_per_response() -> None:
    registry = _registry("a", "b")
    executor = _executor(
        registry,
        [FakeConnector("a", errors=[ProviderInvocationError("boom")]), FakeConnector("b")],
    )
    task = Task.create("completion", "x", timeout_seconds=5)

    outcome = await executor.execute(task, _plan(task, "a", fallback=["b"]), EMPTY_WORKSPACE)
    assert registry.require("a").performance.samples == 0

    executor.commit(outcome)

    failed = registry.require("a").performance
    assert failed.samples == 1 and failed.failures == 1
    assert registry.require("b").performance.successes == 1


@pytest.mark.asyncio
async def test_unregistered_provider_fails_as_connection_error() -> None:
    registry = _registry("b")
    executor = _executor(registry, [FakeConnector("b")])
    task = Task.create("completion", "x", timeout_seconds=5)

    outcome = await executor.execute(task, _plan(task, "ghost", fallback=["b"]), EMPTY_WORKSPACE)

    assert outcome.responses[0].error_kind is ErrorKind.CONNECTION
    assert outcome.successes[0].provider_id == "b"
