from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable, Sequence

from toolweave.connectors.base import Connection
from toolweave.core.config import Settings
from toolweave.exceptions import ProviderError
from toolweave.providers.registry import ProviderRegistry
from toolweave.schemas.enums import HealthState, TransportKind
from toolweave.schemas.providers import Provider, ProviderRegistration
from toolweave.schemas.routing import ToolResponse
from toolweave.schemas.tasks import Task, WorkspaceSnapshot


class FakeConnector:
    """Scriptable in-memory connector used in place of a real transport."""

    def __init__(
        self,
        provider_id: str,
        *,
        transport: TransportKind = TransportKind.DIRECT_NETWORK,
        payload: Any = None,
        operations: frozenset[str] | None | Exception = frozenset(),
        healthy: bool | Exception = True,
        health_delay: float = 0.0,
        errors: Sequence[ProviderError | None] = (),
        gate: asyncio.Event | None = None,
        latency_seconds: float = 0.01,
    ) -> None:
        self.provider_id = provider_id
        self.transport = transport
        self.payload = payload if payload is not None else {"provider": provider_id}
        self.operations = operations
        self.healthy = healthy
        self.health_delay = health_delay
        self.errors: list[ProviderError | None] = list(errors)
        self.gate = gate
        self.latency_seconds = latency_seconds
        self.invocations: list[Task] = []
        self.health_checks = 0
        self.connects = 0
        self.disconnects = 0
        self.cancelled = 0
        self.started = asyncio.Event()

    async def connect(self) -> Connection:
        self.connects += 1
        return Connection(transport=self.transport, handle=self)

    async def invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        self.invocations.append(task)
        self.started.set()
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        payload = self.payload(task) if callable(self.payload) else self.payload
        return ToolResponse.ok(
            provider_id=self.provider_id,
            task_id=task.id,
            payload=payload,
            latency_seconds=self.latency_seconds,
            metadata={"transport": self.transport.value},
        )

    async def health(self) -> bool:
        self.health_checks += 1
        if self.health_delay:
            await asyncio.sleep(self.health_delay)
        if isinstance(self.healthy, Exception):
            raise self.healthy
        return self.healthy

    async def disconnect(self) -> None:
        self.disconnects += 1

    async def list_operations(self) -> frozenset[str] | None:
        if isinstance(self.operations, Exception):
            raise self.operations
        return self.operations


class FakeConnectorFactory:
    def __init__(self, connectors: Iterable[FakeConnector] = ()) -> None:
        self.connectors: dict[str, FakeConnector] = {item.provider_id: item for item in connectors}
        self.created: list[str] = []

    def add(self, connector: FakeConnector) -> FakeConnector:
        self.connectors[connector.provider_id] = connector
        return connector

    def create(self, provider: Provider) -> FakeConnector:
        self.created.append(provider.id)
        connector = self.connectors.get(provider.id)
        if connector is None:
            connector = self.add(FakeConnector(provider.id, transport=provider.transport))
        return connector


class FakeCommandHost:
    """Stand-in for an editor command bus."""

    def __init__(
        self,
        commands: Iterable[str] = (),
        *,
        installed: bool = True,
        active: bool = True,
        handler: Callable[[str, tuple[Any, ...]], Any] | None = None,
    ) -> None:
        self.commands = list(commands)
        self.installed = installed
        self.active = active
        self.handler = handler
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.activations = 0

    async def list_commands(self) -> Sequence[str]:
        return list(self.commands)

    async def execute_command(self, command: str, *args: Any) -> Any:
        self.executed.append((command, args))
        if self.handler is not None:
            return self.handler(command, args)
        return f"{command} done"

    async def is_installed(self, plugin_id: str) -> bool:
        return self.installed

    async def is_active(self, plugin_id: str) -> bool:
        return self.active

    async def activate(self, plugin_id: str) -> None:
        self.activations += 1
        self.active = True


def seed_provider(
    registry: ProviderRegistry,
    provider_id: str,
    capabilities: Iterable[str],
    *,
    health: HealthState = HealthState.HEALTHY,
    latency_seconds: float | None = None,
    exclusive: bool = False,
    transport: TransportKind = TransportKind.DIRECT_NETWORK,
) -> Provider:
    """Register a provider and walk it to ``health`` through legal transitions only."""
    registry.register(
        ProviderRegistration(
            id=provider_id,
            transport=transport,
            config={"base_url": f"http://{provider_id}.invalid"},
            declared_capabilities=frozenset(capabilities),
            exclusive=exclusive,
        )
    )
    registry.set_probed_capabilities(provider_id, capabilities)
    if health is not HealthState.UNKNOWN:
        registry.update_health(provider_id, health=HealthState.HEALTHY)
    if health in (HealthState.DEGRADED, HealthState.UNAVAILABLE):
        registry.update_health(provider_id, health=health)
    if latency_seconds is not None:
        registry.record_performance(provider_id, success=True, latency_seconds=latency_seconds, smoothing=0.3)
    return registry.require(provider_id)


def fast_settings(**sections: Any) -> Settings:
    """Settings with short timers so tests never wait on production intervals."""
    overrides: dict[str, Any] = {
        "health": {
            "check_interval_seconds": 0.05,
            "check_timeout_seconds": 0.2,
            "recovery_grace_seconds": 0.0,
        },
        "execution": {"retry_backoff_seconds": 0.0, "default_timeout_seconds": 5.0},
        "probe": {"latency_budget_seconds": 0.5},
    }
    for key, value in sections.items():
        overrides[key] = {**overrides.get(key, {}), **value}
    return Settings(**overrides)
