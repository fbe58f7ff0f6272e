from __future__ import annotations

import asyncio
from typing import Any, Mapping

import httpx

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.enums import TransportKind
from ..schemas.providers import Provider
from .base import Connection, Connector, classify_error_message
from .network import DirectNetworkConnector
from .plugin import CommandHost, PluginCommandConnector
from .process import SubprocessConnector
from .rpc import JsonRpcClient, JsonRpcClientConfig, MessageRpcConnector

logger = get_logger(name=__name__)


class ConnectorFactory:
    """Builds the connector variant matching a provider's transport kind."""

    def __init__(
        self,
        settings: Settings,
        *,
        command_host: CommandHost | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._command_host = command_host
        self._http_client = http_client

    def create(self, provider: Provider) -> Connector:
        default_timeout = self._settings.execution.default_timeout_seconds
        connectors = self._settings.connectors
        if provider.transport is TransportKind.MESSAGE_RPC:
            return MessageRpcConnector(
                provider.id,
                provider.config,
                settings=connectors,
                default_timeout=default_timeout,
                http_client=self._http_client,
            )
        if provider.transport is TransportKind.PLUGIN_COMMAND:
            return PluginCommandConnector(
                provider.id,
                provider.config,
                host=self._command_host,
                default_timeout=default_timeout,
            )
        if provider.transport is TransportKind.SUBPROCESS:
            return SubprocessConnector(
                provider.id,
                provider.config,
                default_timeout=default_timeout,
                terminate_grace_seconds=connectors.terminate_grace_seconds,
            )
        if provider.transport is TransportKind.DIRECT_NETWORK:
            return DirectNetworkConnector(
                provider.id,
                provider.config,
                settings=connectors,
                default_timeout=default_timeout,
                http_client=self._http_client,
            )
        raise ValueError(f"Unsupported transport '{provider.transport}' for provider '{provider.id}'")


class ConnectorPool:
    """One live connector per provider id, rebuilt when the provider's connection details change."""

    def __init__(self, factory: ConnectorFactory) -> None:
        self._factory = factory
        self._connectors: dict[str, tuple[Connector, TransportKind, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, provider: Provider) -> Connector:
        stale: Connector | None = None
        async with self._lock:
            entry = self._connectors.get(provider.id)
            if entry is not None:
                connector, transport, config = entry
                if transport is provider.transport and config == dict(provider.config):
                    return connector
                stale = connector
            connector = self._factory.create(provider)
            self._connectors[provider.id] = (connector, provider.transport, dict(provider.config))
        if stale is not None:
            logger.info("connector_replaced", provider=provider.id)
            await stale.disconnect()
        return connector

    def peek(self, provider_id: str) -> Connector | None:
        entry = self._connectors.get(provider_id)
        return entry[0] if entry else None

    async def release(self, provider_id: str) -> None:
        async with self._lock:
            entry = self._connectors.pop(provider_id, None)
        if entry is not None:
            await entry[0].disconnect()
            logger.info("connector_released", provider=provider_id)

    async def close(self) -> None:
        async with self._lock:
            entries: Mapping[str, tuple[Connector, TransportKind, dict[str, Any]]] = dict(self._connectors)
            self._connectors.clear()
        for provider_id, (connector, _, _) in entries.items():
            try:
                await connector.disconnect()
            except Exception as exc:
                logger.warning("connector_close_failed", provider=provider_id, error=str(exc))

    def __len__(self) -> int:
        return len(self._connectors)


__all__ = [
    "CommandHost",
    "Connection",
    "Connector",
    "ConnectorFactory",
    "ConnectorPool",
    "DirectNetworkConnector",
    "JsonRpcClient",
    "JsonRpcClientConfig",
    "MessageRpcConnector",
    "PluginCommandConnector",
    "SubprocessConnector",
    "classify_error_message",
]
