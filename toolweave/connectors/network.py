from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping

import httpx

from ..core.config import ConnectorSettings
from ..core.logging import get_logger
from ..exceptions import (
    ProviderConnectionError,
    ProviderError,
    ProviderInvocationError,
    ProviderTimeoutError,
    UnsupportedOperationError,
)
from ..schemas.enums import ErrorKind, TransportKind
from ..schemas.routing import ToolResponse
from ..schemas.tasks import Task, WorkspaceSnapshot
from .base import Connection, build_envelope, enforce_deadline, remaining_timeout, success_response

logger = get_logger(name=__name__)


def _error_for_status(provider_id: str, response: httpx.Response) -> ProviderError:
    status = response.status_code
    detail = f"HTTP {status} from provider '{provider_id}'"
    if status == 429:
        return ProviderInvocationError(detail, provider_id=provider_id, kind=ErrorKind.RATE_LIMITED)
    if status in (408, 504):
        return ProviderInvocationError(detail, provider_id=provider_id, kind=ErrorKind.TIMEOUT)
    if status in (404, 405, 501):
        return UnsupportedOperationError(detail, provider_id=provider_id)
    if status == 503:
        return ProviderInvocationError(detail, provider_id=provider_id, kind=ErrorKind.CONNECTION_RESET)
    return ProviderInvocationError(detail, provider_id=provider_id)


class DirectNetworkConnector:
    """Provider exposing a plain HTTP API: invoke, health and capability endpoints."""

    transport = TransportKind.DIRECT_NETWORK

    def __init__(
        self,
        provider_id: str,
        config: Mapping[str, Any],
        *,
        settings: ConnectorSettings,
        default_timeout: float,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        base_url = config.get("base_url") or config.get("endpoint")
        if not isinstance(base_url, str) or not base_url:
            raise ValueError(f"direct-network provider '{provider_id}' requires a 'base_url'")
        self.provider_id = provider_id
        self._base_url = base_url.rstrip("/")
        self._invoke_path = str(config.get("invoke_path") or settings.invoke_path)
        self._health_path = str(config.get("health_path") or settings.health_path)
        self._capabilities_path = str(config.get("capabilities_path") or settings.capabilities_path)
        self._default_timeout = float(config.get("timeout_seconds") or default_timeout)
        headers = dict(config.get("headers") or {})
        api_key = config.get("api_key")
        if api_key:
            headers.setdefault("Authorization", f"Bearer {api_key}")
        self._headers = headers
        self._verify_ssl = settings.verify_ssl
        self._external_client = http_client
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> Connection:
        async with self._lock:
            if self._client is None:
                self._client = self._external_client or httpx.AsyncClient(
                    base_url=self._base_url,
                    timeout=httpx.Timeout(self._default_timeout),
                    headers=self._headers,
                    verify=self._verify_ssl,
                )
            return Connection(transport=self.transport, handle=self._client, info={"base_url": self._base_url})

    async def invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        timeout = remaining_timeout(task, self._default_timeout)
        return await enforce_deadline(
            self._invoke(task, workspace),
            timeout=timeout,
            provider_id=self.provider_id,
            operation=f"POST {self._invoke_path}",
        )

    async def _invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        started = time.perf_counter()
        response = await self._send("POST", self._invoke_path, json=build_envelope(task, workspace))
        if not response.is_success:
            raise _error_for_status(self.provider_id, response)
        try:
            payload = response.json()
        except ValueError:
            payload = response.text
        return success_response(
            provider_id=self.provider_id,
            task=task,
            payload=payload,
            started=started,
            transport=self.transport,
            metadata={"status": response.status_code},
        )

    async def health(self) -> bool:
        try:
            response = await self._send("GET", self._health_path)
        except ProviderError as exc:
            logger.debug("network_health_failed", provider=self.provider_id, error=str(exc))
            return False
        return response.is_success

    async def disconnect(self) -> None:
        async with self._lock:
            client, self._client = self._client, None
        if client is not None and client is not self._external_client:
            await client.aclose()

    async def list_operations(self) -> frozenset[str] | None:
        response = await self._send("GET", self._capabilities_path)
        if response.status_code in (404, 405, 501):
            return None
        if not response.is_success:
            raise _error_for_status(self.provider_id, response)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderInvocationError(
                "capabilities endpoint did not return JSON",
                provider_id=self.provider_id,
                kind=ErrorKind.INVALID_RESPONSE,
            ) from exc
        if isinstance(data, dict):
            data = data.get("capabilities", [])
        if not isinstance(data, list):
            raise ProviderInvocationError(
                "capabilities endpoint must return a list",
                provider_id=self.provider_id,
                kind=ErrorKind.INVALID_RESPONSE,
            )
        return frozenset(str(item).lower() for item in data if isinstance(item, str))

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        connection = await self.connect()
        client: httpx.AsyncClient = connection.handle
        try:
            url = f"{self._base_url}/{path.lstrip('/')}"
            return await client.request(method, url, headers=self._headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(
                f"{method} {path} timed out on provider '{self.provider_id}'", provider_id=self.provider_id
            ) from exc
        except (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError) as exc:
            raise ProviderConnectionError(
                f"{method} {path} connection reset on provider '{self.provider_id}': {exc}",
                provider_id=self.provider_id,
                kind=ErrorKind.CONNECTION_RESET,
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderConnectionError(
                f"{method} {path} failed on provider '{self.provider_id}': {exc}", provider_id=self.provider_id
            ) from exc


__all__ = ["DirectNetworkConnector"]
