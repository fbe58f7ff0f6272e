from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass, field
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
from .base import (
    Connection,
    attach_provider,
    classify_error_message,
    enforce_deadline,
    remaining_timeout,
    success_response,
)

logger = get_logger(name=__name__)

InstrumentationHook = Callable[[dict[str, Any]], None]

_METHOD_NOT_FOUND = -32601
_INVALID_PARAMS = -32602


@dataclass(slots=True)
class JsonRpcClientConfig:
    endpoint: str
    path: str = "/rpc"
    timeout_seconds: float = 30.0
    verify_ssl: bool = True
    default_headers: dict[str, str] = field(default_factory=dict)
    instrumentation_hooks: tuple[InstrumentationHook, ...] = ()


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 session over HTTP POST, one request per call."""

    def __init__(self, config: JsonRpcClientConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.endpoint.rstrip("/"),
            timeout=httpx.Timeout(config.timeout_seconds),
            headers=config.default_headers,
            verify=config.verify_ssl,
        )
        self._url = config.endpoint.rstrip("/") + "/" + config.path.lstrip("/")
        self._ids = itertools.count(1)
        self._hooks = tuple(config.instrumentation_hooks or ())
        self._last_error: str | None = None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def call(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": dict(params or {})}
        context = {"method": method, "id": request_id, "path": self._config.path}
        self._emit_instrumentation("request.start", context)
        start = time.perf_counter()
        try:
            response = await self._client.post(self._url, json=body, headers=self._config.default_headers)
        except httpx.TimeoutException as exc:
            self._record_failure("request.timeout", context, exc, start)
            raise ProviderTimeoutError(f"JSON-RPC '{method}' timed out") from exc
        except (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError) as exc:
            self._record_failure("request.reset", context, exc, start)
            raise ProviderConnectionError(
                f"JSON-RPC '{method}' connection reset: {exc}", kind=ErrorKind.CONNECTION_RESET
            ) from exc
        except httpx.RequestError as exc:
            self._record_failure("request.error", context, exc, start)
            raise ProviderConnectionError(f"JSON-RPC '{method}' transport failure: {exc}") from exc

        latency = time.perf_counter() - start
        if response.status_code == 429:
            self._emit_instrumentation("request.rate_limited", {**context, "latency": latency})
            raise ProviderInvocationError(f"JSON-RPC '{method}' rate limited", kind=ErrorKind.RATE_LIMITED)
        if response.status_code >= 400:
            self._emit_instrumentation("request.http_error", {**context, "status": response.status_code})
            kind = ErrorKind.TIMEOUT if response.status_code in (408, 504) else ErrorKind.PROVIDER_ERROR
            raise ProviderInvocationError(f"JSON-RPC '{method}' HTTP {response.status_code}", kind=kind)

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderInvocationError(
                f"JSON-RPC '{method}' returned non-JSON body", kind=ErrorKind.INVALID_RESPONSE
            ) from exc
        if not isinstance(data, dict):
            raise ProviderInvocationError(
                f"JSON-RPC '{method}' returned a non-object envelope", kind=ErrorKind.INVALID_RESPONSE
            )

        error = data.get("error")
        if error:
            raise self._error_from_envelope(method, error)

        self._emit_instrumentation("request.success", {**context, "latency": latency})
        return data.get("result")

    @staticmethod
    def _error_from_envelope(method: str, error: Any) -> ProviderError:
        if not isinstance(error, dict):
            return ProviderInvocationError(f"JSON-RPC '{method}' failed: {error}")
        code = error.get("code")
        message = str(error.get("message") or "unknown error")
        if code in (_METHOD_NOT_FOUND, _INVALID_PARAMS):
            return UnsupportedOperationError(f"JSON-RPC '{method}' unsupported: {message}")
        return ProviderInvocationError(
            f"JSON-RPC '{method}' failed: {message}",
            kind=classify_error_message(message),
        )

    def _record_failure(self, event: str, context: dict[str, Any], exc: Exception, start: float) -> None:
        self._last_error = str(exc)
        self._emit_instrumentation(event, {**context, "error": str(exc), "latency": time.perf_counter() - start})

    def _emit_instrumentation(self, event: str, payload: dict[str, Any]) -> None:
        data = dict(payload)
        data["event"] = event
        for hook in self._hooks:
            try:
                hook(dict(data))
            except Exception as exc:  # pragma: no cover
                logger.warning("rpc_instrumentation_hook_failed", hook_event=event, error=str(exc))
        log_payload = dict(data)
        log_payload["rpc_event"] = log_payload.pop("event")
        logger.debug("rpc_client_event", **log_payload)

    def diagnostics(self) -> dict[str, Any]:
        return {
            "endpoint": self._config.endpoint,
            "path": self._config.path,
            "timeout_seconds": self._config.timeout_seconds,
            "last_error": self._last_error,
        }


class MessageRpcConnector:
    """MCP-style provider: ``initialize`` + ``tools/list`` on connect, ``tools/call`` per task."""

    transport = TransportKind.MESSAGE_RPC

    def __init__(
        self,
        provider_id: str,
        config: Mapping[str, Any],
        *,
        settings: ConnectorSettings,
        default_timeout: float,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        endpoint = config.get("endpoint")
        if not isinstance(endpoint, str) or not endpoint:
            raise ValueError(f"message-rpc provider '{provider_id}' requires an 'endpoint'")
        self.provider_id = provider_id
        self._endpoint = endpoint
        self._default_timeout = float(config.get("timeout_seconds") or default_timeout)
        headers = dict(config.get("headers") or {})
        api_key = config.get("api_key")
        if api_key:
            headers.setdefault("Authorization", f"Bearer {api_key}")
        self._client_config = JsonRpcClientConfig(
            endpoint=endpoint,
            path=str(config.get("path") or settings.rpc_path),
            timeout_seconds=self._default_timeout,
            verify_ssl=settings.verify_ssl,
            default_headers=headers,
        )
        self._tool_map: dict[str, str] = {**settings.default_tool_map, **dict(config.get("tool_map") or {})}
        self._http_client = http_client
        self._client: JsonRpcClient | None = None
        self._tools: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> Connection:
        async with self._lock:
            if self._client is not None:
                return Connection(transport=self.transport, handle=self._client, info={"tools": sorted(self._tools)})
            client = JsonRpcClient(self._client_config, client=self._http_client)
            try:
                await client.call(
                    "initialize",
                    {"clientInfo": {"name": "toolweave"}, "capabilities": {}},
                )
                self._tools = await self._load_tools(client)
            except ProviderTimeoutError as exc:
                await client.aclose()
                raise attach_provider(exc, self.provider_id)
            except ProviderError as exc:
                await client.aclose()
                raise ProviderConnectionError(
                    f"Failed to connect to '{self.provider_id}': {exc}",
                    provider_id=self.provider_id,
                ) from exc
            self._client = client
            logger.info("rpc_connected", provider=self.provider_id, tools=sorted(self._tools))
            return Connection(transport=self.transport, handle=client, info={"tools": sorted(self._tools)})

    async def invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        timeout = remaining_timeout(task, self._default_timeout)
        return await enforce_deadline(
            self._invoke(task, workspace),
            timeout=timeout,
            provider_id=self.provider_id,
            operation="tools/call",
        )

    async def _invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        started = time.perf_counter()
        connection = await self.connect()
        client: JsonRpcClient = connection.handle
        tool_name = self._tool_for(task)
        arguments = {
            "description": task.description,
            "context": workspace.as_payload(),
            "language": task.language,
            "domain": task.domain,
            "required_capabilities": sorted(task.required_capabilities),
        }
        try:
            result = await client.call("tools/call", {"name": tool_name, "arguments": arguments})
        except ProviderError as exc:
            raise attach_provider(exc, self.provider_id)
        if isinstance(result, dict) and result.get("isError"):
            message = self._content_text(result) or f"tool '{tool_name}' reported an error"
            raise ProviderInvocationError(
                message,
                provider_id=self.provider_id,
                kind=classify_error_message(message),
            )
        return success_response(
            provider_id=self.provider_id,
            task=task,
            payload=result,
            started=started,
            transport=self.transport,
            metadata={"tool": tool_name},
        )

    async def health(self) -> bool:
        try:
            connection = await self.connect()
            result = await connection.handle.call("ping")
        except ProviderError as exc:
            logger.debug("rpc_health_failed", provider=self.provider_id, error=str(exc))
            return False
        return result in (None, {}, "pong") or (isinstance(result, dict) and result.get("status") == "ok")

    async def disconnect(self) -> None:
        async with self._lock:
            client, self._client = self._client, None
            self._tools = {}
        if client is not None:
            await client.aclose()

    async def list_operations(self) -> frozenset[str] | None:
        connection = await self.connect()
        tools = await self._load_tools(connection.handle)
        self._tools = tools
        inverse = {tool: task_type for task_type, tool in self._tool_map.items()}
        operations: set[str] = set()
        for name, descriptor in tools.items():
            if name in inverse:
                operations.add(inverse[name])
            declared = descriptor.get("capabilities")
            if isinstance(declared, list):
                operations.update(str(item).lower() for item in declared if isinstance(item, str))
        return frozenset(operations)

    def _tool_for(self, task: Task) -> str:
        candidate = self._tool_map.get(task.task_type, task.task_type)
        if candidate in self._tools:
            return candidate
        for name, descriptor in self._tools.items():
            declared = descriptor.get("capabilities")
            if isinstance(declared, list) and task.task_type in declared:
                return name
        raise UnsupportedOperationError(
            f"No tool available on '{self.provider_id}' for task type '{task.task_type}'",
            provider_id=self.provider_id,
        )

    @staticmethod
    async def _load_tools(client: JsonRpcClient) -> dict[str, dict[str, Any]]:
        result = await client.call("tools/list")
        entries = result.get("tools") if isinstance(result, dict) else result
        tools: dict[str, dict[str, Any]] = {}
        if isinstance(entries, list):
            for raw in entries:
                if isinstance(raw, dict) and isinstance(raw.get("name"), str):
                    tools[raw["name"]] = raw
        return tools

    @staticmethod
    def _content_text(result: Mapping[str, Any]) -> str:
        content = result.get("content")
        if not isinstance(content, list):
            return ""
        parts = [str(item.get("text")) for item in content if isinstance(item, dict) and item.get("text")]
        return " ".join(parts)


__all__ = ["JsonRpcClient", "JsonRpcClientConfig", "MessageRpcConnector"]
