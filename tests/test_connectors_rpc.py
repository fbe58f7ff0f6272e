from __future__ import annotations

import json

import httpx
import pytest

from toolweave.connectors import MessageRpcConnector
from toolweave.connectors.rpc import JsonRpcClient, JsonRpcClientConfig
from toolweave.core.config import ConnectorSettings
from toolweave.exceptions import (
    ProviderConnectionError,
    ProviderInvocationError,
    UnsupportedOperationError,
)
from toolweave.schemas.enums import ErrorKind
from toolweave.schemas.tasks import Task, WorkspaceSnapshot

TOOLS = [
    {"name": "code-analyzer", "description": "static analysis"},
    {"name": "completer", "capabilities": ["completion"]},
]


def _server(results=None, *, tools=TOOLS, calls=None):
    results = results or {}

    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body)
        method = body["method"]
        if method == "initialize":
            result = {"serverInfo": {"name": "stub"}}
        elif method == "tools/list":
            result = {"tools": tools}
        elif method == "ping":
            result = {}
        elif method in results:
            outcome = results[method]
            if isinstance(outcome, dict) and "error" in outcome:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": outcome["error"]})
            result = outcome(body) if callable(outcome) else outcome
        else:
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "Method not found"}},
            )
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return handler


def _connector(handler, **config) -> MessageRpcConnector:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MessageRpcConnector(
        "mcp",
        {"endpoint": "http://mcp.local", **config},
        settings=ConnectorSettings(),
        default_timeout=5.0,
        http_client=client,
    )


@pytest.mark.asyncio
async def test_connect_initializes_and_lists_operations() -> None:
    calls = []
    connector = _connector(_server(calls=calls))

    connection = await connector.connect()
    operations = await connector.list_operations()

    assert [call["method"] for call in calls[:2]] == ["initialize", "tools/list"]
    assert connection.info["tools"] == ["code-analyzer", "completer"]
    assert operations == frozenset({"analysis", "completion"})


@pytest.mark.asyncio
async def test_invoke_maps_task_type_to_tool() -> None:
    calls = []
    def echo_tool(body):
        return {"content": [{"type": "text", "text": body["params"]["name"]}]}

    connector = _connector(_server({"tools/call": echo_tool}, calls=calls))

    response = await connector.invoke(Task.create("analysis", "review this", timeout_seconds=5), WorkspaceSnapshot())

    assert response.success
    assert response.metadata["tool"] == "code-analyzer"
    assert response.payload["content"][0]["text"] == "code-analyzer"
    tool_call = calls[-1]
    assert tool_call["params"]["arguments"]["description"] == "review this"


@pytest.mark.asyncio
async def test_declared_tool_capabilities_are_used_for_routing_calls() -> None:
    connector = _connector(_server({"tools/call": {"content": []}}))

    response = await connector.invoke(Task.create("completion", "x", timeout_seconds=5), WorkspaceSnapshot())

    assert response.metadata["tool"] == "completer"


@pytest.mark.asyncio
async def test_unknown_task_type_is_unsupported() -> None:
    connector = _connector(_server())

    with pytest.raises(UnsupportedOperationError):
        await connector.invoke(Task.create("deployment", "ship it", timeout_seconds=5), WorkspaceSnapshot())


@pytest.mark.asyncio
async def test_tool_error_result_is_classified() -> None:
    server = _server({"tools/call": {"isError": True, "content": [{"type": "text", "text": "rate limit exceeded"}]}})
    connector = _connector(server)

    with pytest.raises(ProviderInvocationError) as excinfo:
        await connector.invoke(Task.create("analysis", "x", timeout_seconds=5), WorkspaceSnapshot())

    assert excinfo.value.kind is ErrorKind.RATE_LIMITED
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_failed_handshake_is_a_connection_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    connector = _connector(handler)

    with pytest.raises(ProviderConnectionError):
        await connector.connect()
    assert await connector.health() is False


@pytest.mark.asyncio
async def test_client_emits_instrumentation_and_maps_envelope_errors() -> None:
    events = []

    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32000, "message": "request timed out"}},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as async_client:
        client = JsonRpcClient(
            JsonRpcClientConfig(endpoint="http://mcp.local", instrumentation_hooks=(events.append,)),
            client=async_client,
        )
        with pytest.raises(ProviderInvocationError) as excinfo:
            await client.call("tools/call", {"name": "x"})

    assert excinfo.value.kind is ErrorKind.TIMEOUT
    assert events[0]["event"] == "request.start"
