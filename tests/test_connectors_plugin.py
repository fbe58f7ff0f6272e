from __future__ import annotations

import pytest

from toolweave.connectors import PluginCommandConnector
from toolweave.exceptions import ProviderConnectionError, ProviderInvocationError, UnsupportedOperationError
from toolweave.schemas.enums import ErrorKind
from toolweave.schemas.tasks import Task, WorkspaceSnapshot

from tests.helpers.stubs import FakeCommandHost

COMMANDS = ["continue.quickEdit", "continue.sendChatMessage", "continue.continueEdit", "other.thing"]


def _connector(host: FakeCommandHost | None, **config) -> PluginCommandConnector:
    return PluginCommandConnector(
        "continue",
        {"plugin_id": "Continue.continue", **config},
        host=host,
        default_timeout=5.0,
    )


@pytest.mark.asyncio
async def test_connect_activates_inactive_plugin() -> None:
    host = FakeCommandHost(COMMANDS, active=False)
    connector = _connector(host)

    connection = await connector.connect()
    await connector.connect()

    assert connection.info["plugin_id"] == "Continue.continue"
    assert host.activations == 1


@pytest.mark.asyncio
async def test_missing_plugin_or_host_cannot_connect() -> None:
    with pytest.raises(ProviderConnectionError):
        await _connector(FakeCommandHost(COMMANDS, installed=False)).connect()
    with pytest.raises(ProviderConnectionError):
        await _connector(None).connect()
    assert await _connector(None).health() is False


@pytest.mark.asyncio
async def test_listing_reports_capabilities_of_enabled_commands() -> None:
    connector = _connector(FakeCommandHost(COMMANDS), enable_edit=False)

    operations = await connector.list_operations()

    assert operations == frozenset({"completion", "refactoring", "planning", "analysis", "general-purpose"})
    assert "code-editing" not in operations


@pytest.mark.asyncio
async def test_planning_task_runs_chat_command_with_context_prompt() -> None:
    host = FakeCommandHost(COMMANDS)
    connector = _connector(host)
    workspace = WorkspaceSnapshot(project_type="python", technologies=("fastapi",))

    response = await connector.invoke(
        Task.create("planning", "add a cache layer", language="python", timeout_seconds=5),
        workspace,
    )

    command, args = host.executed[0]
    assert command == "continue.sendChatMessage"
    assert "add a cache layer" in args[0]
    assert "Technologies: fastapi" in args[0]
    assert response.payload == {"type": "planning", "result": "continue.sendChatMessage done"}
    assert response.metadata["command"] == "continue.sendChatMessage"


@pytest.mark.asyncio
async def test_disabled_feature_is_unsupported() -> None:
    connector = _connector(FakeCommandHost(COMMANDS), enable_completion=False)

    with pytest.raises(UnsupportedOperationError):
        await connector.invoke(Task.create("completion", "x", timeout_seconds=5), WorkspaceSnapshot())


@pytest.mark.asyncio
async def test_command_failure_is_classified() -> None:
    def handler(command, args):
        raise RuntimeError("request timed out")

    connector = _connector(FakeCommandHost(COMMANDS, handler=handler))

    with pytest.raises(ProviderInvocationError) as excinfo:
        await connector.invoke(Task.create("analysis", "x", timeout_seconds=5), WorkspaceSnapshot())

    assert excinfo.value.kind is ErrorKind.TIMEOUT
    assert excinfo.value.retryable
