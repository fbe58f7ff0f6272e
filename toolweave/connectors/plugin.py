from __future__ import annotations

import time
from typing import Any, Mapping, Protocol, Sequence

from ..core.logging import get_logger
from ..exceptions import (
    ProviderConnectionError,
    ProviderError,
    ProviderInvocationError,
    UnsupportedOperationError,
)
from ..schemas.enums import TransportKind
from ..schemas.routing import ToolResponse
from ..schemas.tasks import Task, WorkspaceSnapshot
from .base import Connection, classify_error_message, enforce_deadline, remaining_timeout, success_response

logger = get_logger(name=__name__)


class CommandHost(Protocol):
    """The editor-side command bus a plugin provider lives behind."""

    async def list_commands(self) -> Sequence[str]:
        ...

    async def execute_command(self, command: str, *args: Any) -> Any:
        ...

    async def is_installed(self, plugin_id: str) -> bool:
        ...

    async def is_active(self, plugin_id: str) -> bool:
        ...

    async def activate(self, plugin_id: str) -> None:
        ...


_CHAT = "sendChatMessage"
_QUICK_EDIT = "quickEdit"
_EDIT = "continueEdit"

# command suffix -> (feature flag, capabilities it demonstrates)
_COMMAND_CAPABILITIES: Mapping[str, tuple[str, tuple[str, ...]]] = {
    _QUICK_EDIT: ("enable_completion", ("completion", "refactoring")),
    _CHAT: ("enable_chat", ("planning", "analysis", "general-purpose")),
    _EDIT: ("enable_edit", ("code-editing", "refactoring")),
}

_TASK_COMMANDS: Mapping[str, str] = {
    "completion": _QUICK_EDIT,
    "planning": _CHAT,
    "analysis": _CHAT,
    "refactoring": _EDIT,
}


class PluginCommandConnector:
    """Provider reached by executing another editor plugin's commands."""

    transport = TransportKind.PLUGIN_COMMAND

    def __init__(
        self,
        provider_id: str,
        config: Mapping[str, Any],
        *,
        host: CommandHost | None,
        default_timeout: float,
    ) -> None:
        plugin_id = config.get("plugin_id")
        if not isinstance(plugin_id, str) or not plugin_id:
            raise ValueError(f"plugin-command provider '{provider_id}' requires a 'plugin_id'")
        self.provider_id = provider_id
        self._plugin_id = plugin_id
        self._prefix = str(config.get("command_prefix") or plugin_id.split(".")[-1].lower())
        self._host = host
        self._features = {
            "enable_chat": bool(config.get("enable_chat", True)),
            "enable_edit": bool(config.get("enable_edit", True)),
            "enable_completion": bool(config.get("enable_completion", True)),
        }
        self._command_overrides: dict[str, str] = dict(config.get("commands") or {})
        self._default_timeout = float(config.get("max_response_seconds") or default_timeout)
        self._initialized = False

    async def connect(self) -> Connection:
        host = self._require_host()
        if self._initialized:
            return Connection(transport=self.transport, handle=host, info={"plugin_id": self._plugin_id})
        try:
            installed = await host.is_installed(self._plugin_id)
            if not installed:
                raise ProviderConnectionError(
                    f"Plugin '{self._plugin_id}' not found", provider_id=self.provider_id
                )
            if not await host.is_active(self._plugin_id):
                await host.activate(self._plugin_id)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderConnectionError(
                f"Plugin '{self._plugin_id}' could not be activated: {exc}", provider_id=self.provider_id
            ) from exc
        self._initialized = True
        logger.info("plugin_connected", provider=self.provider_id, plugin=self._plugin_id)
        return Connection(transport=self.transport, handle=host, info={"plugin_id": self._plugin_id})

    async def invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        timeout = remaining_timeout(task, self._default_timeout)
        return await enforce_deadline(
            self._invoke(task, workspace),
            timeout=timeout,
            provider_id=self.provider_id,
            operation=f"{self._prefix} command",
        )

    async def _invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        started = time.perf_counter()
        connection = await self.connect()
        host: CommandHost = connection.handle
        suffix = _TASK_COMMANDS.get(task.task_type, _CHAT)
        command = self._command_name(suffix)
        flag = _COMMAND_CAPABILITIES[suffix][0]
        if not self._features[flag]:
            raise UnsupportedOperationError(
                f"{flag.removeprefix('enable_')} is disabled for plugin '{self._plugin_id}'",
                provider_id=self.provider_id,
            )
        prompt = self._build_prompt(task, workspace)
        try:
            result = await host.execute_command(command, prompt)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            raise ProviderInvocationError(
                f"Command '{command}' failed: {message}",
                provider_id=self.provider_id,
                kind=classify_error_message(message),
            ) from exc
        return success_response(
            provider_id=self.provider_id,
            task=task,
            payload={"type": task.task_type, "result": result},
            started=started,
            transport=self.transport,
            metadata={"command": command, "prompt_length": len(prompt)},
        )

    async def health(self) -> bool:
        if self._host is None:
            return False
        try:
            return bool(await self._host.is_active(self._plugin_id))
        except Exception as exc:
            logger.debug("plugin_health_failed", provider=self.provider_id, error=str(exc))
            return False

    async def disconnect(self) -> None:
        # The host owns the plugin; only local handshake state is dropped.
        self._initialized = False

    async def list_operations(self) -> frozenset[str] | None:
        host = self._require_host()
        if not await host.is_active(self._plugin_id):
            return frozenset()
        available = set(await host.list_commands())
        operations: set[str] = set()
        for suffix, (flag, capabilities) in _COMMAND_CAPABILITIES.items():
            if self._features[flag] and self._command_name(suffix) in available:
                operations.update(capabilities)
        return frozenset(operations)

    def _command_name(self, suffix: str) -> str:
        return self._command_overrides.get(suffix) or f"{self._prefix}.{suffix}"

    def _require_host(self) -> CommandHost:
        if self._host is None:
            raise ProviderConnectionError(
                "No command host is attached for plugin providers", provider_id=self.provider_id
            )
        return self._host

    @staticmethod
    def _build_prompt(task: Task, workspace: WorkspaceSnapshot) -> str:
        language = task.language or "the current"
        if task.task_type == "planning":
            return "\n".join(
                [
                    "Please help me plan the following:",
                    task.description,
                    "",
                    "Current project context:",
                    workspace.summary(),
                    "",
                    "Please provide the architecture approach, key components, implementation steps,"
                    " and likely challenges.",
                    f"Focus on {language} language best practices.",
                ]
            )
        if task.task_type == "refactoring":
            return "\n".join(
                [
                    "Please refactor the following code according to this request:",
                    task.description,
                    "",
                    f"```{task.language or ''}",
                    workspace.selection or "",
                    "```",
                    "",
                    workspace.summary(),
                ]
            )
        if task.task_type == "analysis":
            return "\n".join(
                [
                    "Please analyze the following code/project according to this request:",
                    task.description,
                    "",
                    workspace.summary(),
                ]
            )
        if task.task_type == "completion":
            return task.description
        return f"{task.description}\n\nContext: {workspace.summary()}"


__all__ = ["CommandHost", "PluginCommandConnector"]
