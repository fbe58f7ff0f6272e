from __future__ import annotations

import asyncio
import itertools
import json
import shlex
import time
from contextlib import suppress
from typing import Any, Mapping, Sequence

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
    build_envelope,
    classify_error_message,
    enforce_deadline,
    remaining_timeout,
    success_response,
)

logger = get_logger(name=__name__)

_STREAM_LIMIT = 16 * 1024 * 1024


def _parse_command(raw: Any) -> list[str]:
    if isinstance(raw, str):
        return shlex.split(raw)
    if isinstance(raw, Sequence) and raw and all(isinstance(item, str) for item in raw):
        return list(raw)
    raise ValueError("subprocess provider 'command' must be a string or a list of strings")


class SubprocessConnector:
    """Provider living in a child process that speaks one JSON object per line.

    Requests are ``{"id", "method", "params"}``; replies are ``{"id", "result"}``
    or ``{"id", "error": {"code", "message"}}``. The connector owns exactly one
    child; requests on the same instance are serialized by an internal lock. A
    request abandoned after it was written (timeout or cancellation) kills the
    child, since its stdout can no longer be trusted to line up with requests.
    A request abandoned while still queued for the lock leaves the child alone.
    """

    transport = TransportKind.SUBPROCESS

    def __init__(
        self,
        provider_id: str,
        config: Mapping[str, Any],
        *,
        default_timeout: float,
        terminate_grace_seconds: float,
    ) -> None:
        self.provider_id = provider_id
        self._command = _parse_command(config.get("command"))
        self._env = dict(config["env"]) if config.get("env") else None
        self._cwd = config.get("cwd")
        self._default_timeout = float(config.get("timeout_seconds") or default_timeout)
        self._grace = max(0.0, float(config.get("terminate_grace_seconds", terminate_grace_seconds)))
        self._process: asyncio.subprocess.Process | None = None
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._spawn_lock = asyncio.Lock()
        self._in_flight: int | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    async def connect(self) -> Connection:
        async with self._spawn_lock:
            process = self._process
            if process is not None and process.returncode is None:
                return Connection(transport=self.transport, handle=process, info={"pid": process.pid})
            if process is not None:
                await self._reap(process)
            try:
                process = await asyncio.create_subprocess_exec(
                    *self._command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL,
                    env=self._env,
                    cwd=self._cwd,
                    limit=_STREAM_LIMIT,
                )
            except OSError as exc:
                raise ProviderConnectionError(
                    f"Could not start '{self._command[0]}' for provider '{self.provider_id}': {exc}",
                    provider_id=self.provider_id,
                ) from exc
            self._process = process
            logger.info("subprocess_started", provider=self.provider_id, pid=process.pid)
            return Connection(transport=self.transport, handle=process, info={"pid": process.pid})

    async def invoke(self, task: Task, workspace: WorkspaceSnapshot) -> ToolResponse:
        timeout = remaining_timeout(task, self._default_timeout)
        started = time.perf_counter()
        result = await self._call("invoke", build_envelope(task, workspace), timeout=timeout)
        return success_response(
            provider_id=self.provider_id,
            task=task,
            payload=result,
            started=started,
            transport=self.transport,
            metadata={"pid": self.pid},
        )

    async def health(self) -> bool:
        process = self._process
        if self._in_flight is not None and process is not None and process.returncode is None:
            # busy child answering another request
            return True
        try:
            result = await self._call("ping", {}, timeout=self._default_timeout)
        except ProviderError as exc:
            logger.debug("subprocess_health_failed", provider=self.provider_id, error=str(exc))
            return False
        return result in (None, "pong", {}) or (isinstance(result, dict) and result.get("status") == "ok")

    async def disconnect(self) -> None:
        async with self._spawn_lock:
            process, self._process = self._process, None
        if process is not None:
            await self._reap(process)

    async def list_operations(self) -> frozenset[str] | None:
        try:
            result = await self._call("capabilities", {}, timeout=self._default_timeout)
        except UnsupportedOperationError:
            return None
        if isinstance(result, dict):
            result = result.get("capabilities")
        if not isinstance(result, list):
            raise ProviderInvocationError(
                "capabilities reply must be a list", provider_id=self.provider_id, kind=ErrorKind.INVALID_RESPONSE
            )
        return frozenset(str(item).lower() for item in result if isinstance(item, str))

    async def _call(self, method: str, params: Mapping[str, Any], *, timeout: float) -> Any:
        request_id = next(self._ids)
        try:
            return await enforce_deadline(
                self._request(request_id, method, params),
                timeout=timeout,
                provider_id=self.provider_id,
                operation=method,
            )
        except ProviderTimeoutError:
            logger.warning("subprocess_timeout", provider=self.provider_id, operation=method, timeout=timeout)
            raise

    async def _request(self, request_id: int, method: str, params: Mapping[str, Any]) -> Any:
        line = json.dumps({"id": request_id, "method": method, "params": dict(params)}) + "\n"
        async with self._lock:
            connection = await self.connect()
            process: asyncio.subprocess.Process = connection.handle
            if process.stdin is None or process.stdout is None:
                raise ProviderConnectionError("child process has no pipes", provider_id=self.provider_id)
            self._in_flight = request_id
            try:
                process.stdin.write(line.encode("utf-8"))
                await process.stdin.drain()
                raw = await process.stdout.readline()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise ProviderConnectionError(
                    f"Provider '{self.provider_id}' pipe closed: {exc}",
                    provider_id=self.provider_id,
                    kind=ErrorKind.CONNECTION_RESET,
                ) from exc
            except asyncio.CancelledError:
                # written but unanswered: stdout no longer lines up with requests
                await asyncio.shield(self.disconnect())
                raise
            finally:
                self._in_flight = None
        if not raw:
            raise ProviderConnectionError(
                f"Provider '{self.provider_id}' exited before replying",
                provider_id=self.provider_id,
                kind=ErrorKind.CONNECTION_RESET,
            )
        try:
            reply = json.loads(raw)
        except ValueError as exc:
            raise ProviderInvocationError(
                "reply is not valid JSON", provider_id=self.provider_id, kind=ErrorKind.INVALID_RESPONSE
            ) from exc
        if not isinstance(reply, dict) or reply.get("id") != request_id:
            raise ProviderInvocationError(
                "reply does not match the request", provider_id=self.provider_id, kind=ErrorKind.INVALID_RESPONSE
            )
        error = reply.get("error")
        if error:
            raise attach_provider(self._error_from_reply(method, error), self.provider_id)
        return reply.get("result")

    @staticmethod
    def _error_from_reply(method: str, error: Any) -> ProviderError:
        if isinstance(error, dict):
            message = str(error.get("message") or "unknown error")
            code = error.get("code")
        else:
            message, code = str(error), None
        if code == "unsupported" or code == -32601:
            return UnsupportedOperationError(f"'{method}' unsupported: {message}")
        return ProviderInvocationError(f"'{method}' failed: {message}", kind=classify_error_message(message))

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is not None:
            with suppress(Exception):
                process.stdin.close()
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._grace or 0.01)
            except asyncio.TimeoutError:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        else:
            await process.wait()
        logger.info("subprocess_reaped", provider=self.provider_id, pid=process.pid, returncode=process.returncode)


__all__ = ["SubprocessConnector"]
