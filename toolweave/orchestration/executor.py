"""Runs a routing plan against live connectors.

The primary provider and its fallback chain form one lane that is walked
strictly in order; each supporting provider gets a lane of its own, and all
lanes run concurrently. Responses are buffered on an ``ExecutionOutcome`` and
only written to performance records by ``commit``, so a cancelled task leaves
no trace in any provider's history.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from ..connectors import ConnectorPool
from ..core import metrics
from ..core.config import ExecutionSettings
from ..core.logging import get_logger
from ..exceptions import ProviderError, ProviderNotFoundError, TaskCancelledError
from ..providers.registry import ProviderRegistry
from ..schemas.enums import ErrorKind
from ..schemas.routing import RoutingPlan, ToolResponse
from ..schemas.tasks import Task, WorkspaceSnapshot

logger = get_logger(name=__name__)

ConnectionLostCallback = Callable[[str, str], Awaitable[Any]]


@dataclass(slots=True)
class ExecutionOutcome:
    task_id: str
    responses: list[ToolResponse] = field(default_factory=list)
    failures: dict[str, list[str]] = field(default_factory=dict)
    attempted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    capability_unavailable: bool = False

    @property
    def successes(self) -> list[ToolResponse]:
        return [response for response in self.responses if response.success]

    def add(self, provider_id: str, responses: Sequence[ToolResponse]) -> None:
        if provider_id not in self.attempted:
            self.attempted.append(provider_id)
        for response in responses:
            self.responses.append(response)
            if not response.success:
                kind = response.error_kind.value if response.error_kind else ErrorKind.PROVIDER_ERROR.value
                self.failures.setdefault(provider_id, []).append(f"{kind}: {response.error}")

    def skip(self, provider_ids: Sequence[str], reason: str) -> None:
        for provider_id in provider_ids:
            self.skipped.append(provider_id)
            self.failures.setdefault(provider_id, []).append(f"skipped: {reason}")

    def merge(self, other: "ExecutionOutcome") -> None:
        for provider_id in other.attempted:
            if provider_id not in self.attempted:
                self.attempted.append(provider_id)
        self.responses.extend(other.responses)
        for provider_id, reasons in other.failures.items():
            self.failures.setdefault(provider_id, []).extend(reasons)
        self.skipped.extend(other.skipped)
        self.capability_unavailable = other.capability_unavailable


class PlanExecutor:
    def __init__(
        self,
        registry: ProviderRegistry,
        pool: ConnectorPool,
        settings: ExecutionSettings,
        *,
        smoothing: float,
        on_connection_lost: ConnectionLostCallback | None = None,
    ) -> None:
        self._registry = registry
        self._pool = pool
        self._settings = settings
        self._smoothing = smoothing
        self._on_connection_lost = on_connection_lost
        self._retryable = frozenset(ErrorKind(kind) for kind in settings.retryable_error_kinds)

    async def execute(self, task: Task, plan: RoutingPlan, workspace: WorkspaceSnapshot) -> ExecutionOutcome:
        if task.cancellation.cancelled:
            raise TaskCancelledError(task.id)
        outcome = ExecutionOutcome(task_id=task.id)
        if plan.primary is None:
            return outcome

        lanes = [self._run_lane(task, (plan.primary, *plan.fallback), workspace, outcome)]
        lanes.extend(self._run_lane(task, (provider_id,), workspace, outcome) for provider_id in plan.supporting)
        workers = [asyncio.create_task(lane) for lane in lanes]
        watcher = asyncio.create_task(task.cancellation.wait())
        try:
            pending = set(workers)
            while pending and not watcher.done():
                done, _ = await asyncio.wait(pending | {watcher}, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
            if task.cancellation.cancelled:
                await self._abandon(workers)
                outcome.responses.clear()
                logger.info(
                    "task_cancelled_in_flight",
                    task_id=task.id,
                    reason=task.cancellation.reason,
                    attempted=list(outcome.attempted),
                )
                raise TaskCancelledError(task.id)
            for worker in workers:
                worker.result()
        finally:
            watcher.cancel()
            await self._abandon(workers)
        return outcome

    def commit(self, outcome: ExecutionOutcome) -> None:
        """Fold every buffered response into its provider's performance record."""
        for response in outcome.responses:
            if response.error_kind is ErrorKind.CANCELLED:
                continue
            try:
                self._registry.record_performance(
                    response.provider_id,
                    success=response.success,
                    latency_seconds=response.latency_seconds,
                    smoothing=self._smoothing,
                )
            except ProviderNotFoundError:
                logger.debug("performance_discarded", provider=response.provider_id, task_id=outcome.task_id)

    async def _run_lane(
        self,
        task: Task,
        provider_ids: Sequence[str],
        workspace: WorkspaceSnapshot,
        outcome: ExecutionOutcome,
    ) -> None:
        for index, provider_id in enumerate(provider_ids):
            if task.is_expired():
                outcome.skip(provider_ids[index:], "deadline elapsed")
                return
            responses = await self._attempt_provider(task, provider_id, workspace)
            outcome.add(provider_id, responses)
            last = responses[-1]
            if last.success:
                return
            if last.error_kind is ErrorKind.CAPABILITY_UNAVAILABLE:
                outcome.capability_unavailable = True
                outcome.skip(provider_ids[index + 1 :], "capability class unavailable")
                return
            if index + 1 < len(provider_ids):
                logger.info(
                    "fallback_advanced",
                    task_id=task.id,
                    failed=provider_id,
                    next=provider_ids[index + 1],
                    error_kind=last.error_kind.value if last.error_kind else None,
                )

    async def _attempt_provider(
        self,
        task: Task,
        provider_id: str,
        workspace: WorkspaceSnapshot,
    ) -> list[ToolResponse]:
        provider = self._registry.get(provider_id)
        if provider is None:
            return [
                ToolResponse.failed(
                    provider_id=provider_id,
                    task_id=task.id,
                    error_kind=ErrorKind.CONNECTION,
                    error="provider is no longer registered",
                )
            ]
        transport = provider.transport.value
        responses: list[ToolResponse] = []
        max_attempts = 1 + self._settings.retries_per_provider
        for attempt in range(1, max_attempts + 1):
            started = time.perf_counter()
            try:
                connector = await self._pool.acquire(provider)
                response = replace(await connector.invoke(task, workspace), attempt=attempt)
            except ProviderError as exc:
                response = ToolResponse.failed(
                    provider_id=provider_id,
                    task_id=task.id,
                    error_kind=exc.kind,
                    error=str(exc),
                    latency_seconds=time.perf_counter() - started,
                    attempt=attempt,
                    metadata={"transport": transport},
                )
            except ValueError as exc:
                response = ToolResponse.failed(
                    provider_id=provider_id,
                    task_id=task.id,
                    error_kind=ErrorKind.PROVIDER_ERROR,
                    error=f"invalid provider configuration: {exc}",
                    attempt=attempt,
                    metadata={"transport": transport},
                )
            responses.append(response)
            metrics.record_provider_invocation(
                provider=provider_id,
                transport=transport,
                outcome="success" if response.success else response.error_kind.value,
                latency=response.latency_seconds,
            )
            if response.success:
                return responses

            logger.warning(
                "provider_attempt_failed",
                task_id=task.id,
                provider=provider_id,
                attempt=attempt,
                error_kind=response.error_kind.value,
                error=response.error,
            )
            if response.error_kind is ErrorKind.CONNECTION and self._on_connection_lost is not None:
                await self._on_connection_lost(provider_id, response.error or "connection error")
            if attempt == max_attempts or not self._should_retry(task, response, attempt):
                break
            metrics.increment_provider_retry(provider=provider_id, error_kind=response.error_kind.value)
            await asyncio.sleep(self._settings.retry_backoff_seconds * attempt)
        return responses

    def _should_retry(self, task: Task, response: ToolResponse, attempt: int) -> bool:
        if response.error_kind not in self._retryable:
            return False
        remaining = task.remaining_seconds()
        return remaining is None or remaining > self._settings.retry_backoff_seconds * attempt

    @staticmethod
    async def _abandon(workers: Sequence[asyncio.Task[None]]) -> None:
        live = [worker for worker in workers if not worker.done()]
        for worker in live:
            worker.cancel()
        if live:
            await asyncio.gather(*live, return_exceptions=True)


__all__ = ["ExecutionOutcome", "PlanExecutor"]
