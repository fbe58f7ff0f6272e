from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .exceptions import (
    AllProvidersFailedError,
    NoCapableProviderError,
    ProviderNotFoundError,
    TaskCancelledError,
    UnknownTaskError,
)
from .orchestration.core import Orchestrator
from .schemas.api import (
    OverrideRequest,
    OverrideResponse,
    ProviderRegistrationRequest,
    RoutingExplanation,
    TaskSubmission,
)
from .schemas.tasks import Task

__all__ = ["router", "get_orchestrator"]

router = APIRouter()


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Orchestrator not started")
    return orchestrator


@router.get("/health", tags=["health"])
async def health(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    providers = orchestrator.list_providers()
    states: dict[str, int] = {}
    for provider in providers:
        states[provider.health.value] = states.get(provider.health.value, 0) + 1
    return {"status": "ok", "providers": len(providers), "states": states}


@router.get("/metrics", tags=["observability"])
async def metrics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Response:
    if not orchestrator.settings.observability.prometheus_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/providers", tags=["providers"])
async def list_providers(orchestrator: Orchestrator = Depends(get_orchestrator)) -> list[dict[str, Any]]:
    return [provider.as_dict() for provider in orchestrator.list_providers()]


@router.post("/providers", status_code=status.HTTP_201_CREATED, tags=["providers"])
async def register_provider(
    payload: ProviderRegistrationRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        provider = await orchestrator.register_provider(
            payload.id,
            payload.transport,
            payload.config,
            payload.declared_capabilities,
            exclusive=payload.exclusive,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return provider.as_dict()


@router.delete("/providers/{provider_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["providers"])
async def deregister_provider(provider_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> Response:
    if not await orchestrator.deregister_provider(provider_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/tasks", tags=["tasks"])
async def submit_task(
    payload: TaskSubmission,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        task = Task.create(
            payload.task_type,
            payload.description,
            required_capabilities=payload.required_capabilities,
            language=payload.language,
            domain=payload.domain,
            timeout_seconds=payload.timeout_seconds,
            metadata=payload.metadata,
            task_id=payload.task_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    try:
        result = await orchestrator.submit_task(task, payload.workspace.to_snapshot())
    except NoCapableProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": "no_capable_provider",
                "message": str(exc),
                "plan": exc.plan.as_dict() if exc.plan else None,
            },
        ) from exc
    except AllProvidersFailedError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "all_providers_failed", "message": str(exc), "failures": exc.failures},
        ) from exc
    except TaskCancelledError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "cancelled", "message": str(exc)},
        ) from exc
    return result.as_dict()


@router.get("/tasks/{task_id}/routing", response_model=RoutingExplanation, tags=["tasks"])
async def explain_routing(task_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)) -> RoutingExplanation:
    try:
        rationale = orchestrator.explain_routing(task_id)
        plan = orchestrator.recall_plan(task_id)
    except UnknownTaskError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found") from exc
    return RoutingExplanation(task_id=task_id, rationale=rationale, plan=plan.as_dict())


@router.post("/tasks/{task_id}/override", response_model=OverrideResponse, tags=["tasks"])
async def record_override(
    task_id: str,
    payload: OverrideRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> OverrideResponse:
    try:
        weight = orchestrator.record_user_override(task_id, payload.provider_id)
    except UnknownTaskError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found") from exc
    except ProviderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found") from exc
    return OverrideResponse(task_id=task_id, provider_id=payload.provider_id, weight=weight)
