from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .enums import TransportKind
from .tasks import OpenFile, WorkspaceSnapshot


class ProviderRegistrationRequest(BaseModel):
    id: str = Field(..., min_length=1)
    transport: TransportKind
    config: dict[str, Any] = Field(default_factory=dict)
    declared_capabilities: list[str] = Field(default_factory=list)
    exclusive: bool = False


class OpenFileModel(BaseModel):
    path: str
    language: str | None = None
    content: str = ""


class WorkspaceModel(BaseModel):
    workspace_root: str | None = None
    open_files: list[OpenFileModel] = Field(default_factory=list)
    selection: str | None = None
    project_type: str | None = None
    technologies: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)

    def to_snapshot(self) -> WorkspaceSnapshot:
        return WorkspaceSnapshot(
            workspace_root=self.workspace_root,
            open_files=tuple(
                OpenFile(path=item.path, language=item.language, content=item.content) for item in self.open_files
            ),
            selection=self.selection,
            project_type=self.project_type,
            technologies=tuple(self.technologies),
            dependencies=tuple(self.dependencies),
        )


class TaskSubmission(BaseModel):
    task_type: str = Field(..., min_length=1)
    description: str = ""
    required_capabilities: list[str] | None = None
    language: str | None = None
    domain: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0.0)
    task_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    workspace: WorkspaceModel = Field(default_factory=WorkspaceModel)


class OverrideRequest(BaseModel):
    provider_id: str = Field(..., min_length=1)


class RoutingExplanation(BaseModel):
    task_id: str
    rationale: str
    plan: dict[str, Any]


class OverrideResponse(BaseModel):
    task_id: str
    provider_id: str
    weight: float


__all__ = [
    "OpenFileModel",
    "OverrideRequest",
    "OverrideResponse",
    "ProviderRegistrationRequest",
    "RoutingExplanation",
    "TaskSubmission",
    "WorkspaceModel",
]
