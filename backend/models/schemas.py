"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API. Responses are
serialized with camelCase keys; requests accept either camelCase or
snake_case field names.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workflow.state_machine import ProjectStatus, StageType


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Projects
# =============================================================================


class CreateProjectRequest(_ApiModel):
    """Request body for creating a project."""

    name: str = Field(
        min_length=1,
        max_length=200,
        description="Project name",
        examples=["Spring launch"],
    )
    user_id: int = Field(description="Owner of the project", examples=[9])
    sector: str | None = Field(
        default=None,
        max_length=200,
        description="Business sector",
        examples=["Fintech"],
    )
    brief: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form project brief handed to the agents",
    )


class EnrichProjectRequest(_ApiModel):
    """Request body validating a draft brief."""

    brief: dict[str, Any] = Field(
        default_factory=dict,
        description="Brief fields merged into the stored brief",
    )


class ProjectResponse(_ApiModel):
    """A project without its stage results."""

    id: int
    name: str
    sector: str | None = None
    brief: dict[str, Any] = Field(default_factory=dict)
    user_id: int
    status: ProjectStatus
    created_at: float
    updated_at: float


class ProjectDetailResponse(ProjectResponse):
    """A project with every stored stage result."""

    personas: list[dict[str, Any]] = Field(default_factory=list)
    competitors: list[dict[str, Any]] = Field(default_factory=list)
    competitor_analysis: dict[str, Any] | None = None
    strategy: dict[str, Any] | None = None
    assets: list[dict[str, Any]] = Field(default_factory=list)


class ProjectStatusResponse(_ApiModel):
    """Fallback status used to confirm a stage without the notification."""

    project_id: int
    status: ProjectStatus
    has_personas: bool
    has_competitors: bool
    has_competitor_analysis: bool
    has_strategy: bool
    has_assets: bool


# =============================================================================
# Stage dispatch
# =============================================================================


class DispatchStageRequest(_ApiModel):
    """Request body for dispatching a stage."""

    user_id: int | None = Field(
        default=None,
        description="User triggering the dispatch; the project owner when omitted",
    )
    brief: dict[str, Any] = Field(
        default_factory=dict,
        description="Brief fields merged over the assembled stage input",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Agent options (e.g. model, asset_type), echoed in the correlation context",
    )


class DispatchStageResponse(_ApiModel):
    """Where to follow a dispatched task."""

    task_id: str = Field(description="Task identifier")
    stage: StageType
    topic: str = Field(description="Topic carrying the task's notifications")
    subscriber_token: str = Field(description="Credential for exactly this topic")
    websocket_url: str = Field(examples=["/ws/tasks/6f1c...?token=..."])
    status: ProjectStatus = Field(description="Project status after the dispatch")


# =============================================================================
# User selections
# =============================================================================


class SelectionRequest(_ApiModel):
    """Ids of the rows to mark as selected; every other row is unselected."""

    ids: list[int] = Field(min_length=1)


class SelectionResponse(_ApiModel):
    project_id: int
    status: ProjectStatus
    selected: list[int]


class AssetReviewRequest(_ApiModel):
    decision: Literal["approved", "rejected"]


class AssetReviewResponse(_ApiModel):
    asset_id: int
    status: Literal["approved", "rejected"]


# =============================================================================
# Tasks, metrics, health
# =============================================================================


class TaskResponse(_ApiModel):
    """Audit record of one dispatched task."""

    uuid: str
    stage_type: StageType
    agent_id: str
    status: Literal["pending", "processing", "completed", "failed"]
    arguments: dict[str, Any] | None = None
    context: dict[str, Any] | None = None
    result: dict[str, Any] | None = None
    tokens_input: int | None = None
    tokens_output: int | None = None
    tokens_total: int | None = None
    cost: float | None = None
    duration_ms: int | None = None
    model_used: str | None = None
    error_message: str | None = None
    started_at: float | None = None
    completed_at: float | None = None
    created_at: float


class StageMetrics(_ApiModel):
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    tokens_input: int = Field(default=0, ge=0)
    tokens_output: int = Field(default=0, ge=0)
    tokens_total: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0)
    duration_ms: int = Field(default=0, ge=0)


class MetricsResponse(_ApiModel):
    stages: dict[StageType, StageMetrics]


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_topics: int = Field(
        default=0,
        description="Number of topics with at least one subscriber",
    )
    worker_running: bool = Field(
        default=False,
        description="Whether the task worker loops are running",
    )


class ErrorResponse(BaseModel):
    detail: str
