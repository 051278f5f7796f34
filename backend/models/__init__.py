"""Models module: API schemas, stage outputs and persistence.

This module exposes the request/response models used by the API.
"""

from models.schemas import (
    AssetReviewRequest,
    AssetReviewResponse,
    CreateProjectRequest,
    DispatchStageRequest,
    DispatchStageResponse,
    EnrichProjectRequest,
    HealthResponse,
    MetricsResponse,
    ProjectDetailResponse,
    ProjectResponse,
    ProjectStatusResponse,
    SelectionRequest,
    SelectionResponse,
    StageMetrics,
    TaskResponse,
)

__all__ = [
    "AssetReviewRequest",
    "AssetReviewResponse",
    "CreateProjectRequest",
    "DispatchStageRequest",
    "DispatchStageResponse",
    "EnrichProjectRequest",
    "HealthResponse",
    "MetricsResponse",
    "ProjectDetailResponse",
    "ProjectResponse",
    "ProjectStatusResponse",
    "SelectionRequest",
    "SelectionResponse",
    "StageMetrics",
    "TaskResponse",
]
