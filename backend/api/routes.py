"""HTTP API routes for the Campaign Saga backend.

This module defines the HTTP endpoints for projects, stage dispatch, user
selections, task records, metrics and health checks. Real-time task
notifications are served over WebSocket in websocket.py.

Error responses carry a generic message; the technical cause is logged.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Annotated

import structlog
from fastapi import APIRouter, Body, HTTPException, Path, status

from errors import (
    DispatchError,
    IllegalTransitionError,
    MissingCorrelationError,
    ProjectNotFoundError,
)
from events.bus import TopicHub
from events.credentials import TopicTokenIssuer
from events.types import task_topic
from metrics import MetricsCollector
from models.database import ProjectStore, TaskStore
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
    TaskResponse,
)
from saga.briefs import assemble_brief
from saga.dispatcher import TaskDispatcher
from worker.worker import TaskWorker
from workflow.state_machine import ProjectStatus, StageType, can_dispatch

logger = structlog.get_logger(__name__)

router = APIRouter()

PROJECT_NOT_FOUND = "Project not found"
STAGE_NOT_ALLOWED = "This step is not available for the project's current status"
QUEUE_UNAVAILABLE = "The generation service is unavailable. Please try again."


@dataclass
class Services:
    """Application services shared by the HTTP routes.

    Attributes:
        projects: Project store.
        tasks: Task audit store.
        dispatcher: Stage dispatcher.
        metrics: Execution metrics collector.
        hub: Topic hub (health reporting).
        token_issuer: Mints subscriber tokens for dispatched tasks.
        worker: Task worker, if one runs in this process.
    """

    projects: ProjectStore
    tasks: TaskStore
    dispatcher: TaskDispatcher
    metrics: MetricsCollector
    hub: TopicHub
    token_issuer: TopicTokenIssuer
    worker: TaskWorker | None = None


# Services dependency (set during application startup)
_services: Services | None = None


def set_services(services: Services) -> None:
    """Set the services used by all routes.

    This should be called during application startup.
    """
    global _services
    _services = services
    logger.info("route_services_configured")


def get_services() -> Services:
    """Get the configured services.

    Raises:
        RuntimeError: If the services have not been configured.
    """
    if _services is None:
        logger.error("route_services_not_configured")
        raise RuntimeError("Services not configured. Call set_services() during startup.")
    return _services


async def _load_project(project_id: int) -> dict:
    project = await get_services().projects.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=PROJECT_NOT_FOUND)
    return project


# -----------------------------------------------------------------------------
# Projects
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project",
)
async def create_project(request: CreateProjectRequest) -> ProjectResponse:
    project = await get_services().projects.create_project(
        name=request.name,
        user_id=request.user_id,
        sector=request.sector,
        brief=request.brief,
    )
    return ProjectResponse.model_validate(project)


@router.get(
    "/api/projects/{project_id}",
    response_model=ProjectDetailResponse,
    summary="Get a project with its stage results",
)
async def get_project(
    project_id: Annotated[int, Path(description="The project ID")],
) -> ProjectDetailResponse:
    services = get_services()
    project = await _load_project(project_id)
    return ProjectDetailResponse.model_validate({
        **project,
        "personas": await services.projects.list_personas(project_id),
        "competitors": await services.projects.list_competitors(project_id),
        "competitor_analysis": await services.projects.get_competitor_analysis(project_id),
        "strategy": await services.projects.get_strategy(project_id),
        "assets": await services.projects.list_assets(project_id),
    })


@router.post(
    "/api/projects/{project_id}/enrich",
    response_model=ProjectResponse,
    summary="Validate the project brief",
    description="Merge brief updates and move a draft project to enriched.",
)
async def enrich_project(
    project_id: Annotated[int, Path(description="The project ID")],
    request: EnrichProjectRequest,
) -> ProjectResponse:
    projects = get_services().projects
    project = await _load_project(project_id)
    current = project["status"]
    if current not in (ProjectStatus.DRAFT, ProjectStatus.ENRICHED):
        logger.warning("enrich_rejected", project_id=project_id, status=current.value)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=STAGE_NOT_ALLOWED)

    await projects.update_brief(project_id, request.brief)
    if current == ProjectStatus.DRAFT:
        await projects.transition_status(project_id, ProjectStatus.DRAFT, ProjectStatus.ENRICHED)
    return ProjectResponse.model_validate(await _load_project(project_id))


@router.get(
    "/api/projects/{project_id}/status",
    response_model=ProjectStatusResponse,
    summary="Project status with per-stage result flags",
    description="Polling fallback for clients that cannot rely on the notification topic.",
)
async def get_project_status(
    project_id: Annotated[int, Path(description="The project ID")],
) -> ProjectStatusResponse:
    projects = get_services().projects
    project = await _load_project(project_id)
    counts = await projects.count_stage_results(project_id)
    return ProjectStatusResponse(
        project_id=project_id,
        status=project["status"],
        has_personas=counts[StageType.PERSONA] > 0,
        has_competitors=counts[StageType.COMPETITOR_DETECTION] > 0,
        has_competitor_analysis=counts[StageType.COMPETITOR_ANALYSIS] > 0,
        has_strategy=counts[StageType.STRATEGY] > 0,
        has_assets=counts[StageType.ASSETS] > 0,
    )


# -----------------------------------------------------------------------------
# Stage dispatch
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects/{project_id}/stages/{stage}",
    response_model=DispatchStageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Dispatch a generation stage",
    description=(
        "Start a stage asynchronously. The response names the task topic and a "
        "subscriber token valid for that topic only."
    ),
)
async def dispatch_stage(
    project_id: Annotated[int, Path(description="The project ID")],
    stage: Annotated[StageType, Path(description="The stage to run")],
    request: Annotated[DispatchStageRequest | None, Body()] = None,
) -> DispatchStageResponse:
    services = get_services()
    request = request or DispatchStageRequest()
    project = await _load_project(project_id)

    if not can_dispatch(stage, project["status"]):
        logger.warning(
            "dispatch_rejected_status",
            project_id=project_id,
            stage=stage.value,
            status=project["status"].value,
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=STAGE_NOT_ALLOWED)

    brief = await assemble_brief(services.projects, project, stage, request.brief)
    options = {
        **request.options,
        "project_id": project_id,
        "user_id": request.user_id if request.user_id is not None else project["user_id"],
    }
    try:
        task_id = await services.dispatcher.dispatch(stage, brief, options)
    except ProjectNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=PROJECT_NOT_FOUND
        ) from None
    except IllegalTransitionError as e:
        logger.warning("dispatch_rejected_transition", project_id=project_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=STAGE_NOT_ALLOWED
        ) from e
    except MissingCorrelationError as e:
        logger.warning("dispatch_rejected_correlation", project_id=project_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid user"
        ) from e
    except DispatchError as e:
        logger.error(
            "dispatch_unavailable",
            project_id=project_id,
            stage=stage.value,
            attempts=e.attempts,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=QUEUE_UNAVAILABLE
        ) from e

    topic = task_topic(task_id)
    token = services.token_issuer.issue([topic])
    current = await services.projects.get_status(project_id)
    return DispatchStageResponse(
        task_id=task_id,
        stage=stage,
        topic=topic,
        subscriber_token=token,
        websocket_url=f"/ws/tasks/{task_id}?token={token}",
        status=current or project["status"],
    )


# -----------------------------------------------------------------------------
# User selections
# -----------------------------------------------------------------------------


@router.put(
    "/api/projects/{project_id}/personas/selection",
    response_model=SelectionResponse,
    summary="Select personas",
)
async def select_personas(
    project_id: Annotated[int, Path(description="The project ID")],
    request: SelectionRequest,
) -> SelectionResponse:
    projects = get_services().projects
    project = await _load_project(project_id)
    try:
        await projects.select_personas(project_id, request.ids)
    except ValueError as e:
        logger.warning("persona_selection_rejected", project_id=project_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid persona selection"
        ) from e
    return SelectionResponse(
        project_id=project_id, status=project["status"], selected=sorted(set(request.ids))
    )


@router.put(
    "/api/projects/{project_id}/competitors/selection",
    response_model=SelectionResponse,
    summary="Select and validate competitors",
    description="Mark the chosen competitors as selected and move the project to "
    "competitor_validated.",
)
async def select_competitors(
    project_id: Annotated[int, Path(description="The project ID")],
    request: SelectionRequest,
) -> SelectionResponse:
    projects = get_services().projects
    try:
        new_status = await projects.select_competitors(project_id, request.ids)
    except ProjectNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=PROJECT_NOT_FOUND
        ) from None
    except IllegalTransitionError as e:
        logger.warning("competitor_selection_rejected", project_id=project_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=STAGE_NOT_ALLOWED
        ) from e
    except ValueError as e:
        logger.warning("competitor_selection_invalid", project_id=project_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid competitor selection"
        ) from e
    return SelectionResponse(
        project_id=project_id, status=new_status, selected=sorted(set(request.ids))
    )


@router.post(
    "/api/projects/{project_id}/assets/{asset_id}/review",
    response_model=AssetReviewResponse,
    summary="Approve or reject an asset",
)
async def review_asset(
    project_id: Annotated[int, Path(description="The project ID")],
    asset_id: Annotated[int, Path(description="The asset ID")],
    request: AssetReviewRequest,
) -> AssetReviewResponse:
    await _load_project(project_id)
    updated = await get_services().projects.review_asset(project_id, asset_id, request.decision)
    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Asset not found")
    return AssetReviewResponse(asset_id=asset_id, status=request.decision)


# -----------------------------------------------------------------------------
# Tasks, metrics, health
# -----------------------------------------------------------------------------


@router.get(
    "/api/tasks/{task_id}",
    response_model=TaskResponse,
    summary="Get a task audit record",
)
async def get_task(
    task_id: Annotated[str, Path(description="The task ID")],
) -> TaskResponse:
    record = await get_services().tasks.get_task(task_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return TaskResponse.model_validate(record)


@router.get(
    "/api/metrics",
    response_model=MetricsResponse,
    summary="Execution metrics per stage",
)
async def get_metrics() -> MetricsResponse:
    return MetricsResponse.model_validate({"stages": get_services().metrics.snapshot()})


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check() -> HealthResponse:
    """Health check with notification and worker status."""
    active_topics = 0
    worker_running = False
    if _services is not None:
        active_topics = len(_services.hub.get_active_topics())
        worker_running = _services.worker is not None and _services.worker.is_running
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_topics=active_topics,
        worker_running=worker_running,
    )
