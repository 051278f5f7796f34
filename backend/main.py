"""FastAPI application entry point for the Campaign Saga backend.

This module initializes the FastAPI application with all middleware,
routers, and the task pipeline (stores, dispatcher, lifecycle chains,
worker) wired in the lifespan handler.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents import build_stage_agents
from api.routes import Services, router, set_services
from api.websocket import set_token_issuer, websocket_router
from config import configure_logging, settings
from events import TopicTokenIssuer, get_topic_hub
from metrics import MetricsCollector
from models.database import ProjectStore, TaskStore
from saga import TaskDispatcher, build_lifecycle_bus
from worker import InMemoryTaskQueue, TaskWorker

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the pipeline, re-enqueues tasks left pending by a previous run
    and starts the worker; stops the worker on shutdown.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
    )

    projects = ProjectStore(settings.database_path)
    tasks = TaskStore(settings.database_path)
    await projects.init()

    hub = get_topic_hub()
    token_issuer = TopicTokenIssuer(
        settings.topic_token_secret, ttl_minutes=settings.topic_token_ttl_minutes
    )
    metrics = MetricsCollector()
    queue = InMemoryTaskQueue()
    dispatcher = TaskDispatcher(projects, tasks, queue)
    bus = build_lifecycle_bus(projects, tasks, dispatcher, hub, metrics, token_issuer)
    worker = TaskWorker(queue, bus, build_stage_agents(), tasks)

    set_services(
        Services(
            projects=projects,
            tasks=tasks,
            dispatcher=dispatcher,
            metrics=metrics,
            hub=hub,
            token_issuer=token_issuer,
            worker=worker,
        )
    )
    set_token_issuer(token_issuer)
    app.state.worker = worker

    await worker.requeue_pending()
    await worker.start()
    logger.info("application_started")

    yield

    logger.info("application_shutting_down")
    await worker.stop()
    for topic in hub.get_active_topics():
        try:
            await hub.close_topic(topic)
        except Exception as e:
            logger.warning("close_topic_failed", topic=topic, error=str(e))
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Campaign Saga",
    description="Asynchronous orchestration of campaign generation stages: "
    "personas, competitors, competitor analysis, strategy and assets.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, tags=["projects"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "Campaign Saga API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
