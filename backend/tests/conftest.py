"""Shared test fixtures for backend tests.

Provides temporary SQLite stores, a fresh TopicHub, event factories and
canned agent results, so tests never touch a real LLM API or the
application database.
"""

import os
import sys
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Use litellm's bundled model cost map instead of fetching it over the
# network in a background thread at import time, which races with test
# module imports when offline.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from saga.dispatcher import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

import aiosqlite  # noqa: E402

from events.bus import TopicHub, reset_topic_hub  # noqa: E402
from events.credentials import TopicTokenIssuer  # noqa: E402
from events.types import (  # noqa: E402
    CorrelationContext,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStarted,
)
from models.database import ProjectStore, TaskStore  # noqa: E402
from workflow.state_machine import STAGES, ProjectStatus, StageType  # noqa: E402

TOKEN_SECRET = "test-topic-secret-with-enough-bytes-for-hs256"

# ---------------------------------------------------------------------------
# Canned agent results
# ---------------------------------------------------------------------------

PERSONA_RESULT: dict[str, Any] = {
    "personas": [{"name": "Alice", "age": 30, "gender": "F", "job": "CTO"}]
}

COMPETITOR_RESULT: dict[str, Any] = {
    "competitors": [
        {
            "domain": f"rival{i}.com",
            "title": f"Rival {i}",
            "url": f"https://rival{i}.com",
            "hasAds": i % 2 == 0,
            "validation": {
                "alignmentScore": 60 + i,
                "reasoning": f"Overlap {i}",
                "offeringOverlap": ["payments"],
                "marketOverlap": "SMB",
            },
        }
        for i in range(1, 6)
    ]
}

ANALYSIS_RESULT: dict[str, Any] = {
    "market_overview": "Crowded SMB payments market",
    "strengths": ["brand"],
    "threats": ["price war"],
    "opportunities": ["vertical focus"],
    "recommendations": ["lead with onboarding speed"],
    "competitors": [{"domain": "rival1.com", "note": "leader"}],
}

STRATEGY_RESULT: dict[str, Any] = {
    "strategy": {
        "positioning": "Fastest onboarding",
        "key_messages": ["Live in a day"],
        "recommended_channels": [{"channel": "search", "rationale": "intent"}],
        "timeline": [{"phase": "launch", "duration": "4w", "actions": ["ads"]}],
        "budget_allocation": {"search": 0.6, "social": 0.4},
        "kpis": [{"name": "signups", "target": 500}],
        "quality_score": 80,
    }
}

ASSET_RESULT: dict[str, Any] = {
    "assets": [
        {"asset_type": "google_ads", "content": {"headline": "Go live today"}, "quality_score": 70},
        {"asset_type": "mail", "content": "Hello"},
    ]
}

STAGE_RESULTS: dict[StageType, dict[str, Any]] = {
    StageType.PERSONA: PERSONA_RESULT,
    StageType.COMPETITOR_DETECTION: COMPETITOR_RESULT,
    StageType.COMPETITOR_ANALYSIS: ANALYSIS_RESULT,
    StageType.STRATEGY: STRATEGY_RESULT,
    StageType.ASSETS: ASSET_RESULT,
}

# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_path(tmp_path: Any) -> str:
    return str(tmp_path / "campaigns.db")


@pytest.fixture()
async def project_store(db_path: str) -> ProjectStore:
    """Initialized ProjectStore on a temporary database."""
    store = ProjectStore(db_path)
    await store.init()
    return store


@pytest.fixture()
async def task_store(db_path: str, project_store: ProjectStore) -> TaskStore:
    """TaskStore sharing the temporary database of ``project_store``."""
    return TaskStore(db_path)


async def force_status(store: ProjectStore, project_id: int, status: ProjectStatus) -> None:
    """Set a project's status directly, bypassing the transition guard."""
    async with aiosqlite.connect(store.db_path) as db:
        await db.execute(
            "UPDATE projects SET status = ? WHERE id = ?", (status.value, project_id)
        )
        await db.commit()


async def make_project(
    store: ProjectStore,
    status: ProjectStatus = ProjectStatus.DRAFT,
    user_id: int = 9,
    sector: str = "Fintech",
) -> int:
    """Create a project and move it to ``status``."""
    project = await store.create_project(
        name="Spring launch", user_id=user_id, sector=sector, brief={"goal": "signups"}
    )
    if status != ProjectStatus.DRAFT:
        await force_status(store, project["id"], status)
    return project["id"]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@pytest.fixture()
def hub() -> TopicHub:
    """Return a fresh TopicHub instance for each test."""
    reset_topic_hub()
    return TopicHub(put_timeout=0.1)


@pytest.fixture()
def token_issuer() -> TopicTokenIssuer:
    return TopicTokenIssuer(TOKEN_SECRET, ttl_minutes=5)


@pytest.fixture()
def mock_queue() -> AsyncMock:
    """Task queue whose submit() succeeds."""
    queue = AsyncMock()
    queue.submit = AsyncMock(return_value=None)
    return queue


@pytest.fixture()
def mock_llm_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set USE_MOCK_LLM=true in the environment."""
    monkeypatch.setenv("USE_MOCK_LLM", "true")


# ---------------------------------------------------------------------------
# Event factories
# ---------------------------------------------------------------------------


def make_context(
    stage: StageType,
    project_id: int | None = 1,
    user_id: int | None = 9,
    previous_status: ProjectStatus | None = None,
    **extra: Any,
) -> CorrelationContext:
    return CorrelationContext(
        project_id=project_id,
        user_id=user_id,
        stage=stage,
        previous_status=previous_status.value if previous_status else None,
        extra=extra,
    )


def _base(stage: StageType, task_id: str, context: CorrelationContext | None) -> dict[str, Any]:
    return {
        "task_id": task_id,
        "stage": stage,
        "agent_id": STAGES[stage].agent_id,
        "context": context or make_context(stage),
    }


def make_started(
    stage: StageType, task_id: str = "task-1", context: CorrelationContext | None = None
) -> TaskStarted:
    return TaskStarted(**_base(stage, task_id, context))


def make_progress(
    stage: StageType,
    percentage: int = 50,
    task_id: str = "task-1",
    context: CorrelationContext | None = None,
) -> TaskProgress:
    return TaskProgress(**_base(stage, task_id, context), percentage=percentage, message="Working")


def make_completed(
    stage: StageType,
    result: dict[str, Any] | None = None,
    task_id: str = "task-1",
    context: CorrelationContext | None = None,
    **fields: Any,
) -> TaskCompleted:
    return TaskCompleted(
        **_base(stage, task_id, context),
        result=STAGE_RESULTS[stage] if result is None else result,
        **fields,
    )


def make_failed(
    stage: StageType,
    error: str = "model timeout",
    task_id: str = "task-1",
    context: CorrelationContext | None = None,
    is_recoverable: bool = True,
) -> TaskFailed:
    return TaskFailed(
        **_base(stage, task_id, context), error=error, is_recoverable=is_recoverable
    )
