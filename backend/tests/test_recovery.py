"""Tests for saga/recovery.py -- reverting in-progress status on failure."""

from typing import Any
from unittest.mock import AsyncMock

from events.types import TaskFailed
from models.database import ProjectStore
from saga.recovery import FailureRecoveryHandler
from tests.conftest import force_status, make_completed, make_context, make_failed, make_project
from workflow.state_machine import ProjectStatus, StageType, can_dispatch

S = ProjectStatus


def _failed(
    stage: StageType, project_id: int, previous: ProjectStatus | None = None, **kw: Any
) -> TaskFailed:
    return make_failed(
        stage, context=make_context(stage, project_id, previous_status=previous), **kw
    )


# =========================================================================
# Reversion
# =========================================================================


class TestFailureRecovery:
    """Failed events release the project from its in-progress status."""

    async def test_strategy_failure_reverts_and_allows_retry(
        self, project_store: ProjectStore
    ) -> None:
        pid = await make_project(project_store, S.STRATEGY_IN_PROGRESS)
        handler = FailureRecoveryHandler(StageType.STRATEGY, project_store)

        await handler(_failed(StageType.STRATEGY, pid, S.COMPETITOR_VALIDATED))

        status = await project_store.get_status(pid)
        assert status == S.PERSONA_GENERATED
        assert can_dispatch(StageType.STRATEGY, status)
        await project_store.begin_stage(pid, StageType.STRATEGY)
        assert await project_store.get_status(pid) == S.STRATEGY_IN_PROGRESS

    async def test_duplicate_failure_is_noop(self, project_store: ProjectStore) -> None:
        pid = await make_project(project_store, S.STRATEGY_IN_PROGRESS)
        handler = FailureRecoveryHandler(StageType.STRATEGY, project_store)
        event = _failed(StageType.STRATEGY, pid)

        await handler(event)
        await force_status(project_store, pid, S.COMPETITOR_VALIDATED)
        await handler(event)

        assert await project_store.get_status(pid) == S.COMPETITOR_VALIDATED

    async def test_project_past_stage_is_untouched(self, project_store: ProjectStore) -> None:
        pid = await make_project(project_store, S.STRATEGY_GENERATED)
        await FailureRecoveryHandler(StageType.STRATEGY, project_store)(
            _failed(StageType.STRATEGY, pid)
        )
        assert await project_store.get_status(pid) == S.STRATEGY_GENERATED

    async def test_persona_failure_returns_to_previous_status(
        self, project_store: ProjectStore
    ) -> None:
        pid = await make_project(project_store, S.PERSONA_IN_PROGRESS)
        await FailureRecoveryHandler(StageType.PERSONA, project_store)(
            _failed(StageType.PERSONA, pid, S.DRAFT)
        )
        assert await project_store.get_status(pid) == S.DRAFT

    async def test_persona_failure_defaults_to_enriched(self, project_store: ProjectStore) -> None:
        pid = await make_project(project_store, S.PERSONA_IN_PROGRESS)
        await FailureRecoveryHandler(StageType.PERSONA, project_store)(
            _failed(StageType.PERSONA, pid)
        )
        assert await project_store.get_status(pid) == S.ENRICHED

    async def test_analysis_failure_reverts_shared_status(
        self, project_store: ProjectStore
    ) -> None:
        pid = await make_project(project_store, S.STRATEGY_IN_PROGRESS)
        await FailureRecoveryHandler(StageType.COMPETITOR_ANALYSIS, project_store)(
            _failed(StageType.COMPETITOR_ANALYSIS, pid, S.COMPETITOR_VALIDATED)
        )
        assert await project_store.get_status(pid) == S.PERSONA_GENERATED

    async def test_assets_failure(self, project_store: ProjectStore) -> None:
        pid = await make_project(project_store, S.ASSETS_IN_PROGRESS)
        await FailureRecoveryHandler(StageType.ASSETS, project_store)(
            _failed(StageType.ASSETS, pid, S.ASSETS_GENERATED)
        )
        assert await project_store.get_status(pid) == S.STRATEGY_GENERATED

    async def test_unrecoverable_failure_also_reverts(self, project_store: ProjectStore) -> None:
        pid = await make_project(project_store, S.COMPETITOR_IN_PROGRESS)
        await FailureRecoveryHandler(StageType.COMPETITOR_DETECTION, project_store)(
            _failed(StageType.COMPETITOR_DETECTION, pid, is_recoverable=False)
        )
        assert await project_store.get_status(pid) == S.PERSONA_GENERATED


# =========================================================================
# Filtering and error handling
# =========================================================================


class TestRecoveryGuards:
    async def test_ignores_other_stage_and_type(self) -> None:
        store = AsyncMock()
        handler = FailureRecoveryHandler(StageType.STRATEGY, store)
        await handler(make_failed(StageType.PERSONA))
        await handler(make_completed(StageType.STRATEGY))
        store.transition_status.assert_not_called()

    async def test_missing_project_id(self) -> None:
        store = AsyncMock()
        handler = FailureRecoveryHandler(StageType.STRATEGY, store)
        await handler(
            make_failed(
                StageType.STRATEGY, context=make_context(StageType.STRATEGY, project_id=None)
            )
        )
        store.transition_status.assert_not_called()

    async def test_store_errors_are_swallowed(self) -> None:
        store = AsyncMock()
        store.transition_status.side_effect = RuntimeError("database is locked")
        handler = FailureRecoveryHandler(StageType.STRATEGY, store)
        await handler(make_failed(StageType.STRATEGY))
        store.transition_status.assert_awaited_once()

    def test_name(self) -> None:
        assert FailureRecoveryHandler(StageType.ASSETS, AsyncMock()).name == "assets_recovery"
