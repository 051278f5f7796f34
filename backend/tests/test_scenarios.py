"""End-to-end saga runs: dispatcher -> queue -> worker -> consumer chains.

Every test wires the real lifecycle bus, stores and dispatcher; only the
generation agents are replaced, either by canned results or by the
MockLLMClient-backed stage agents.
"""

import asyncio
from dataclasses import dataclass
from typing import Any
from unittest.mock import AsyncMock

import pytest

from agents.base import AgentResult, ProgressCallback
from agents.llm import MockLLMClient
from agents.stage_agent import build_stage_agents
from errors import AgentError
from events.bus import TopicHub
from events.credentials import TopicTokenIssuer
from metrics import MetricsCollector
from models.database import ProjectStore, TaskStore
from rate_limiter import RateLimiter
from saga import TaskDispatcher, assemble_brief, build_lifecycle_bus
from tests.conftest import STAGE_RESULTS, make_completed, make_context, make_project
from worker import InMemoryTaskQueue, TaskWorker
from workflow.state_machine import ProjectStatus, StageType

S = ProjectStatus

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _CannedAgent:
    def __init__(self, stage: StageType, failures: int = 0) -> None:
        self.stage = stage
        self.agent_id = stage.value
        self.failures = failures

    async def generate(
        self,
        brief: dict[str, Any],
        options: dict[str, Any],
        report_progress: ProgressCallback,
    ) -> AgentResult:
        await report_progress(50, "Generating")
        if self.failures:
            self.failures -= 1
            raise AgentError("provider unavailable", is_recoverable=True)
        return AgentResult(result=STAGE_RESULTS[self.stage])


@dataclass
class _Saga:
    projects: ProjectStore
    tasks: TaskStore
    queue: InMemoryTaskQueue
    dispatcher: TaskDispatcher
    worker: TaskWorker
    metrics: MetricsCollector

    async def dispatch(self, pid: int, stage: StageType, **options: Any) -> str:
        project = await self.projects.get_project(pid)
        brief = await assemble_brief(self.projects, project, stage)
        return await self.dispatcher.dispatch(
            stage, brief, {"project_id": pid, "user_id": 9, **options}
        )

    async def drain(self) -> None:
        """Process queued tasks, including chained ones, until the queue is empty."""
        while self.queue.qsize():
            message = await self.queue.get()
            await self.worker.process(message)
            self.queue.task_done()


def _build_saga(
    projects: ProjectStore,
    tasks: TaskStore,
    hub: TopicHub,
    issuer: TopicTokenIssuer,
    agents: dict[StageType, Any],
) -> _Saga:
    queue = InMemoryTaskQueue()
    dispatcher = TaskDispatcher(projects, tasks, queue, retry_delay=0)
    metrics = MetricsCollector()
    bus = build_lifecycle_bus(projects, tasks, dispatcher, hub, metrics, issuer)
    worker = TaskWorker(queue, bus, agents, tasks, redelivery_delay=0)
    return _Saga(projects, tasks, queue, dispatcher, worker, metrics)


@pytest.fixture()
def saga(
    project_store: ProjectStore,
    task_store: TaskStore,
    hub: TopicHub,
    token_issuer: TopicTokenIssuer,
) -> _Saga:
    agents = {stage: _CannedAgent(stage) for stage in StageType}
    return _build_saga(project_store, task_store, hub, token_issuer, agents)


async def _validated(saga: _Saga) -> int:
    """Run personas and detection, then select competitors 2 and 4."""
    pid = await make_project(saga.projects)
    await saga.dispatch(pid, StageType.PERSONA)
    await saga.drain()
    await saga.dispatch(pid, StageType.COMPETITOR_DETECTION)
    await saga.drain()
    ids = [c["id"] for c in await saga.projects.list_competitors(pid)]
    await saga.projects.select_competitors(pid, [ids[1], ids[3]])
    return pid


# =========================================================================
# Scenarios
# =========================================================================


class TestScenarios:
    async def test_persona_generation(self, saga: _Saga) -> None:
        pid = await make_project(saga.projects)

        task_id = await saga.dispatch(pid, StageType.PERSONA, sector="Fintech")
        assert await saga.projects.get_status(pid) == S.PERSONA_IN_PROGRESS
        await saga.drain()

        assert await saga.projects.get_status(pid) == S.PERSONA_GENERATED
        personas = await saga.projects.list_personas(pid)
        assert [p["name"] for p in personas] == ["Alice"]
        task = await saga.tasks.get_task(task_id)
        assert task["status"] == "completed"
        assert saga.metrics.get(StageType.PERSONA).completed == 1

    async def test_detection_and_validation(self, saga: _Saga) -> None:
        pid = await _validated(saga)

        competitors = await saga.projects.list_competitors(pid)
        assert len(competitors) == 5
        assert [c["selected"] for c in competitors] == [False, True, False, True, False]
        assert await saga.projects.get_status(pid) == S.COMPETITOR_VALIDATED

    async def test_analysis_chains_into_strategy(
        self, saga: _Saga, hub: TopicHub
    ) -> None:
        pid = await _validated(saga)
        analysis_task = await saga.dispatch(pid, StageType.COMPETITOR_ANALYSIS)
        updates = hub.subscribe(f"tasks/{analysis_task}")

        message = await saga.queue.get()
        await saga.worker.process(message)
        saga.queue.task_done()

        assert await saga.projects.get_status(pid) == S.STRATEGY_IN_PROGRESS
        assert saga.queue.qsize() == 1
        strategy_message = await saga.queue.get()
        assert strategy_message.stage == StageType.STRATEGY
        assert strategy_message.context.extra["chained_from"] == analysis_task
        domains = [c["domain"] for c in strategy_message.brief["competitors"]]
        assert domains == ["rival2.com", "rival4.com"]

        await saga.worker.process(strategy_message)
        saga.queue.task_done()
        assert await saga.projects.get_status(pid) == S.STRATEGY_GENERATED
        assert (await saga.projects.get_strategy(pid))["positioning"] == "Fastest onboarding"

        received = []
        while not updates.empty():
            received.append(updates.get_nowait())
        assert [m["type"] for m in received] == ["Started", "Progress", "Completed", "Started"]
        assert received[-1]["taskId"] == strategy_message.task_id

    async def test_strategy_failure_reverts_and_retry_succeeds(
        self,
        project_store: ProjectStore,
        task_store: TaskStore,
        hub: TopicHub,
        token_issuer: TopicTokenIssuer,
    ) -> None:
        agents: dict[StageType, Any] = {stage: _CannedAgent(stage) for stage in StageType}
        agents[StageType.STRATEGY] = _CannedAgent(StageType.STRATEGY, failures=1)
        saga = _build_saga(project_store, task_store, hub, token_issuer, agents)
        pid = await _validated(saga)

        failed_task = await saga.dispatch(pid, StageType.STRATEGY)
        await saga.drain()

        assert await saga.projects.get_status(pid) == S.PERSONA_GENERATED
        assert (await saga.tasks.get_task(failed_task))["status"] == "failed"
        assert saga.metrics.get(StageType.STRATEGY).failed == 1

        await saga.dispatch(pid, StageType.STRATEGY)
        await saga.drain()
        assert await saga.projects.get_status(pid) == S.STRATEGY_GENERATED

    async def test_chained_strategy_failure_reverts(
        self,
        project_store: ProjectStore,
        task_store: TaskStore,
        hub: TopicHub,
        token_issuer: TopicTokenIssuer,
    ) -> None:
        agents: dict[StageType, Any] = {stage: _CannedAgent(stage) for stage in StageType}
        agents[StageType.STRATEGY] = _CannedAgent(StageType.STRATEGY, failures=1)
        saga = _build_saga(project_store, task_store, hub, token_issuer, agents)
        pid = await _validated(saga)

        await saga.dispatch(pid, StageType.COMPETITOR_ANALYSIS)
        await saga.drain()

        assert await saga.projects.get_status(pid) == S.PERSONA_GENERATED
        assert await saga.projects.get_competitor_analysis(pid) is not None

    async def test_failure_notification_is_generic(
        self,
        project_store: ProjectStore,
        task_store: TaskStore,
        hub: TopicHub,
        token_issuer: TopicTokenIssuer,
    ) -> None:
        agents: dict[StageType, Any] = {StageType.PERSONA: _CannedAgent(StageType.PERSONA, 1)}
        saga = _build_saga(project_store, task_store, hub, token_issuer, agents)
        pid = await make_project(saga.projects)
        task_id = await saga.dispatch(pid, StageType.PERSONA)
        updates = hub.subscribe(f"tasks/{task_id}")

        await saga.drain()

        messages = []
        while not updates.empty():
            messages.append(updates.get_nowait())
        assert messages[-1]["type"] == "Failed"
        assert "provider unavailable" not in str(messages[-1])
        assert (await saga.tasks.get_task(task_id))["error_message"] == "provider unavailable"
        assert await saga.projects.get_status(pid) == S.DRAFT


# =========================================================================
# Notification outage
# =========================================================================


class TestPublishIsolation:
    """A pub/sub outage never stops results from being stored."""

    async def test_completed_chain_commits_when_publish_fails(
        self,
        project_store: ProjectStore,
        task_store: TaskStore,
        hub: TopicHub,
        token_issuer: TopicTokenIssuer,
        mock_queue: AsyncMock,
    ) -> None:
        hub.publish = AsyncMock(  # type: ignore[method-assign]
            side_effect=ConnectionError("pub/sub unavailable")
        )
        dispatcher = TaskDispatcher(project_store, task_store, mock_queue, retry_delay=0)
        bus = build_lifecycle_bus(
            project_store, task_store, dispatcher, hub, MetricsCollector(), token_issuer
        )
        pid = await make_project(project_store, S.PERSONA_IN_PROGRESS)

        await bus.deliver(
            make_completed(StageType.PERSONA, context=make_context(StageType.PERSONA, pid))
        )

        hub.publish.assert_awaited_once()
        assert await project_store.get_status(pid) == S.PERSONA_GENERATED
        assert [p["name"] for p in await project_store.list_personas(pid)] == ["Alice"]

    async def test_saga_runs_through_outage(self, saga: _Saga, hub: TopicHub) -> None:
        pid = await _validated(saga)
        hub.publish = AsyncMock(  # type: ignore[method-assign]
            side_effect=ConnectionError("pub/sub unavailable")
        )

        await saga.dispatch(pid, StageType.COMPETITOR_ANALYSIS)
        await saga.drain()

        assert hub.publish.await_count > 0
        assert await saga.projects.get_status(pid) == S.STRATEGY_GENERATED
        assert await saga.projects.get_strategy(pid) is not None
        assert saga.metrics.get(StageType.STRATEGY).completed == 1


# =========================================================================
# Full pipeline with the mock LLM
# =========================================================================


class TestMockLLMPipeline:
    async def test_all_stages(
        self,
        project_store: ProjectStore,
        task_store: TaskStore,
        hub: TopicHub,
        token_issuer: TopicTokenIssuer,
    ) -> None:
        llm = MockLLMClient(rate_limiter=RateLimiter())
        saga = _build_saga(
            project_store, task_store, hub, token_issuer, build_stage_agents(llm)
        )
        pid = await make_project(saga.projects)

        await saga.dispatch(pid, StageType.PERSONA)
        await saga.drain()
        assert len(await saga.projects.list_personas(pid)) == 2

        await saga.dispatch(pid, StageType.COMPETITOR_DETECTION)
        await saga.drain()
        ids = [c["id"] for c in await saga.projects.list_competitors(pid)]
        await saga.projects.select_competitors(pid, ids[:2])

        await saga.dispatch(pid, StageType.COMPETITOR_ANALYSIS)
        await saga.drain()
        assert await saga.projects.get_status(pid) == S.STRATEGY_GENERATED

        await saga.dispatch(pid, StageType.ASSETS)
        await asyncio.wait_for(saga.drain(), timeout=5.0)
        assert await saga.projects.get_status(pid) == S.ASSETS_GENERATED
        assets = await saga.projects.list_assets(pid)
        assert {a["channel"] for a in assets} == {"search", "social"}
        agent_ids = [call["agent_id"] for call in llm.call_history]
        assert agent_ids == [
            "persona_generator",
            "competitor_detector",
            "competitor_analyst",
            "strategy_optimizer",
            "content_creator",
        ]
