"""Saga step that continues competitor analysis into strategy generation.

Runs in the competitor-analysis Completed chain after the analysis
persister, so the analysis it reads back is already stored when the
strategy task is dispatched. The strategy dispatch is a continuation: the
project already holds strategy_in_progress and keeps it.
"""

import structlog

from events.types import LifecycleEvent, TaskCompleted
from models.database import ProjectStore, TaskStore
from saga.briefs import build_strategy_brief
from saga.dispatcher import TaskDispatcher
from saga.publisher import NotificationPublisher
from workflow.state_machine import STAGES, StageType

logger = structlog.get_logger(__name__)


class AnalysisNotPersistedError(RuntimeError):
    """The analysis row for the completed task is not in the store yet."""


class SagaChainer:
    """Dispatches the strategy stage when a competitor analysis completes.

    Dispatch errors propagate so the worker redelivers the event. A
    redelivery after a successful dispatch finds the chained task in the
    audit table and does nothing.

    Attributes:
        projects: Project store.
        tasks: Task audit store.
        dispatcher: Dispatcher for the follow-up stage.
        publisher: Announces the follow-up task on the parent's topic.
    """

    name = "saga_chainer"
    source_stage = StageType.COMPETITOR_ANALYSIS
    target_stage = StageType.STRATEGY

    def __init__(
        self,
        projects: ProjectStore,
        tasks: TaskStore,
        dispatcher: TaskDispatcher,
        publisher: NotificationPublisher,
    ) -> None:
        self.projects = projects
        self.tasks = tasks
        self.dispatcher = dispatcher
        self.publisher = publisher

    async def __call__(self, event: LifecycleEvent) -> None:
        if not isinstance(event, TaskCompleted) or event.stage != self.source_stage:
            return

        project_id = event.context.project_id
        log = logger.bind(task_id=event.task_id, project_id=project_id)
        if project_id is None:
            log.error("chain_dropped_missing_project_id")
            return

        project = await self.projects.get_project(project_id)
        if project is None:
            log.error("chain_dropped_project_not_found")
            return
        expected = STAGES[self.target_stage].in_progress
        if project["status"] != expected:
            log.info("chain_skipped_status", status=project["status"].value)
            return

        existing = await self.tasks.find_chained_task(event.task_id)
        if existing is not None:
            log.info("chain_already_dispatched", next_task_id=existing)
            return

        analysis = await self.projects.get_competitor_analysis(project_id)
        if analysis is None or analysis.get("task_id") != event.task_id:
            raise AnalysisNotPersistedError(
                f"Competitor analysis of task {event.task_id} is not stored"
            )

        personas = await self.projects.list_personas(project_id, selected_only=True)
        personas = personas or await self.projects.list_personas(project_id)
        competitors = await self.projects.list_competitors(project_id, selected_only=True)

        brief = build_strategy_brief(project, personas, competitors, analysis, event.result)
        next_task_id = await self.dispatcher.dispatch(
            self.target_stage,
            brief,
            {
                "project_id": project_id,
                "user_id": event.context.user_id,
                "chained_from": event.task_id,
            },
        )
        log.info(
            "saga_chained",
            next_task_id=next_task_id,
            next_stage=self.target_stage.value,
            competitor_count=len(competitors),
            persona_count=len(personas),
        )
        await self.publisher.publish_chained_start(event, next_task_id, self.target_stage)
