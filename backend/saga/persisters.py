"""Completed-event consumers that store stage results.

There is one persister per stage. Each one filters on its stage tag,
locates the project through the event's correlation context, maps the
parsed output to table rows and hands them to
``ProjectStore.replace_stage_results``, which replaces the stage's rows
and advances the status in a single guarded transaction.

Storage errors propagate: the lifecycle bus reports them and the worker
redelivers the event. Events that can never be persisted (no project id,
deleted project) are logged and dropped.
"""

from abc import ABC, abstractmethod
from typing import Any, cast

import structlog

from errors import ProjectNotFoundError
from events.types import LifecycleEvent, TaskCompleted
from models.database import ProjectStore
from models.outputs import (
    AssetOutput,
    CompetitorAnalysisOutput,
    CompetitorOutput,
    PersonaOutput,
    StageOutput,
    StrategyOutput,
)
from workflow.state_machine import STAGES, StageType

logger = structlog.get_logger(__name__)


class StagePersister(ABC):
    """Base class: guard, locate and replace. Subclasses map rows.

    Attributes:
        stage: Stage whose Completed events this persister handles.
        store: Project store.
    """

    stage: StageType

    def __init__(self, store: ProjectStore) -> None:
        self.store = store

    @property
    def name(self) -> str:
        return f"{self.stage.value}_persister"

    @abstractmethod
    def build_rows(self, output: StageOutput) -> list[dict[str, Any]]:
        """Map the parsed stage output to rows of the stage table."""

    async def __call__(self, event: LifecycleEvent) -> None:
        if not isinstance(event, TaskCompleted) or event.stage != self.stage:
            return

        project_id = event.context.project_id
        if project_id is None:
            logger.error(
                "persist_dropped_missing_project_id",
                task_id=event.task_id,
                stage=self.stage.value,
            )
            return

        definition = STAGES[self.stage]
        rows = self.build_rows(event.output)
        try:
            replaced = await self.store.replace_stage_results(
                project_id,
                self.stage,
                rows,
                expected=definition.in_progress,
                target=definition.completed,
                task_id=event.task_id,
            )
        except ProjectNotFoundError:
            logger.error(
                "persist_dropped_project_not_found",
                task_id=event.task_id,
                project_id=project_id,
                stage=self.stage.value,
            )
            return

        if replaced:
            logger.info(
                "stage_results_persisted",
                task_id=event.task_id,
                project_id=project_id,
                stage=self.stage.value,
                row_count=len(rows),
            )


class PersonaPersister(StagePersister):
    stage = StageType.PERSONA

    def build_rows(self, output: StageOutput) -> list[dict[str, Any]]:
        output = cast(PersonaOutput, output)
        return [
            {
                "name": persona.name,
                "description": persona.description.text,
                "age": persona.age,
                "gender": persona.gender,
                "job": persona.job,
                "quality_score": persona.quality_score,
                "raw_data": persona.raw_data,
            }
            for persona in output.personas
        ]


class CompetitorPersister(StagePersister):
    """Stores detected competitors, all unselected until the user validates."""

    stage = StageType.COMPETITOR_DETECTION

    def build_rows(self, output: StageOutput) -> list[dict[str, Any]]:
        output = cast(CompetitorOutput, output)
        return [
            {
                "domain": competitor.domain,
                "title": competitor.title,
                "url": competitor.url,
                "alignment_score": competitor.alignment_score,
                "reasoning": competitor.reasoning.text if competitor.reasoning else None,
                "offering_overlap": (
                    competitor.offering_overlap.text if competitor.offering_overlap else None
                ),
                "market_overlap": (
                    competitor.market_overlap.text if competitor.market_overlap else None
                ),
                "has_ads": competitor.has_ads,
                "raw_data": competitor.raw_data,
            }
            for competitor in output.competitors
        ]


class CompetitorAnalysisPersister(StagePersister):
    """Stores the market analysis. The project stays in strategy_in_progress."""

    stage = StageType.COMPETITOR_ANALYSIS

    def build_rows(self, output: StageOutput) -> list[dict[str, Any]]:
        output = cast(CompetitorAnalysisOutput, output)
        return [
            {
                "competitors": output.competitors.text,
                "strengths": output.strengths.text,
                "weaknesses": output.threats.text,
                "market_positioning": output.market_overview.text,
                "differentiation_opportunities": output.opportunities.text,
                "marketing_strategies": output.recommendations.text,
            }
        ]


class StrategyPersister(StagePersister):
    stage = StageType.STRATEGY

    def build_rows(self, output: StageOutput) -> list[dict[str, Any]]:
        output = cast(StrategyOutput, output)
        return [
            {
                "positioning": output.positioning.text,
                "key_messages": output.key_messages.text,
                "recommended_channels": output.recommended_channels.text,
                "timeline": output.timeline.text,
                "budget_allocation": output.budget_allocation.text,
                "kpis": output.kpis.text,
                "quality_score": output.quality_score,
            }
        ]


class AssetPersister(StagePersister):
    stage = StageType.ASSETS

    def build_rows(self, output: StageOutput) -> list[dict[str, Any]]:
        output = cast(AssetOutput, output)
        return [
            {
                "asset_type": asset.asset_type,
                "channel": asset.channel,
                "content": asset.content.text,
                "variations": asset.variations.text if asset.variations else None,
                "quality_score": asset.quality_score,
                "status": "draft",
            }
            for asset in output.assets
        ]


PERSISTERS: dict[StageType, type[StagePersister]] = {
    StageType.PERSONA: PersonaPersister,
    StageType.COMPETITOR_DETECTION: CompetitorPersister,
    StageType.COMPETITOR_ANALYSIS: CompetitorAnalysisPersister,
    StageType.STRATEGY: StrategyPersister,
    StageType.ASSETS: AssetPersister,
}
