"""Stage input assembly from stored project data."""

from typing import Any

from models.database import ProjectStore
from models.normalization import unwrap_result
from workflow.state_machine import StageType

# Persisted analysis column -> key in the strategy brief
_ANALYSIS_BRIEF_KEYS = {
    "market_positioning": "market_overview",
    "strengths": "strengths",
    "weaknesses": "threats",
    "differentiation_opportunities": "opportunities",
    "marketing_strategies": "recommendations",
}

_STRATEGY_BRIEF_KEYS = (
    "positioning",
    "key_messages",
    "recommended_channels",
    "timeline",
    "budget_allocation",
    "kpis",
)


def project_section(project: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": project["name"],
        "sector": project.get("sector"),
        **(project.get("brief") or {}),
    }


def persona_briefs(personas: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [persona.get("raw_data") or {"name": persona["name"]} for persona in personas]


def competitor_briefs(competitors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Competitors with their validation data in the detector's shape."""
    briefs = []
    for competitor in competitors:
        raw = competitor.get("raw_data")
        briefs.append({
            **(raw if isinstance(raw, dict) else {}),
            "domain": competitor["domain"],
            "title": competitor["title"],
            "url": competitor.get("url"),
            "validation": {
                "alignmentScore": competitor.get("alignment_score", 0),
                "reasoning": competitor.get("reasoning"),
                "offeringOverlap": competitor.get("offering_overlap"),
                "marketOverlap": competitor.get("market_overlap"),
            },
        })
    return briefs


def build_strategy_brief(
    project: dict[str, Any],
    personas: list[dict[str, Any]],
    competitors: list[dict[str, Any]],
    analysis: dict[str, Any] | None,
    result: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Assemble the strategy stage input.

    The analysis section merges the raw analysis result with the stored
    analysis columns; stored values win.
    """
    merged_analysis = dict(unwrap_result(result) if isinstance(result, dict) else {})
    for column, key in _ANALYSIS_BRIEF_KEYS.items():
        if analysis and analysis.get(column):
            merged_analysis[key] = analysis[column]

    return {
        "project": project_section(project),
        "personas": persona_briefs(personas),
        "competitors": competitor_briefs(competitors),
        "competitor_analysis": merged_analysis,
    }


async def _selected_or_all_personas(
    projects: ProjectStore, project_id: int
) -> list[dict[str, Any]]:
    personas = await projects.list_personas(project_id, selected_only=True)
    return personas or await projects.list_personas(project_id)


async def assemble_brief(
    projects: ProjectStore,
    project: dict[str, Any],
    stage: StageType,
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the input of a user-dispatched stage.

    Each stage sees the project brief plus what earlier stages stored:
    personas from detection onwards, selected competitors from analysis
    onwards, the stored analysis for strategy and the stored strategy for
    assets. ``overrides`` are merged last.
    """
    project_id = project["id"]
    brief: dict[str, Any] = {"project": project_section(project)}

    if stage == StageType.STRATEGY:
        brief = build_strategy_brief(
            project,
            await _selected_or_all_personas(projects, project_id),
            await projects.list_competitors(project_id, selected_only=True),
            await projects.get_competitor_analysis(project_id),
        )
    elif stage != StageType.PERSONA:
        brief["personas"] = persona_briefs(await _selected_or_all_personas(projects, project_id))
        if stage == StageType.COMPETITOR_ANALYSIS:
            brief["competitors"] = competitor_briefs(
                await projects.list_competitors(project_id, selected_only=True)
            )
        elif stage == StageType.ASSETS:
            strategy = await projects.get_strategy(project_id) or {}
            brief["strategy"] = {key: strategy.get(key) for key in _STRATEGY_BRIEF_KEYS}

    brief.update(overrides or {})
    return brief
