"""Typed stage outputs parsed from raw agent results.

``parse_stage_output`` is the single place where a raw ``result`` map is
turned into domain-shaped data. It runs when a Completed event is built,
so every consumer downstream sees the same normalized values.
"""

from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    PlainValidator,
    ValidationError,
    model_validator,
)

from models.normalization import (
    NormalizedField,
    channel_for,
    extract_age,
    normalize_field,
    normalize_optional_field,
    score_to_quality,
    unwrap_result,
)
from workflow.state_machine import StageType

TextField = Annotated[
    NormalizedField,
    PlainValidator(normalize_field),
    PlainSerializer(lambda field: field.text, return_type=str),
]
OptionalTextField = Annotated[
    NormalizedField | None,
    PlainValidator(normalize_optional_field),
    PlainSerializer(lambda field: field.text if field else None, return_type=str | None),
]

DEFAULT_PERSONA_NAME = "Persona Default"


class _Output(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


# ---------------------------------------------------------------------------
# Persona
# ---------------------------------------------------------------------------


class PersonaRecord(_Output):
    name: str
    description: TextField = Field(default_factory=lambda: normalize_field(""))
    age: int
    gender: str
    job: str
    quality_score: float | None = None
    raw_data: dict[str, Any]


class PersonaOutput(_Output):
    personas: list[PersonaRecord]

    @model_validator(mode="before")
    @classmethod
    def _collect(cls, data: Any) -> Any:
        if isinstance(data, cls):
            return data
        data = unwrap_result(data)
        if isinstance(data, dict) and "personas" in data:
            items = data["personas"]
        elif isinstance(data, dict) and "name" in data:
            items = [data]
        elif isinstance(data, list):
            items = data
        else:
            raise ValueError("persona result has no personas")
        if not isinstance(items, list):
            raise ValueError("personas must be a list")
        return {"personas": [p for p in (_persona(item) for item in items) if p]}


def _persona(item: Any) -> dict[str, Any] | None:
    if not isinstance(item, dict):
        return None
    name = item.get("name")
    if not isinstance(name, str) or not name.strip() or name == DEFAULT_PERSONA_NAME:
        return None
    demographics = item.get("demographics")
    if not isinstance(demographics, dict):
        demographics = item
    job = (
        demographics.get("profession")
        or demographics.get("job")
        or item.get("job")
        or "Unspecified"
    )
    return {
        "name": name.strip(),
        "description": item.get("description", ""),
        "age": extract_age(demographics.get("age", item.get("age"))),
        "gender": str(demographics.get("gender") or item.get("gender") or "N/A"),
        "job": str(job),
        "quality_score": score_to_quality(item.get("score")),
        "raw_data": item,
    }


# ---------------------------------------------------------------------------
# Competitors
# ---------------------------------------------------------------------------


class CompetitorRecord(_Output):
    domain: str
    title: str
    url: str | None = None
    alignment_score: int = 0
    reasoning: OptionalTextField = None
    offering_overlap: OptionalTextField = None
    market_overlap: OptionalTextField = None
    has_ads: bool = False
    raw_data: dict[str, Any]


class CompetitorOutput(_Output):
    competitors: list[CompetitorRecord]

    @model_validator(mode="before")
    @classmethod
    def _collect(cls, data: Any) -> Any:
        if isinstance(data, cls):
            return data
        data = unwrap_result(data)
        if not isinstance(data, dict) or not isinstance(data.get("competitors"), list):
            raise ValueError("competitor result has no competitors list")
        return {
            "competitors": [
                _competitor(item) for item in data["competitors"] if isinstance(item, dict)
            ]
        }


def _competitor(item: dict[str, Any]) -> dict[str, Any]:
    validation = item.get("validation")
    if not isinstance(validation, dict):
        validation = {}
    score = validation.get("alignmentScore", 0)
    return {
        "domain": str(item.get("domain") or "N/A"),
        "title": str(item.get("title") or "N/A"),
        "url": str(item["url"]) if item.get("url") else None,
        "alignment_score": int(score) if isinstance(score, (int, float)) else 0,
        "reasoning": validation.get("reasoning"),
        "offering_overlap": validation.get("offeringOverlap"),
        "market_overlap": validation.get("marketOverlap"),
        "has_ads": bool(item.get("hasAds", False)),
        "raw_data": item,
    }


# ---------------------------------------------------------------------------
# Competitor analysis
# ---------------------------------------------------------------------------


class CompetitorAnalysisOutput(_Output):
    market_overview: TextField
    threats: TextField
    opportunities: TextField
    recommendations: TextField
    strengths: TextField
    competitors: TextField
    raw: dict[str, Any]

    @model_validator(mode="before")
    @classmethod
    def _collect(cls, data: Any) -> Any:
        if isinstance(data, cls):
            return data
        data = unwrap_result(data)
        if not isinstance(data, dict):
            raise ValueError("competitor analysis result must be an object")
        return {
            "market_overview": data.get("market_overview", ""),
            "threats": data.get("threats", []),
            "opportunities": data.get("opportunities", []),
            "recommendations": data.get("recommendations", []),
            "strengths": data.get("strengths", []),
            "competitors": data.get("competitors", []),
            "raw": data,
        }


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------

STRATEGY_REQUIRED_FIELDS = (
    "positioning",
    "key_messages",
    "recommended_channels",
    "timeline",
    "budget_allocation",
    "kpis",
)


class StrategyOutput(_Output):
    positioning: TextField
    key_messages: TextField
    recommended_channels: TextField
    timeline: TextField
    budget_allocation: TextField
    kpis: TextField
    quality_score: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _collect(cls, data: Any) -> Any:
        if isinstance(data, cls):
            return data
        data = unwrap_result(data)
        if isinstance(data, dict) and isinstance(data.get("strategy"), dict):
            data = data["strategy"]
        if not isinstance(data, dict):
            raise ValueError("strategy result must be an object")
        missing = [name for name in STRATEGY_REQUIRED_FIELDS if name not in data]
        if missing:
            raise ValueError(f"strategy result is missing {', '.join(missing)}")
        collected = {name: data[name] for name in STRATEGY_REQUIRED_FIELDS}
        quality = data.get("quality_score")
        if isinstance(quality, (int, float)) and not isinstance(quality, bool):
            collected["quality_score"] = float(quality)
        return collected


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


class AssetRecord(_Output):
    asset_type: str
    channel: str
    content: TextField
    variations: OptionalTextField = None
    quality_score: float | None = None


class AssetOutput(_Output):
    assets: list[AssetRecord]

    @model_validator(mode="before")
    @classmethod
    def _collect(cls, data: Any, info: Any) -> Any:
        if isinstance(data, cls):
            return data
        data = unwrap_result(data)
        context = info.context or {}
        default_type = context.get("asset_type")
        if isinstance(data, dict) and isinstance(data.get("assets"), list):
            items = data["assets"]
        elif isinstance(data, dict):
            items = [data]
        else:
            raise ValueError("asset result must be an object")
        assets = []
        for item in items:
            if not isinstance(item, dict):
                continue
            asset_type = item.get("asset_type") or default_type
            if not asset_type:
                raise ValueError("asset result has no asset_type")
            assets.append({
                "asset_type": asset_type,
                "channel": channel_for(asset_type),
                "content": item.get("content", item),
                "variations": item.get("variations"),
                "quality_score": score_to_quality(item.get("quality_score")),
            })
        return {"assets": assets}


StageOutput = (
    PersonaOutput | CompetitorOutput | CompetitorAnalysisOutput | StrategyOutput | AssetOutput
)

OUTPUT_MODELS: dict[StageType, type[_Output]] = {
    StageType.PERSONA: PersonaOutput,
    StageType.COMPETITOR_DETECTION: CompetitorOutput,
    StageType.COMPETITOR_ANALYSIS: CompetitorAnalysisOutput,
    StageType.STRATEGY: StrategyOutput,
    StageType.ASSETS: AssetOutput,
}


def parse_stage_output(
    stage: StageType, result: Any, context: dict[str, Any] | None = None
) -> StageOutput:
    """Parse a raw agent result into its stage's output model.

    Args:
        stage: Stage the result belongs to.
        result: Raw ``result`` map from the agent.
        context: Correlation extras (e.g. ``asset_type``) used as defaults.

    Raises:
        ValidationError: If the result does not fit the stage's shape.
    """
    model = OUTPUT_MODELS[stage]
    return model.model_validate(result, context=context or {})  # type: ignore[return-value]


__all__ = [
    "AssetOutput",
    "AssetRecord",
    "CompetitorAnalysisOutput",
    "CompetitorOutput",
    "CompetitorRecord",
    "OUTPUT_MODELS",
    "PersonaOutput",
    "PersonaRecord",
    "StageOutput",
    "StrategyOutput",
    "ValidationError",
    "parse_stage_output",
]
