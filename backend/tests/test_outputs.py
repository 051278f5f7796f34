"""Tests for models/outputs.py and the Completed event's output parsing."""

import pytest
from pydantic import ValidationError

from events.types import NotificationEnvelope, TaskCompleted
from models.outputs import (
    AssetOutput,
    CompetitorOutput,
    PersonaOutput,
    StrategyOutput,
    parse_stage_output,
)
from tests.conftest import (
    ANALYSIS_RESULT,
    COMPETITOR_RESULT,
    PERSONA_RESULT,
    STRATEGY_RESULT,
    make_completed,
    make_context,
)
from workflow.state_machine import StageType

# =========================================================================
# Personas
# =========================================================================


class TestPersonaOutput:
    def test_flat_persona(self) -> None:
        output = parse_stage_output(StageType.PERSONA, PERSONA_RESULT)
        assert isinstance(output, PersonaOutput)
        persona = output.personas[0]
        assert (persona.name, persona.age, persona.gender, persona.job) == (
            "Alice", 30, "F", "CTO"
        )
        assert persona.raw_data == PERSONA_RESULT["personas"][0]

    def test_nested_demographics_and_age_range(self) -> None:
        result = {
            "data": {
                "personas": [
                    {
                        "name": "Bob",
                        "demographics": {"age": "38-45", "gender": "M", "profession": "CFO"},
                        "score": 90,
                    }
                ]
            }
        }
        persona = parse_stage_output(StageType.PERSONA, result).personas[0]
        assert persona.age == 42
        assert persona.job == "CFO"
        assert persona.quality_score == 0.9

    def test_default_and_nameless_personas_are_dropped(self) -> None:
        result = {"personas": [{"name": "Persona Default"}, {"age": 30}, {"name": "Carol"}]}
        output = parse_stage_output(StageType.PERSONA, result)
        assert [p.name for p in output.personas] == ["Carol"]

    def test_missing_personas_is_invalid(self) -> None:
        with pytest.raises(ValidationError):
            parse_stage_output(StageType.PERSONA, {"foo": "bar"})


# =========================================================================
# Competitors and analysis
# =========================================================================


class TestCompetitorOutput:
    def test_validation_fields(self) -> None:
        output = parse_stage_output(StageType.COMPETITOR_DETECTION, COMPETITOR_RESULT)
        assert isinstance(output, CompetitorOutput)
        first = output.competitors[0]
        assert first.domain == "rival1.com"
        assert first.alignment_score == 61
        assert first.offering_overlap.text == '["payments"]'
        assert first.market_overlap.text == "SMB"
        assert output.competitors[1].has_ads is True

    def test_empty_list_is_valid(self) -> None:
        output = parse_stage_output(StageType.COMPETITOR_DETECTION, {"competitors": []})
        assert output.competitors == []

    def test_missing_list_is_invalid(self) -> None:
        with pytest.raises(ValidationError):
            parse_stage_output(StageType.COMPETITOR_DETECTION, {"competitors": "none"})


class TestAnalysisOutput:
    def test_fields_are_normalized(self) -> None:
        output = parse_stage_output(StageType.COMPETITOR_ANALYSIS, ANALYSIS_RESULT)
        assert output.market_overview.text == "Crowded SMB payments market"
        assert output.threats.is_structured
        assert output.raw == ANALYSIS_RESULT


# =========================================================================
# Strategy
# =========================================================================


class TestStrategyOutput:
    def test_wrapped_strategy(self) -> None:
        output = parse_stage_output(StageType.STRATEGY, STRATEGY_RESULT)
        assert isinstance(output, StrategyOutput)
        assert output.positioning.text == "Fastest onboarding"
        assert output.key_messages.text == '["Live in a day"]'
        assert output.quality_score == 80.0

    def test_key_messages_as_text_or_list(self) -> None:
        base = dict(STRATEGY_RESULT["strategy"])
        as_text = parse_stage_output(StageType.STRATEGY, {**base, "key_messages": "Live today"})
        assert not as_text.key_messages.is_structured
        assert as_text.key_messages.text == "Live today"

    def test_missing_field_is_invalid(self) -> None:
        broken = {k: v for k, v in STRATEGY_RESULT["strategy"].items() if k != "kpis"}
        with pytest.raises(ValidationError, match="kpis"):
            parse_stage_output(StageType.STRATEGY, broken)


# =========================================================================
# Assets
# =========================================================================


class TestAssetOutput:
    def test_assets_list(self) -> None:
        output = parse_stage_output(
            StageType.ASSETS,
            {"assets": [{"asset_type": "google_ads", "content": {"h": "x"}, "quality_score": 70}]},
        )
        assert isinstance(output, AssetOutput)
        asset = output.assets[0]
        assert asset.channel == "search"
        assert asset.content.text == '{"h": "x"}'
        assert asset.quality_score == 0.7

    def test_single_asset_takes_type_from_context(self) -> None:
        output = parse_stage_output(
            StageType.ASSETS, {"content": "Hello"}, {"asset_type": "mail"}
        )
        assert output.assets[0].asset_type == "mail"
        assert output.assets[0].channel == "email"

    def test_untyped_asset_is_invalid(self) -> None:
        with pytest.raises(ValidationError):
            parse_stage_output(StageType.ASSETS, {"content": "Hello"})


# =========================================================================
# Lifecycle events
# =========================================================================


class TestCompletedEvent:
    def test_output_parsed_on_construction(self) -> None:
        event = make_completed(StageType.STRATEGY)
        assert isinstance(event.output, StrategyOutput)

    def test_asset_type_read_from_context_extra(self) -> None:
        event = make_completed(
            StageType.ASSETS,
            result={"content": "Hi"},
            context=make_context(StageType.ASSETS, asset_type="linkedin_post"),
        )
        assert event.output.assets[0].channel == "social"

    def test_malformed_result_fails_construction(self) -> None:
        with pytest.raises(ValidationError):
            make_completed(StageType.STRATEGY, result={"strategy": {"positioning": "x"}})

    def test_prebuilt_output_is_kept(self) -> None:
        event = make_completed(StageType.PERSONA)
        copy = TaskCompleted(**{**dict(event), "task_id": "task-2"})
        assert isinstance(copy.output, PersonaOutput)
        assert copy.output == event.output

    def test_context_is_frozen(self) -> None:
        context = make_context(StageType.PERSONA)
        with pytest.raises(ValidationError):
            context.project_id = 2  # type: ignore[misc]
        assert context.with_extra(chained_from="t").extra["chained_from"] == "t"
        assert "chained_from" not in context.extra


class TestEnvelope:
    def test_camel_case_keys_and_empty_payload(self) -> None:
        envelope = NotificationEnvelope(type="Started", task_id="t1", stage_type="persona")
        message = envelope.to_message()
        assert message["taskId"] == "t1"
        assert message["stageType"] == "persona"
        assert message["payload"] == {}
        assert "error" not in message

    def test_failed_has_error_and_no_payload(self) -> None:
        envelope = NotificationEnvelope(
            type="Failed", task_id="t1", stage_type="persona", error="boom"
        )
        message = envelope.to_message()
        assert message["error"] == "boom"
        assert "payload" not in message
