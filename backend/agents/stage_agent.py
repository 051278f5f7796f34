"""LLM-backed generation agent, one instance per stage."""

from typing import Any

import structlog
from litellm.exceptions import AuthenticationError, BadRequestError

from agents.base import AgentResult, ProgressCallback
from agents.llm import LLMClient, MockLLMClient, extract_json_from_response
from agents.prompts import build_messages
from config import settings
from errors import AgentError
from workflow.state_machine import STAGES, StageDefinition, StageType

logger = structlog.get_logger(__name__)


class StageAgent:
    """Runs a stage by prompting an LLM and parsing the JSON it returns.

    Attributes:
        definition: The stage this agent runs.
        llm: Client used for the call.
        model: Model override; the client's default when None.
    """

    def __init__(
        self,
        definition: StageDefinition,
        llm: LLMClient,
        model: str | None = None,
    ) -> None:
        self.definition = definition
        self.agent_id = definition.agent_id
        self.llm = llm
        self.model = model

    async def generate(
        self,
        brief: dict[str, Any],
        options: dict[str, Any],
        report_progress: ProgressCallback,
    ) -> AgentResult:
        """Generate the stage result for a brief.

        Raises:
            AgentError: With ``is_recoverable=True`` for transient provider
                failures, False for rejected requests or unusable replies.
        """
        await report_progress(10, "Preparing request")
        messages = build_messages(self.definition.stage, brief)

        try:
            response = await self.llm.call(
                messages,
                model=options.get("model") or self.model,
                agent_id=self.agent_id,
            )
        except (AuthenticationError, BadRequestError) as e:
            raise AgentError(f"Model rejected the request: {e}", is_recoverable=False) from e
        except Exception as e:
            raise AgentError(f"Model call failed: {e}", is_recoverable=True) from e

        await report_progress(90, "Reading result")
        result = extract_json_from_response(response.content)
        if result is None:
            logger.warning(
                "stage_agent_unparseable_reply",
                agent_id=self.agent_id,
                finish_reason=response.finish_reason,
                content_preview=response.content[:200],
            )
            raise AgentError("Model reply contained no JSON object", is_recoverable=False)

        return AgentResult(
            result=result,
            tokens_input=response.metrics.input_tokens,
            tokens_output=response.metrics.output_tokens,
            cost=response.metrics.cost,
            model_used=response.metrics.model,
        )


def build_stage_agents(llm: LLMClient | None = None) -> dict[StageType, StageAgent]:
    """One StageAgent per stage, sharing a client (mock when configured)."""
    if llm is None:
        llm = MockLLMClient() if settings.use_mock_llm else LLMClient()
    return {stage: StageAgent(definition, llm) for stage, definition in STAGES.items()}
