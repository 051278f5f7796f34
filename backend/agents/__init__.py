"""Generation agents for the campaign stages.

This module exports the agent contract used by the worker and the
LLM-backed stage agents:
- GenerationAgent / AgentResult: what the worker runs and gets back
- StageAgent: prompts an LLM for one stage and parses its JSON reply
- LLMClient / MockLLMClient: LiteLLM wrapper and its offline stand-in
"""

from agents.base import AgentError, AgentResult, GenerationAgent, ProgressCallback
from agents.llm import LLMClient, LLMMetrics, LLMResponse, MockLLMClient, extract_json_from_response
from agents.stage_agent import StageAgent, build_stage_agents

__all__ = [
    "AgentError",
    "AgentResult",
    "GenerationAgent",
    "LLMClient",
    "LLMMetrics",
    "LLMResponse",
    "MockLLMClient",
    "ProgressCallback",
    "StageAgent",
    "build_stage_agents",
    "extract_json_from_response",
]
