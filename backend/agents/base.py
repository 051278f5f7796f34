"""Contract between the worker and the generation agents.

An agent receives the stage brief and dispatch options, may report
progress any number of times, and either returns an ``AgentResult`` or
raises ``AgentError``. The worker turns those outcomes into lifecycle
events; agents never publish events themselves.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from errors import AgentError

ProgressCallback = Callable[[int, str], Awaitable[None]]


@dataclass
class AgentResult:
    """Raw output of one agent run.

    Attributes:
        result: The agent's result map, normalized later by the stage parser.
        tokens_input: Prompt tokens used.
        tokens_output: Completion tokens used.
        cost: Cost in USD.
        model_used: Model that produced the result.
    """

    result: dict[str, Any]
    tokens_input: int = 0
    tokens_output: int = 0
    cost: float = 0.0
    model_used: str | None = None


class GenerationAgent(Protocol):
    """Anything that can run one stage."""

    agent_id: str

    async def generate(
        self,
        brief: dict[str, Any],
        options: dict[str, Any],
        report_progress: ProgressCallback,
    ) -> AgentResult: ...


__all__ = ["AgentError", "AgentResult", "GenerationAgent", "ProgressCallback"]
