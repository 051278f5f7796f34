"""In-memory execution metrics for generation stages.

This module provides the MetricsCollector class that accumulates task
counts, token usage, cost and duration per stage from terminal lifecycle
events, and logs a warning when a single execution is unusually slow,
token-hungry or expensive.

The collector is a lifecycle consumer: it is declared in the Completed and
Failed chains of every stage.

Usage:
    >>> from metrics import MetricsCollector
    >>> collector = MetricsCollector()
    >>> await collector(completed_event)
    >>> collector.snapshot()["persona"]["completed"]
    1
"""

from collections import OrderedDict
from dataclasses import asdict, dataclass

import structlog

from events.types import LifecycleEvent, TaskCompleted, TaskFailed
from workflow.state_machine import StageType

logger = structlog.get_logger(__name__)

SLOW_EXECUTION_MS = 30_000
HIGH_TOKEN_USAGE = 10_000
HIGH_COST_USD = 0.10
# Terminal outcomes remembered per task so redelivered events count once.
MAX_TRACKED_TASKS = 10_000


@dataclass
class StageMetricsData:
    """Accumulated metrics for one stage.

    Attributes:
        completed: Number of tasks that completed.
        failed: Number of tasks that failed.
        tokens_input: Total input tokens across completed tasks.
        tokens_output: Total output tokens across completed tasks.
        cost: Total cost in USD.
        duration_ms: Total execution time of terminal tasks.
    """

    completed: int = 0
    failed: int = 0
    tokens_input: int = 0
    tokens_output: int = 0
    cost: float = 0.0
    duration_ms: int = 0

    @property
    def tokens_total(self) -> int:
        return self.tokens_input + self.tokens_output

    def to_dict(self) -> dict[str, int | float]:
        """Convert to a plain dict for the metrics endpoint."""
        data: dict[str, int | float] = asdict(self)
        data["tokens_total"] = self.tokens_total
        return data


class MetricsCollector:
    """Per-stage counters fed by Completed and Failed events.

    Each task counts once. A redelivered Completed or Failed is ignored, and
    a Failed that follows a counted Completed (the result could not be
    stored) replaces it, so the task ends up counted as failed only.

    Attributes:
        _stages: Mapping from stage to its metrics data.
        _outcomes: Terminal event counted for each recently seen task.
    """

    name = "execution_metrics"

    def __init__(self) -> None:
        """Initialize an empty metrics collector."""
        self._stages: dict[StageType, StageMetricsData] = {
            stage: StageMetricsData() for stage in StageType
        }
        self._outcomes: OrderedDict[
            tuple[StageType, str], TaskCompleted | TaskFailed
        ] = OrderedDict()
        logger.info("metrics_collector_initialized")

    async def __call__(self, event: LifecycleEvent) -> None:
        if isinstance(event, TaskCompleted):
            self.record_completed(event)
        elif isinstance(event, TaskFailed):
            self.record_failed(event)

    def record_completed(self, event: TaskCompleted) -> None:
        """Record a completed execution and warn on threshold breaches."""
        if (event.stage, event.task_id) in self._outcomes:
            logger.debug("metrics_duplicate_ignored", task_id=event.task_id, event_type="completed")
            return
        self._remember(event)

        data = self._stages[event.stage]
        data.completed += 1
        data.tokens_input += event.tokens_input
        data.tokens_output += event.tokens_output
        data.cost += event.cost
        data.duration_ms += event.duration_ms

        tokens = event.tokens_input + event.tokens_output
        log = logger.bind(task_id=event.task_id, stage=event.stage.value, agent_id=event.agent_id)
        log.info(
            "agent_execution_completed",
            duration_ms=event.duration_ms,
            tokens_total=tokens,
            cost=round(event.cost, 6),
            model=event.model_used,
        )
        if event.duration_ms > SLOW_EXECUTION_MS:
            log.warning("agent_execution_slow", duration_ms=event.duration_ms)
        if tokens > HIGH_TOKEN_USAGE:
            log.warning("agent_execution_high_token_usage", tokens_total=tokens)
        if event.cost > HIGH_COST_USD:
            log.warning("agent_execution_high_cost", cost=round(event.cost, 6))

    def record_failed(self, event: TaskFailed) -> None:
        previous = self._outcomes.get((event.stage, event.task_id))
        if isinstance(previous, TaskFailed):
            logger.debug("metrics_duplicate_ignored", task_id=event.task_id, event_type="failed")
            return
        if isinstance(previous, TaskCompleted):
            self._retract(previous)
        self._remember(event)

        data = self._stages[event.stage]
        data.failed += 1
        data.duration_ms += event.duration_ms
        logger.warning(
            "agent_execution_failed",
            task_id=event.task_id,
            stage=event.stage.value,
            agent_id=event.agent_id,
            error=event.error,
            is_recoverable=event.is_recoverable,
        )

    def _retract(self, event: TaskCompleted) -> None:
        data = self._stages[event.stage]
        data.completed -= 1
        data.tokens_input -= event.tokens_input
        data.tokens_output -= event.tokens_output
        data.cost -= event.cost
        data.duration_ms -= event.duration_ms

    def _remember(self, event: TaskCompleted | TaskFailed) -> None:
        key = (event.stage, event.task_id)
        self._outcomes[key] = event
        self._outcomes.move_to_end(key)
        while len(self._outcomes) > MAX_TRACKED_TASKS:
            self._outcomes.popitem(last=False)

    def get(self, stage: StageType) -> StageMetricsData:
        return self._stages[stage]

    def snapshot(self) -> dict[str, dict[str, int | float]]:
        """Current metrics keyed by stage name."""
        return {stage.value: data.to_dict() for stage, data in self._stages.items()}
