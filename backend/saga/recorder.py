"""Lifecycle consumer that keeps the task audit records current."""

import structlog

from events.types import (
    LifecycleEvent,
    LifecycleEventType,
    TaskCompleted,
    TaskFailed,
)
from models.database import TaskStore

logger = structlog.get_logger(__name__)


class TaskRecorder:
    """Mirrors lifecycle events onto the task table.

    Audit writes never fail the chain; a missing task row is only logged.
    """

    name = "task_recorder"

    def __init__(self, tasks: TaskStore) -> None:
        self.tasks = tasks

    async def __call__(self, event: LifecycleEvent) -> None:
        try:
            if isinstance(event, TaskCompleted):
                updated = await self.tasks.mark_completed(
                    event.task_id,
                    event.result,
                    tokens_input=event.tokens_input,
                    tokens_output=event.tokens_output,
                    cost=event.cost,
                    duration_ms=event.duration_ms,
                    model_used=event.model_used,
                )
            elif isinstance(event, TaskFailed):
                updated = await self.tasks.mark_failed(
                    event.task_id,
                    event.error,
                    error_trace=event.error_trace,
                    duration_ms=event.duration_ms,
                )
            elif event.type == LifecycleEventType.STARTED:
                updated = await self.tasks.mark_processing(event.task_id)
            else:
                return
        except Exception as e:
            logger.error(
                "task_record_update_failed",
                task_id=event.task_id,
                event_type=event.type.value,
                error=str(e),
            )
            return

        if not updated:
            logger.warning(
                "task_record_missing",
                task_id=event.task_id,
                event_type=event.type.value,
            )
