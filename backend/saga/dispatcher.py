"""Stage dispatch: correlation, status flip and queue submission.

The dispatcher is the only entry point that starts a stage. It moves the
project into the stage's in-progress status before anything is queued, so
the status a client reads right after a dispatch already says "running",
and it builds the correlation context every lifecycle event will echo.
"""

import asyncio
import uuid
from typing import Any

import structlog

from config import settings
from errors import DispatchError, MissingCorrelationError
from events.types import CorrelationContext
from models.database import ProjectStore, TaskStore
from worker.queue import TaskMessage, TaskQueue
from workflow.state_machine import ProjectStatus, StageType, get_stage

logger = structlog.get_logger(__name__)

# Dispatch options consumed by the dispatcher itself; everything else is
# copied into the correlation context.
_IDENTITY_OPTIONS = ("project_id", "user_id")


def _require_id(options: dict[str, Any], key: str) -> int:
    value = options.get(key)
    if value is None or isinstance(value, bool):
        raise MissingCorrelationError(f"Dispatch options are missing {key}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MissingCorrelationError(f"Dispatch option {key} is not an id: {value!r}") from e


class TaskDispatcher:
    """Dispatches generation stages to the task queue.

    Attributes:
        projects: Store holding project status.
        tasks: Audit store receiving a pending record per dispatch.
        queue: Queue the worker consumes.
        max_attempts: Submission attempts before giving up.
        retry_delay: Base delay of the linear backoff between attempts.
    """

    def __init__(
        self,
        projects: ProjectStore,
        tasks: TaskStore,
        queue: TaskQueue,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self.projects = projects
        self.tasks = tasks
        self.queue = queue
        self.max_attempts = max(1, max_attempts or settings.dispatch_max_attempts)
        self.retry_delay = (
            settings.dispatch_retry_delay_seconds if retry_delay is None else retry_delay
        )

    async def dispatch(
        self,
        stage: StageType | str,
        brief: dict[str, Any],
        options: dict[str, Any],
        *,
        mark_in_progress: bool = True,
    ) -> str:
        """Dispatch one stage and return its task id.

        Args:
            stage: Stage to run.
            brief: Stage input handed to the agent.
            options: Must contain ``project_id`` and ``user_id``. The
                remaining keys (``chained_from``, ``asset_type``, ...) are
                copied into the correlation context.
            mark_in_progress: Flip the project to the stage's in-progress
                status before submitting. A dispatch carrying
                ``chained_from`` expects the project to hold it already.

        Returns:
            The new task id.

        Raises:
            MissingCorrelationError: If a required id is absent.
            ProjectNotFoundError: If the project does not exist.
            IllegalTransitionError: If the stage cannot start from the
                project's current status.
            DispatchError: If every submission attempt failed. The project
                status has been restored by then.
            Exception: Whatever the task store raised while recording the
                task, after the project status has been restored.
        """
        definition = get_stage(stage)
        project_id = _require_id(options, "project_id")
        user_id = _require_id(options, "user_id")
        extra = {k: v for k, v in options.items() if k not in _IDENTITY_OPTIONS}

        previous_status: ProjectStatus | None = None
        if mark_in_progress:
            previous_status = await self.projects.begin_stage(
                project_id,
                definition.stage,
                continuation=bool(extra.get("chained_from")),
            )

        context = CorrelationContext(
            project_id=project_id,
            user_id=user_id,
            stage=definition.stage,
            previous_status=previous_status.value if previous_status else None,
            extra=extra,
        )
        task_id = str(uuid.uuid4())
        message = TaskMessage(
            task_id=task_id,
            stage=definition.stage,
            agent_id=definition.agent_id,
            brief=brief,
            options=options,
            context=context,
        )

        log = logger.bind(task_id=task_id, project_id=project_id, stage=definition.stage.value)
        try:
            await self.tasks.create_task(
                task_id,
                definition.stage,
                definition.agent_id,
                brief,
                context.model_dump(mode="json"),
            )
        except Exception as e:
            log.error("dispatch_task_record_failed", error=str(e))
            await self._restore_status(project_id, definition.in_progress, previous_status)
            raise

        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.queue.submit(message)
            except Exception as e:
                last_error = e
                log.warning(
                    "dispatch_submit_failed",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue

            log.info(
                "stage_dispatched",
                agent_id=definition.agent_id,
                attempt=attempt,
                previous_status=context.previous_status,
            )
            return task_id

        log.error("dispatch_failed", attempts=self.max_attempts, error=str(last_error))
        await self._undo(task_id, project_id, definition.in_progress, previous_status, last_error)
        raise DispatchError(
            f"Could not submit {definition.stage.value} task after "
            f"{self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        ) from last_error

    async def _undo(
        self,
        task_id: str,
        project_id: int,
        in_progress: ProjectStatus,
        previous_status: ProjectStatus | None,
        error: Exception | None,
    ) -> None:
        """Restore the status and close the task record of a lost dispatch."""
        try:
            await self.tasks.mark_failed(task_id, f"Dispatch failed: {error}")
        except Exception as e:
            logger.error("dispatch_task_record_update_failed", task_id=task_id, error=str(e))
        await self._restore_status(project_id, in_progress, previous_status)

    async def _restore_status(
        self,
        project_id: int,
        in_progress: ProjectStatus,
        previous_status: ProjectStatus | None,
    ) -> None:
        if previous_status is None or previous_status == in_progress:
            return
        try:
            await self.projects.transition_status(project_id, in_progress, previous_status)
        except Exception as e:
            logger.error(
                "dispatch_status_restore_failed",
                project_id=project_id,
                target=previous_status.value,
                error=str(e),
            )
