"""Failed-event consumer that releases a project stuck in progress.

When a stage fails the project is moved from the stage's in-progress
status back to a status from which the user can retry. The move is a
guarded transition: a project that has already left the in-progress
status (a later stage completed, or the user moved on) is not touched.
"""

import structlog

from events.types import LifecycleEvent, TaskFailed
from models.database import ProjectStore
from workflow.state_machine import STAGES, StageType, reversion_target

logger = structlog.get_logger(__name__)


class FailureRecoveryHandler:
    """Reverts one stage's in-progress status on failure.

    Errors are logged and swallowed: a recovery that cannot run leaves the
    project in progress, which the status endpoint still reports.

    Attributes:
        stage: Stage this handler recovers.
        store: Project store.
    """

    def __init__(self, stage: StageType, store: ProjectStore) -> None:
        self.stage = stage
        self.store = store
        self.name = f"{stage.value}_recovery"

    async def __call__(self, event: LifecycleEvent) -> None:
        if not isinstance(event, TaskFailed) or event.stage != self.stage:
            return

        project_id = event.context.project_id
        if project_id is None:
            logger.error("recovery_skipped_missing_project_id", task_id=event.task_id)
            return

        in_progress = STAGES[self.stage].in_progress
        target = reversion_target(self.stage, event.context.previous_status)
        try:
            reverted = await self.store.transition_status(project_id, in_progress, target)
        except Exception as e:
            logger.error(
                "recovery_failed",
                task_id=event.task_id,
                project_id=project_id,
                stage=self.stage.value,
                error=str(e),
            )
            return

        logger.info(
            "stage_failure_recovered" if reverted else "stage_failure_recovery_skipped",
            task_id=event.task_id,
            project_id=project_id,
            stage=self.stage.value,
            target=target.value,
            is_recoverable=event.is_recoverable,
            error=event.error,
        )
