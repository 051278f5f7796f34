"""Task worker: runs generation agents and raises lifecycle events.

The worker pulls ``TaskMessage``s from the queue, runs the stage's agent
and turns the outcome into lifecycle events delivered through the
``LifecycleBus``:

    Started -> Progress* -> Completed | Failed

Generation is never retried here; transient model errors are retried
inside the LLM client before the agent gives up. What the worker does
retry is the *delivery* of an event whose consumer chain failed: the
whole chain is run again with linear backoff, and after the last attempt
the event is dead-lettered.

Usage:
    >>> worker = TaskWorker(queue, bus, agents, tasks)
    >>> await worker.start()
    >>> ...
    >>> await worker.stop()
"""

import asyncio
import contextlib
import time
import traceback

import structlog
from pydantic import ValidationError

from agents.base import AgentResult, GenerationAgent
from config import settings
from errors import AgentError, ConsumerChainError
from events.lifecycle import LifecycleBus
from events.types import (
    CorrelationContext,
    LifecycleEvent,
    LifecycleEventType,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStarted,
)
from models.database import TaskStore
from worker.queue import TaskMessage, TaskQueue
from workflow.state_machine import StageType

logger = structlog.get_logger(__name__)

UNPROCESSABLE_RESULT_MESSAGE = "Result could not be processed"


class TaskWorker:
    """Consumes the task queue with a fixed number of concurrent loops.

    Attributes:
        queue: Queue to consume.
        bus: Lifecycle bus events are delivered through.
        agents: Agent per stage.
        tasks: Task audit store (pending re-enqueue, dead letters).
        concurrency: Number of concurrent loops.
        max_redeliveries: Extra delivery attempts for a failing chain.
        redelivery_delay: Base delay of the linear redelivery backoff.
    """

    def __init__(
        self,
        queue: TaskQueue,
        bus: LifecycleBus,
        agents: dict[StageType, GenerationAgent],
        tasks: TaskStore,
        concurrency: int | None = None,
        max_redeliveries: int | None = None,
        redelivery_delay: float | None = None,
    ) -> None:
        self.queue = queue
        self.bus = bus
        self.agents = agents
        self.tasks = tasks
        self.concurrency = max(1, concurrency or settings.worker_concurrency)
        self.max_redeliveries = (
            settings.handler_max_redeliveries if max_redeliveries is None else max_redeliveries
        )
        self.redelivery_delay = (
            settings.handler_retry_delay_seconds
            if redelivery_delay is None
            else redelivery_delay
        )
        self._loops: list[asyncio.Task[None]] = []

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return any(not loop.done() for loop in self._loops)

    async def start(self) -> None:
        if self._loops:
            return
        self._loops = [
            asyncio.create_task(self._run_loop(index), name=f"task_worker_{index}")
            for index in range(self.concurrency)
        ]
        logger.info("task_worker_started", concurrency=self.concurrency)

    async def stop(self) -> None:
        loops, self._loops = self._loops, []
        for loop in loops:
            loop.cancel()
        for loop in loops:
            with contextlib.suppress(asyncio.CancelledError):
                await loop
        logger.info("task_worker_stopped")

    async def requeue_pending(self) -> int:
        """Re-enqueue tasks that were dispatched but never picked up.

        Returns:
            Number of tasks re-enqueued.
        """
        count = 0
        for record in await self.tasks.list_pending():
            try:
                context = CorrelationContext.model_validate(record["context"])
                message = TaskMessage(
                    task_id=record["uuid"],
                    stage=StageType(record["stage_type"]),
                    agent_id=record["agent_id"],
                    brief=record.get("arguments") or {},
                    options={
                        "project_id": context.project_id,
                        "user_id": context.user_id,
                        **context.extra,
                    },
                    context=context,
                )
                await self.queue.submit(message)
            except Exception as e:
                logger.error("task_requeue_failed", task_id=record.get("uuid"), error=str(e))
                continue
            count += 1
        if count:
            logger.info("pending_tasks_requeued", count=count)
        return count

    async def _run_loop(self, index: int) -> None:
        while True:
            message = await self.queue.get()
            try:
                await self.process(message)
            except Exception as e:
                logger.error(
                    "task_processing_crashed",
                    worker=index,
                    task_id=message.task_id,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                self.queue.task_done()

    # -----------------------------------------------------------------
    # Processing
    # -----------------------------------------------------------------

    async def process(self, message: TaskMessage) -> None:
        """Run one task to its terminal event."""
        with structlog.contextvars.bound_contextvars(
            task_id=message.task_id,
            project_id=message.context.project_id,
            stage=message.stage.value,
        ):
            base = {
                "task_id": message.task_id,
                "stage": message.stage,
                "agent_id": message.agent_id,
                "context": message.context,
            }
            await self.deliver(TaskStarted(**base))
            started = time.monotonic()

            async def report_progress(percentage: int, text: str) -> None:
                await self.deliver(
                    TaskProgress(**base, percentage=max(0, min(100, percentage)), message=text)
                )

            agent = self.agents.get(message.stage)
            outcome: AgentResult | None = None
            terminal: LifecycleEvent
            try:
                if agent is None:
                    raise AgentError(f"No agent registered for stage {message.stage.value}")
                outcome = await agent.generate(message.brief, message.options, report_progress)
            except AgentError as e:
                terminal = TaskFailed(
                    **base,
                    error=str(e),
                    is_recoverable=e.is_recoverable,
                    error_trace=traceback.format_exc(),
                    duration_ms=_elapsed_ms(started),
                )
            except Exception as e:
                logger.error("agent_crashed", error=str(e), exc_info=True)
                terminal = TaskFailed(
                    **base,
                    error=f"{type(e).__name__}: {e}",
                    is_recoverable=False,
                    error_trace=traceback.format_exc(),
                    duration_ms=_elapsed_ms(started),
                )
            else:
                terminal = self._completed_or_failed(base, outcome, _elapsed_ms(started))

            logger.info(
                "task_finished",
                outcome=terminal.type.value,
                duration_ms=_elapsed_ms(started),
            )
            await self.deliver(terminal)

    def _completed_or_failed(
        self, base: dict, outcome: AgentResult, duration_ms: int
    ) -> LifecycleEvent:
        try:
            return TaskCompleted(
                **base,
                result=outcome.result,
                tokens_input=outcome.tokens_input,
                tokens_output=outcome.tokens_output,
                cost=outcome.cost,
                duration_ms=duration_ms,
                model_used=outcome.model_used,
            )
        except ValidationError as e:
            logger.warning("agent_result_malformed", errors=e.error_count())
            return TaskFailed(
                **base,
                error=f"Malformed {base['stage'].value} result: {e}",
                is_recoverable=False,
                error_trace=str(e),
                duration_ms=duration_ms,
            )

    async def deliver(self, event: LifecycleEvent) -> None:
        """Deliver an event, redelivering while its consumer chain fails.

        A Completed event that exhausts its redeliveries is dead-lettered and
        followed by a Failed event, so recovery releases the project.
        """
        attempts = self.max_redeliveries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self.bus.deliver(event)
                return
            except ConsumerChainError as e:
                if attempt < attempts:
                    logger.warning(
                        "lifecycle_event_redelivery",
                        event_type=event.type.value,
                        attempt=attempt,
                        max_attempts=attempts,
                        error=str(e),
                    )
                    await asyncio.sleep(self.redelivery_delay * attempt)
                    continue
                await self._dead_letter(event, e, attempts)

        if isinstance(event, TaskCompleted):
            failed = TaskFailed(
                task_id=event.task_id,
                stage=event.stage,
                agent_id=event.agent_id,
                context=event.context,
                error=UNPROCESSABLE_RESULT_MESSAGE,
                is_recoverable=False,
                duration_ms=event.duration_ms,
            )
            try:
                await self.bus.deliver(failed)
            except ConsumerChainError as e:
                await self._dead_letter(failed, e, 1)

    async def _dead_letter(
        self, event: LifecycleEvent, error: ConsumerChainError, attempts: int
    ) -> None:
        if event.type == LifecycleEventType.PROGRESS:
            return
        try:
            await self.tasks.record_dead_letter(
                event.task_id,
                event.type.value,
                event.model_dump(mode="json", exclude={"output"}),
                str(error),
                attempts,
            )
        except Exception as e:
            logger.error(
                "dead_letter_record_failed",
                event_type=event.type.value,
                error=str(e),
            )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
