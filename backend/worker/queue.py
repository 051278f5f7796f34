"""Task queue between the dispatcher and the worker.

``TaskQueue`` is the submission boundary the dispatcher retries against.
``InMemoryTaskQueue`` keeps messages in an asyncio.Queue; pending task
records in the audit table let the worker re-enqueue what a restart lost.
"""

import asyncio
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field

from events.types import CorrelationContext
from workflow.state_machine import StageType

logger = structlog.get_logger(__name__)


class TaskMessage(BaseModel):
    """One unit of work for the worker.

    Attributes:
        task_id: External task identifier returned to the caller.
        stage: Stage to run.
        agent_id: Agent expected to run it.
        brief: Stage input.
        options: Dispatch options as given by the caller.
        context: Correlation context echoed on every lifecycle event.
    """

    model_config = ConfigDict(frozen=True)

    task_id: str
    stage: StageType
    agent_id: str
    brief: dict[str, Any] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)
    context: CorrelationContext


class TaskQueue(Protocol):
    async def submit(self, message: TaskMessage) -> None: ...

    async def get(self) -> TaskMessage: ...

    def task_done(self) -> None: ...


class InMemoryTaskQueue:
    """Unbounded in-process queue.

    Attributes:
        _queue: Underlying asyncio queue.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[TaskMessage] = asyncio.Queue()

    async def submit(self, message: TaskMessage) -> None:
        await self._queue.put(message)
        logger.debug(
            "task_enqueued",
            task_id=message.task_id,
            stage=message.stage.value,
            queue_size=self._queue.qsize(),
        )

    async def get(self) -> TaskMessage:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every submitted message has been processed."""
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()
