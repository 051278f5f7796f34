"""Task queue and the worker that runs generation agents."""

from worker.queue import InMemoryTaskQueue, TaskMessage, TaskQueue
from worker.worker import UNPROCESSABLE_RESULT_MESSAGE, TaskWorker

__all__ = [
    "InMemoryTaskQueue",
    "TaskMessage",
    "TaskQueue",
    "TaskWorker",
    "UNPROCESSABLE_RESULT_MESSAGE",
]
