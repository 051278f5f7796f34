"""Event type definitions for the campaign saga.

This module defines the immutable correlation context threaded through every
dispatch, the four task lifecycle events raised by the worker, and the
notification envelope published to clients.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.outputs import StageOutput, parse_stage_output
from workflow.state_machine import StageType


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LifecycleEventType(StrEnum):
    """Task lifecycle event types."""

    STARTED = "Started"
    PROGRESS = "Progress"
    COMPLETED = "Completed"
    FAILED = "Failed"


class CorrelationContext(BaseModel):
    """Identifiers that let consumers locate the project a task belongs to.

    Built once by the dispatcher and echoed unchanged on every lifecycle
    event of the task. Instances are frozen; ``with_extra`` returns a copy.

    Attributes:
        project_id: Project the task works for. None only on malformed events.
        user_id: User who triggered the dispatch.
        stage: Stage tag of the task.
        previous_status: Project status before the dispatch flipped it.
        extra: Additional correlation values (e.g. ``chained_from``).
    """

    model_config = ConfigDict(frozen=True)

    project_id: int | None = None
    user_id: int | None = None
    stage: StageType
    previous_status: str | None = None
    extra: Mapping[str, Any] = Field(default_factory=dict)

    def with_extra(self, **values: Any) -> "CorrelationContext":
        return self.model_copy(update={"extra": {**self.extra, **values}})


class _LifecycleEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    stage: StageType
    agent_id: str
    context: CorrelationContext
    timestamp: datetime = Field(default_factory=_utcnow)


class TaskStarted(_LifecycleEvent):
    """The worker picked the task up."""

    type: Literal[LifecycleEventType.STARTED] = LifecycleEventType.STARTED


class TaskProgress(_LifecycleEvent):
    """Intermediate progress reported by the agent."""

    type: Literal[LifecycleEventType.PROGRESS] = LifecycleEventType.PROGRESS
    percentage: int = Field(ge=0, le=100)
    message: str = ""


class TaskCompleted(_LifecycleEvent):
    """The agent returned a result.

    ``output`` is parsed from ``result`` when the event is built, so a
    result that does not fit the stage's shape fails here, at the edge of
    the system, rather than inside a persister.
    """

    type: Literal[LifecycleEventType.COMPLETED] = LifecycleEventType.COMPLETED
    result: dict[str, Any]
    output: StageOutput
    tokens_input: int = 0
    tokens_output: int = 0
    cost: float = 0.0
    duration_ms: int = 0
    model_used: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _parse_output(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("output") is None:
            context = data.get("context")
            if isinstance(context, CorrelationContext):
                extra = context.extra
            elif isinstance(context, dict):
                extra = context.get("extra") or {}
            else:
                extra = {}
            data = {
                **data,
                "output": parse_stage_output(
                    StageType(data["stage"]), data.get("result"), dict(extra)
                ),
            }
        return data


class TaskFailed(_LifecycleEvent):
    """The agent gave up on the task."""

    type: Literal[LifecycleEventType.FAILED] = LifecycleEventType.FAILED
    error: str
    is_recoverable: bool = False
    error_trace: str | None = None
    duration_ms: int = 0


LifecycleEvent = TaskStarted | TaskProgress | TaskCompleted | TaskFailed


class NotificationEnvelope(BaseModel):
    """Message published on a task topic.

    Serialized with camelCase keys:
    ``{type, taskId, stageType, payload | error, timestamp}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: LifecycleEventType
    task_id: str = Field(alias="taskId")
    stage_type: StageType = Field(alias="stageType")
    payload: dict[str, Any] | None = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_message(self) -> dict[str, Any]:
        """JSON-ready dict with ``payload`` or ``error``, never both."""
        message = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        if self.type != LifecycleEventType.FAILED:
            message.setdefault("payload", {})
        return message


def task_topic(task_id: str) -> str:
    """Topic name for a task's notifications."""
    return f"tasks/{task_id}"
