"""Lifecycle consumer that notifies clients on the task's topic.

Publishing is best effort. A notification that cannot be delivered is
logged and dropped; it never fails the consumer chain, so persistence and
recovery are unaffected by a slow or absent client.
"""

from collections import OrderedDict
from typing import Any

import structlog

from events.bus import TopicHub
from events.credentials import TopicTokenIssuer
from events.types import (
    LifecycleEvent,
    LifecycleEventType,
    NotificationEnvelope,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    task_topic,
)
from workflow.state_machine import StageType

logger = structlog.get_logger(__name__)

GENERIC_FAILURE_MESSAGE = "Generation failed. Please try again."
TERMINAL_TYPES = frozenset({LifecycleEventType.COMPLETED, LifecycleEventType.FAILED})
MAX_TRACKED_NOTIFICATIONS = 10_000


def build_envelope(event: LifecycleEvent) -> NotificationEnvelope:
    """Client-facing envelope for a lifecycle event.

    Failed events carry a generic message only; the technical error stays
    in the logs and the task record.
    """
    payload: dict[str, Any] | None = None
    error: str | None = None
    if isinstance(event, TaskProgress):
        payload = {"percentage": event.percentage, "message": event.message}
    elif isinstance(event, TaskCompleted):
        payload = {"result": event.result, "durationMs": event.duration_ms}
    elif isinstance(event, TaskFailed):
        error = GENERIC_FAILURE_MESSAGE
    else:
        payload = {"agentId": event.agent_id}
    return NotificationEnvelope(
        type=event.type,
        task_id=event.task_id,
        stage_type=event.stage,
        payload=payload,
        error=error,
    )


class NotificationPublisher:
    """Publishes one envelope per lifecycle event.

    A terminal envelope goes out once per task and event type: when the
    worker redelivers a Completed or Failed event, clients are not told
    twice.

    Attributes:
        hub: Topic hub clients subscribe to.
        token_issuer: Mints the subscriber token handed out when a task
            chains into a new one. Optional; without it the chained
            notification carries only the new topic name.
    """

    name = "notification_publisher"

    def __init__(self, hub: TopicHub, token_issuer: TopicTokenIssuer | None = None) -> None:
        self.hub = hub
        self.token_issuer = token_issuer
        self._notified: OrderedDict[tuple[str, LifecycleEventType], None] = OrderedDict()

    async def __call__(self, event: LifecycleEvent) -> None:
        key = (event.task_id, event.type)
        if key in self._notified:
            logger.debug(
                "notification_duplicate_skipped",
                task_id=event.task_id,
                event_type=event.type.value,
            )
            return
        try:
            envelope = build_envelope(event)
            delivered = await self.hub.publish(task_topic(event.task_id), envelope.to_message())
        except Exception as e:
            logger.warning(
                "notification_publish_failed",
                task_id=event.task_id,
                event_type=event.type.value,
                error=str(e),
            )
            return
        if event.type in TERMINAL_TYPES:
            self._notified[key] = None
            if len(self._notified) > MAX_TRACKED_NOTIFICATIONS:
                self._notified.popitem(last=False)
        if isinstance(event, TaskFailed):
            logger.info(
                "failure_notified",
                task_id=event.task_id,
                stage=event.stage.value,
                error=event.error,
                delivered=delivered,
            )

    async def publish_chained_start(
        self, parent: LifecycleEvent, next_task_id: str, next_stage: StageType
    ) -> None:
        """Tell the parent task's subscribers that a follow-up task started.

        The envelope goes to the parent's topic (the only one the client is
        listening on) and names the new task and its topic.
        """
        next_topic = task_topic(next_task_id)
        payload: dict[str, Any] = {
            "nextTaskId": next_task_id,
            "chainedFrom": parent.task_id,
            "topic": next_topic,
        }
        try:
            if self.token_issuer is not None:
                payload["subscriberToken"] = self.token_issuer.issue([next_topic])
            envelope = NotificationEnvelope(
                type=LifecycleEventType.STARTED,
                task_id=next_task_id,
                stage_type=next_stage,
                payload=payload,
            )
            await self.hub.publish(task_topic(parent.task_id), envelope.to_message())
        except Exception as e:
            logger.warning(
                "chained_start_publish_failed",
                task_id=parent.task_id,
                next_task_id=next_task_id,
                error=str(e),
            )
