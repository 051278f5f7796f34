"""Event system for the campaign saga.

This package provides two buses:

- LifecycleBus: runs the declared, ordered consumer chain (persisters,
  recovery handlers, saga chainer, notification publisher) for each task
  lifecycle event raised by the worker.
- TopicHub: in-process pub/sub that fans notification envelopes out to
  clients reading a task topic over WebSocket.

TopicTokenIssuer mints the topic-scoped credentials those clients present.

Usage:
    >>> from events import TopicHub, get_topic_hub, TaskStarted
    >>> hub = get_topic_hub()
    >>> queue = hub.subscribe("tasks/abc")
"""

from events.bus import TOPIC_CLOSED, TopicHub, get_topic_hub, reset_topic_hub
from events.credentials import TopicTokenIssuer
from events.lifecycle import Consumer, LifecycleBus
from events.types import (
    CorrelationContext,
    LifecycleEvent,
    LifecycleEventType,
    NotificationEnvelope,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStarted,
    task_topic,
)

__all__ = [
    "TOPIC_CLOSED",
    "Consumer",
    "CorrelationContext",
    "LifecycleBus",
    "LifecycleEvent",
    "LifecycleEventType",
    "NotificationEnvelope",
    "TaskCompleted",
    "TaskFailed",
    "TaskProgress",
    "TaskStarted",
    "TopicHub",
    "TopicTokenIssuer",
    "get_topic_hub",
    "reset_topic_hub",
    "task_topic",
]
