"""Consumer chain table for every (lifecycle event, stage) pair.

Order inside a chain is the order below:

- Started: audit record, then notification.
- Progress: notification only.
- Completed: audit record, stage persister, notification, metrics. The
  competitor-analysis chain adds the saga chainer right after the
  notification, so the client sees the analysis complete before the
  strategy task is announced, and the chainer reads a stored analysis.
- Failed: audit record, recovery, notification, metrics.
"""

from events.bus import TopicHub
from events.credentials import TopicTokenIssuer
from events.lifecycle import ChainKey, Consumer, LifecycleBus
from events.types import LifecycleEventType
from metrics import MetricsCollector
from models.database import ProjectStore, TaskStore
from saga.chainer import SagaChainer
from saga.dispatcher import TaskDispatcher
from saga.persisters import PERSISTERS
from saga.publisher import NotificationPublisher
from saga.recorder import TaskRecorder
from saga.recovery import FailureRecoveryHandler
from workflow.state_machine import StageType


def build_chains(
    projects: ProjectStore,
    tasks: TaskStore,
    dispatcher: TaskDispatcher,
    hub: TopicHub,
    metrics: MetricsCollector,
    token_issuer: TopicTokenIssuer | None = None,
) -> dict[ChainKey, list[Consumer]]:
    recorder = TaskRecorder(tasks)
    publisher = NotificationPublisher(hub, token_issuer)
    chainer = SagaChainer(projects, tasks, dispatcher, publisher)

    chains: dict[ChainKey, list[Consumer]] = {}
    for stage in StageType:
        completed: list[Consumer] = [recorder, PERSISTERS[stage](projects), publisher]
        if stage == chainer.source_stage:
            completed.append(chainer)
        completed.append(metrics)

        chains[(LifecycleEventType.STARTED, stage)] = [recorder, publisher]
        chains[(LifecycleEventType.PROGRESS, stage)] = [publisher]
        chains[(LifecycleEventType.COMPLETED, stage)] = completed
        chains[(LifecycleEventType.FAILED, stage)] = [
            recorder,
            FailureRecoveryHandler(stage, projects),
            publisher,
            metrics,
        ]
    return chains


def build_lifecycle_bus(
    projects: ProjectStore,
    tasks: TaskStore,
    dispatcher: TaskDispatcher,
    hub: TopicHub,
    metrics: MetricsCollector,
    token_issuer: TopicTokenIssuer | None = None,
) -> LifecycleBus:
    """Lifecycle bus wired with the application's consumer chains."""
    return LifecycleBus(build_chains(projects, tasks, dispatcher, hub, metrics, token_issuer))
