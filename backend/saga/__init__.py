"""Campaign saga: dispatch, lifecycle consumers and stage chaining.

- TaskDispatcher: starts a stage (status flip, correlation, queue submit)
- StagePersister subclasses: store stage results on Completed
- FailureRecoveryHandler: reverts in-progress status on Failed
- SagaChainer: continues competitor analysis into strategy
- NotificationPublisher / TaskRecorder: client notifications and audit
- build_lifecycle_bus: the consumer chain table
"""

from saga.briefs import assemble_brief, build_strategy_brief
from saga.chainer import AnalysisNotPersistedError, SagaChainer
from saga.chains import build_chains, build_lifecycle_bus
from saga.dispatcher import TaskDispatcher
from saga.persisters import (
    PERSISTERS,
    AssetPersister,
    CompetitorAnalysisPersister,
    CompetitorPersister,
    PersonaPersister,
    StagePersister,
    StrategyPersister,
)
from saga.publisher import GENERIC_FAILURE_MESSAGE, NotificationPublisher, build_envelope
from saga.recorder import TaskRecorder
from saga.recovery import FailureRecoveryHandler

__all__ = [
    "AnalysisNotPersistedError",
    "GENERIC_FAILURE_MESSAGE",
    "PERSISTERS",
    "AssetPersister",
    "CompetitorAnalysisPersister",
    "CompetitorPersister",
    "FailureRecoveryHandler",
    "NotificationPublisher",
    "PersonaPersister",
    "SagaChainer",
    "StagePersister",
    "StrategyPersister",
    "TaskDispatcher",
    "TaskRecorder",
    "assemble_brief",
    "build_chains",
    "build_envelope",
    "build_lifecycle_bus",
    "build_strategy_brief",
]
