"""Exception hierarchy for the campaign saga.

Persisters and the saga chainer let these propagate so the worker can
redeliver the event; notification, audit and recovery consumers log and
swallow them.
"""

from typing import Any


class SagaError(Exception):
    """Base class for all saga errors."""


class IllegalTransitionError(SagaError):
    """A status change that is not an edge of the workflow graph."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal status transition {current} -> {target}")
        self.current = current
        self.target = target


class MissingCorrelationError(SagaError):
    """A dispatch or event without the identifiers needed to find the project."""


class ProjectNotFoundError(SagaError):
    """The project referenced by an event or request does not exist."""

    def __init__(self, project_id: int) -> None:
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class DispatchError(SagaError):
    """The task queue rejected a submission after every retry."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class ConsumerChainError(SagaError):
    """One or more lifecycle consumers raised while handling an event.

    Every consumer in the chain still ran; ``failures`` lists the
    (consumer name, exception) pairs in execution order.
    """

    def __init__(self, event_type: str, failures: list[tuple[str, BaseException]]) -> None:
        names = ", ".join(name for name, _ in failures)
        super().__init__(f"{len(failures)} consumer(s) failed on {event_type}: {names}")
        self.event_type = event_type
        self.failures = failures


class AgentError(SagaError):
    """A generation agent could not produce a result."""

    def __init__(self, message: str, is_recoverable: bool = False, **details: Any) -> None:
        super().__init__(message)
        self.is_recoverable = is_recoverable
        self.details = details
