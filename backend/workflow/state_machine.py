"""Project workflow state machine.

Pure status/transition table for a campaign project. Nothing in this
module performs I/O: the store applies transitions with a conditional
UPDATE, and the in-memory ``transition`` helper below implements the
same guard for objects already loaded.

Forward edges follow the stage order
(draft -> persona -> competitors -> strategy -> assets). The only backward
edges are the reversion edges used by failure recovery and the
cancellation edges used when a dispatch never reached the queue.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from errors import IllegalTransitionError


class ProjectStatus(StrEnum):
    """Lifecycle status of a campaign project."""

    DRAFT = "draft"
    ENRICHED = "enriched"
    PERSONA_IN_PROGRESS = "persona_in_progress"
    PERSONA_GENERATED = "persona_generated"
    COMPETITOR_IN_PROGRESS = "competitor_in_progress"
    COMPETITOR_DETECTED = "competitor_detected"
    COMPETITOR_VALIDATED = "competitor_validated"
    STRATEGY_IN_PROGRESS = "strategy_in_progress"
    STRATEGY_GENERATED = "strategy_generated"
    ASSETS_IN_PROGRESS = "assets_in_progress"
    ASSETS_GENERATED = "assets_generated"


class StageType(StrEnum):
    """Closed set of generation stages.

    Every dispatched task and every lifecycle event carries one of these
    tags; consumers compare it by equality.
    """

    PERSONA = "persona"
    COMPETITOR_DETECTION = "competitor_detection"
    COMPETITOR_ANALYSIS = "competitor_analysis"
    STRATEGY = "strategy"
    ASSETS = "assets"


@dataclass(frozen=True)
class StageDefinition:
    """Static description of one stage's place in the workflow.

    Attributes:
        stage: The stage tag.
        agent_id: Identifier of the generation agent that runs the stage.
        in_progress: Status the project holds while the stage runs.
        completed: Status reached when the stage's results are persisted,
            or None when completion does not move the project.
        dispatch_from: Statuses from which the stage may be dispatched.
        revert_to: Statuses a failure may revert to. The first entry is
            used unless the status recorded at dispatch time is listed.
    """

    stage: StageType
    agent_id: str
    in_progress: ProjectStatus
    completed: ProjectStatus | None
    dispatch_from: frozenset[ProjectStatus]
    revert_to: tuple[ProjectStatus, ...]


STAGES: dict[StageType, StageDefinition] = {
    StageType.PERSONA: StageDefinition(
        stage=StageType.PERSONA,
        agent_id="persona_generator",
        in_progress=ProjectStatus.PERSONA_IN_PROGRESS,
        completed=ProjectStatus.PERSONA_GENERATED,
        dispatch_from=frozenset({
            ProjectStatus.DRAFT,
            ProjectStatus.ENRICHED,
            ProjectStatus.PERSONA_GENERATED,
        }),
        revert_to=(
            ProjectStatus.ENRICHED,
            ProjectStatus.DRAFT,
            ProjectStatus.PERSONA_GENERATED,
        ),
    ),
    StageType.COMPETITOR_DETECTION: StageDefinition(
        stage=StageType.COMPETITOR_DETECTION,
        agent_id="competitor_detector",
        in_progress=ProjectStatus.COMPETITOR_IN_PROGRESS,
        completed=ProjectStatus.COMPETITOR_DETECTED,
        dispatch_from=frozenset({
            ProjectStatus.PERSONA_GENERATED,
            ProjectStatus.COMPETITOR_DETECTED,
            ProjectStatus.COMPETITOR_VALIDATED,
        }),
        revert_to=(ProjectStatus.PERSONA_GENERATED,),
    ),
    StageType.COMPETITOR_ANALYSIS: StageDefinition(
        stage=StageType.COMPETITOR_ANALYSIS,
        agent_id="competitor_analyst",
        in_progress=ProjectStatus.STRATEGY_IN_PROGRESS,
        completed=None,
        dispatch_from=frozenset({
            ProjectStatus.PERSONA_GENERATED,
            ProjectStatus.COMPETITOR_VALIDATED,
            ProjectStatus.STRATEGY_GENERATED,
        }),
        revert_to=(ProjectStatus.PERSONA_GENERATED,),
    ),
    StageType.STRATEGY: StageDefinition(
        stage=StageType.STRATEGY,
        agent_id="strategy_optimizer",
        in_progress=ProjectStatus.STRATEGY_IN_PROGRESS,
        completed=ProjectStatus.STRATEGY_GENERATED,
        dispatch_from=frozenset({
            ProjectStatus.PERSONA_GENERATED,
            ProjectStatus.COMPETITOR_VALIDATED,
            ProjectStatus.STRATEGY_GENERATED,
        }),
        revert_to=(ProjectStatus.PERSONA_GENERATED,),
    ),
    StageType.ASSETS: StageDefinition(
        stage=StageType.ASSETS,
        agent_id="content_creator",
        in_progress=ProjectStatus.ASSETS_IN_PROGRESS,
        completed=ProjectStatus.ASSETS_GENERATED,
        dispatch_from=frozenset({
            ProjectStatus.STRATEGY_GENERATED,
            ProjectStatus.ASSETS_GENERATED,
        }),
        revert_to=(ProjectStatus.STRATEGY_GENERATED,),
    ),
}


def _build_forward_edges() -> frozenset[tuple[ProjectStatus, ProjectStatus]]:
    edges: set[tuple[ProjectStatus, ProjectStatus]] = {
        (ProjectStatus.DRAFT, ProjectStatus.ENRICHED),
        (ProjectStatus.COMPETITOR_DETECTED, ProjectStatus.COMPETITOR_VALIDATED),
    }
    for definition in STAGES.values():
        for source in definition.dispatch_from:
            edges.add((source, definition.in_progress))
        if definition.completed is not None:
            edges.add((definition.in_progress, definition.completed))
    return frozenset(edges)


def _build_reversion_edges() -> frozenset[tuple[ProjectStatus, ProjectStatus]]:
    return frozenset(
        (definition.in_progress, target)
        for definition in STAGES.values()
        for target in definition.revert_to
    )


def _build_cancellation_edges() -> frozenset[tuple[ProjectStatus, ProjectStatus]]:
    # in_progress -> source undoes a dispatch the queue never accepted
    return frozenset(
        (definition.in_progress, source)
        for definition in STAGES.values()
        for source in definition.dispatch_from
        if source != definition.in_progress
    )


FORWARD_EDGES = _build_forward_edges()
REVERSION_EDGES = _build_reversion_edges()
CANCELLATION_EDGES = _build_cancellation_edges()

IN_PROGRESS_STATUSES = frozenset(d.in_progress for d in STAGES.values())


class HasStatus(Protocol):
    status: ProjectStatus


def get_stage(stage: StageType | str) -> StageDefinition:
    """Return the definition for a stage tag.

    Raises:
        ValueError: If the tag is not a known stage.
    """
    return STAGES[StageType(stage)]


def is_forward(current: ProjectStatus, target: ProjectStatus) -> bool:
    return (current, target) in FORWARD_EDGES


def is_reversion(current: ProjectStatus, target: ProjectStatus) -> bool:
    return (current, target) in REVERSION_EDGES


def is_cancellation(current: ProjectStatus, target: ProjectStatus) -> bool:
    return (current, target) in CANCELLATION_EDGES


def is_legal(current: ProjectStatus, target: ProjectStatus) -> bool:
    """Check whether ``current -> target`` is an edge of the workflow graph."""
    return (
        is_forward(current, target)
        or is_reversion(current, target)
        or is_cancellation(current, target)
    )


def ensure_legal(current: ProjectStatus, target: ProjectStatus) -> None:
    """Raise IllegalTransitionError unless ``current -> target`` is an edge."""
    if not is_legal(current, target):
        raise IllegalTransitionError(current, target)


def transition(project: HasStatus, expected: ProjectStatus, target: ProjectStatus) -> bool:
    """Guarded transition on an in-memory project.

    Returns False and leaves the project untouched when its status is not
    ``expected``. A status change that is not a declared edge is a
    programming error and raises.

    Args:
        project: Any object with a mutable ``status`` attribute.
        expected: Status the project must currently hold.
        target: Status to move to.

    Returns:
        True if the status was changed.

    Raises:
        IllegalTransitionError: If ``expected -> target`` is not an edge.
    """
    ensure_legal(expected, target)
    if project.status != expected:
        return False
    project.status = target
    return True


def can_dispatch(stage: StageType, current: ProjectStatus) -> bool:
    """Whether a stage may be dispatched while the project is in ``current``."""
    return current in STAGES[stage].dispatch_from


def reversion_target(
    stage: StageType, previous_status: ProjectStatus | str | None = None
) -> ProjectStatus:
    """Pick the status a failed stage reverts to.

    The status recorded at dispatch time wins when it is one of the stage's
    declared reversion targets; otherwise the stage's default applies.
    """
    definition = STAGES[stage]
    if previous_status is not None:
        try:
            previous = ProjectStatus(previous_status)
        except ValueError:
            previous = None
        if previous in definition.revert_to:
            return previous
    return definition.revert_to[0]
