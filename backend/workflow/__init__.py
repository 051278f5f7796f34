"""Workflow state machine for campaign projects."""

from workflow.state_machine import (
    CANCELLATION_EDGES,
    FORWARD_EDGES,
    IN_PROGRESS_STATUSES,
    REVERSION_EDGES,
    STAGES,
    ProjectStatus,
    StageDefinition,
    StageType,
    can_dispatch,
    ensure_legal,
    get_stage,
    is_legal,
    reversion_target,
    transition,
)

__all__ = [
    "CANCELLATION_EDGES",
    "FORWARD_EDGES",
    "IN_PROGRESS_STATUSES",
    "REVERSION_EDGES",
    "STAGES",
    "ProjectStatus",
    "StageDefinition",
    "StageType",
    "can_dispatch",
    "ensure_legal",
    "get_stage",
    "is_legal",
    "reversion_target",
    "transition",
]
