"""Skill execution status transitions."""

from __future__ import annotations

from typing import Dict, Set

from .schema import InvalidStateTransition, SkillStatus

_VALID_TRANSITIONS: Dict[SkillStatus, Set[SkillStatus]] = {
    SkillStatus.RUNNING: {
        SkillStatus.PAUSED,
        SkillStatus.COMPLETED,
        SkillStatus.FAILED,
        SkillStatus.CANCELLED,
    },
    SkillStatus.PAUSED: {
        SkillStatus.RUNNING,
        SkillStatus.FAILED,
        SkillStatus.CANCELLED,
    },
    SkillStatus.COMPLETED: set(),   # terminal
    SkillStatus.FAILED: set(),      # terminal
    SkillStatus.CANCELLED: set(),   # terminal
}


def can_transition(from_state: SkillStatus, to_state: SkillStatus) -> bool:
    return to_state in _VALID_TRANSITIONS[from_state]


def check_transition(from_state: SkillStatus, to_state: SkillStatus) -> SkillStatus:
    """Validate ``from_state → to_state`` and return *to_state*.

    Raises:
        InvalidStateTransition: If the move is not allowed.
    """
    if not can_transition(from_state, to_state):
        raise InvalidStateTransition(from_state.value, to_state.value)
    return to_state
