"""
Engagement lifecycle.

    browsing -> selected -> accepted -> reserved -> payment_submitted
             -> payment_confirmed -> rating_requested -> made_available | replaced
    selected -> declined

declined, made_available and replaced end an engagement; the same client may
start a fresh one afterwards.
"""
from enum import Enum

from .errors import InvalidStateTransitionError


class EngagementState(str, Enum):
    BROWSING = "browsing"
    SELECTED = "selected"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    RESERVED = "reserved"
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_CONFIRMED = "payment_confirmed"
    RATING_REQUESTED = "rating_requested"
    MADE_AVAILABLE = "made_available"
    REPLACED = "replaced"


class VisibilityChoice(str, Enum):
    MAKE_AVAILABLE = "make_available"
    REPLACE = "replace"


TRANSITIONS: dict[EngagementState, frozenset[EngagementState]] = {
    EngagementState.BROWSING: frozenset({EngagementState.SELECTED}),
    EngagementState.SELECTED: frozenset({EngagementState.ACCEPTED, EngagementState.DECLINED}),
    EngagementState.ACCEPTED: frozenset({EngagementState.RESERVED}),
    EngagementState.RESERVED: frozenset({EngagementState.PAYMENT_SUBMITTED}),
    # a client may send a corrected proof before the provider confirms
    EngagementState.PAYMENT_SUBMITTED: frozenset({
        EngagementState.PAYMENT_SUBMITTED,
        EngagementState.PAYMENT_CONFIRMED,
    }),
    EngagementState.PAYMENT_CONFIRMED: frozenset({
        EngagementState.RATING_REQUESTED,
        EngagementState.MADE_AVAILABLE,
        EngagementState.REPLACED,
    }),
    EngagementState.RATING_REQUESTED: frozenset({
        EngagementState.MADE_AVAILABLE,
        EngagementState.REPLACED,
    }),
    EngagementState.DECLINED: frozenset(),
    EngagementState.MADE_AVAILABLE: frozenset(),
    EngagementState.REPLACED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)

PAYABLE_STATES = frozenset({EngagementState.RESERVED, EngagementState.PAYMENT_SUBMITTED})

CONFIRMED_STATES = frozenset({EngagementState.PAYMENT_CONFIRMED, EngagementState.RATING_REQUESTED})

VISIBILITY_OUTCOMES = {
    VisibilityChoice.MAKE_AVAILABLE: EngagementState.MADE_AVAILABLE,
    VisibilityChoice.REPLACE: EngagementState.REPLACED,
}


def can_transition(current: EngagementState, target: EngagementState) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: EngagementState, target: EngagementState) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransitionError(
            f"Cannot move engagement from {current.value} to {target.value}"
        )


def is_terminal(state: EngagementState) -> bool:
    return state in TERMINAL_STATES


def path(current: EngagementState, *targets: EngagementState) -> list[EngagementState]:
    """Validate a multi-step move and return the visited states."""
    visited = []
    for target in targets:
        ensure_transition(current, target)
        visited.append(target)
        current = target
    return visited
