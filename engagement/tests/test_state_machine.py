"""Unit Tests for the engagement lifecycle table."""

import pytest

from engagement.errors import InvalidStateTransitionError
from engagement.state_machine import (
    TERMINAL_STATES,
    EngagementState,
    can_transition,
    ensure_transition,
    is_terminal,
    path,
)


class TestTransitions:
    """Tests for allowed and rejected moves."""

    def test_happy_path(self):
        """Test the full lifecycle is a chain of allowed moves."""
        visited = path(
            EngagementState.BROWSING,
            EngagementState.SELECTED,
            EngagementState.ACCEPTED,
            EngagementState.RESERVED,
            EngagementState.PAYMENT_SUBMITTED,
            EngagementState.PAYMENT_CONFIRMED,
            EngagementState.RATING_REQUESTED,
            EngagementState.MADE_AVAILABLE,
        )

        assert visited[-1] == EngagementState.MADE_AVAILABLE
        assert len(visited) == 7

    def test_resubmission_allowed_before_confirmation(self):
        """Test a corrected proof can follow a submitted one."""
        assert can_transition(EngagementState.PAYMENT_SUBMITTED, EngagementState.PAYMENT_SUBMITTED)

    def test_cannot_skip_reservation(self):
        """Test payment can't be submitted on an unaccepted selection."""
        with pytest.raises(InvalidStateTransitionError):
            ensure_transition(EngagementState.SELECTED, EngagementState.PAYMENT_SUBMITTED)

    def test_partial_path_rejected(self):
        """Test path validates every hop, not just the last one."""
        with pytest.raises(InvalidStateTransitionError):
            path(EngagementState.DECLINED, EngagementState.ACCEPTED, EngagementState.RESERVED)

    def test_terminal_states(self):
        """Test declined and the visibility outcomes end the engagement."""
        assert TERMINAL_STATES == {
            EngagementState.DECLINED,
            EngagementState.MADE_AVAILABLE,
            EngagementState.REPLACED,
        }
        assert is_terminal(EngagementState.REPLACED)
        assert not is_terminal(EngagementState.RESERVED)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
