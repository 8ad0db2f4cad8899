from __future__ import annotations

import pytest

from ideapilot.modes import WELCOME_NOTICES, InvalidModeError, available_transitions, set_mode, validate_mode
from ideapilot.schemas import SessionState


def _clock():
    return "2025-02-02T10:00:00+00:00"


class TestSetMode:
    def test_same_mode_is_noop(self):
        state = SessionState(mode="plan")
        new_state, change = set_mode(state, "plan", clock=_clock)
        assert new_state is state
        assert change.changed is False
        assert change.notice is None

    def test_transition_stamps_and_notices(self):
        state = SessionState(mode="onboarding")
        new_state, change = set_mode(state, "plan", clock=_clock)
        assert new_state.mode == "plan"
        assert new_state.last_mode_change == _clock()
        assert state.mode == "onboarding"
        assert change.previous_mode == "onboarding"
        assert change.notice == WELCOME_NOTICES["plan"]

    def test_force_reenters_current_mode(self):
        state = SessionState(mode="act")
        new_state, change = set_mode(state, "act", force=True, is_after_clear_history=True, clock=_clock)
        assert change.changed is True
        assert new_state.last_mode_change == _clock()
        assert change.notice == WELCOME_NOTICES["act"]

    @pytest.mark.parametrize("bad", ["sleep", "", None, "PLAN"])
    def test_invalid_mode_rejected(self, bad):
        with pytest.raises(InvalidModeError):
            set_mode(SessionState(), bad)

    def test_invalid_mode_is_value_error(self):
        with pytest.raises(ValueError):
            validate_mode(3)

    def test_as_result(self):
        _, change = set_mode(SessionState(), "integration", clock=_clock)
        assert change.as_result() == {
            "success": True,
            "previousMode": "onboarding",
            "currentMode": "integration",
            "changed": True,
            "lastModeChange": _clock(),
        }


def test_every_mode_reaches_every_other():
    for mode in ("onboarding", "integration", "plan", "act"):
        targets = available_transitions(mode)
        assert mode not in targets
        assert len(targets) == 3
