"""Mode State Machine.

Four modes, fully connected: any mode may move to any other.  Re-entering the
current mode is a no-op unless ``force`` is set (used to regenerate the
welcome notice after the history was cleared).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from ideapilot.schemas import MODES, SessionState
from ideapilot.utils import utc_now_iso

log = logging.getLogger(__name__)

MODE_DESCRIPTIONS: dict[str, str] = {
    "onboarding": "Configure agent settings and initial setup",
    "integration": "Test tools and integrations before deployment",
    "plan": "Analyze tasks and create strategic plans",
    "act": "Execute tasks and take concrete actions",
}

WELCOME_NOTICES: dict[str, str] = {
    "onboarding": "Onboarding mode: let's set up your language, operators and admin contact.",
    "integration": "Integration mode: I'll help you test the available tools and document how they behave.",
    "plan": "Plan mode: describe your startup idea and I'll walk you through the ten-factor assessment.",
    "act": "Act mode: I'll carry out concrete tasks with the tools you've approved.",
}


class InvalidModeError(ValueError):
    """Requested mode is not one of the four defined modes."""


@dataclass
class ModeChange:
    previous_mode: str
    current_mode: str
    changed: bool
    timestamp: str | None
    notice: str | None = None

    def as_result(self) -> dict:
        return {
            "success": True,
            "previousMode": self.previous_mode,
            "currentMode": self.current_mode,
            "changed": self.changed,
            "lastModeChange": self.timestamp,
        }


def validate_mode(mode: object) -> str:
    if not isinstance(mode, str) or mode not in MODES:
        raise InvalidModeError(f"Invalid mode specified: {mode!r}")
    return mode


def available_transitions(mode: str) -> list[str]:
    return [m for m in MODES if m != mode]


def set_mode(
    state: SessionState,
    target: str,
    force: bool = False,
    is_after_clear_history: bool = False,
    clock: Callable[[], str] = utc_now_iso,
) -> tuple[SessionState, ModeChange]:
    """Apply a mode transition and return the new state plus a change record.

    The state is returned unchanged (same object) when ``target`` equals the
    current mode and ``force`` is false.
    """
    target = validate_mode(target)
    previous = state.mode
    if previous == target and not force:
        return state, ModeChange(previous, target, changed=False, timestamp=state.last_mode_change)

    stamp = clock()
    new_state = state.model_copy(update={"mode": target, "last_mode_change": stamp})
    if is_after_clear_history:
        log.info("Re-entering %s mode after history clear", target)
    else:
        log.info("Mode change %s -> %s", previous, target)
    return new_state, ModeChange(previous, target, changed=True, timestamp=stamp, notice=WELCOME_NOTICES[target])
