"""Step actions and the target descriptors handed to the resolver."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Action(str, Enum):
    CLICK = "click"
    FILL = "fill"
    SELECT = "select"
    VERIFY = "verify"
    WAIT = "wait"


class StepAction(str, Enum):
    OPEN = "OPEN"
    CLICK = "CLICK"
    FILL = "FILL"
    SELECT = "SELECT"
    WAIT = "WAIT"
    VERIFY = "VERIFY"
    SCREENSHOT = "SCREENSHOT"


_ALIASES = {
    "OPENURL": StepAction.OPEN,
    "NAVIGATE": StepAction.OPEN,
    "GOTO": StepAction.OPEN,
    "TYPE": StepAction.FILL,
    "INPUT": StepAction.FILL,
    "SET": StepAction.FILL,
    "ASSERT": StepAction.VERIFY,
    "CHECK": StepAction.VERIFY,
    "SLEEP": StepAction.WAIT,
    "CAPTURE": StepAction.SCREENSHOT,
}

RESOLVED_ACTIONS = {
    StepAction.CLICK: Action.CLICK,
    StepAction.FILL: Action.FILL,
    StepAction.SELECT: Action.SELECT,
}


def parse_step_action(raw: Optional[str]) -> Optional[StepAction]:
    """Map a spreadsheet action cell to a StepAction, or None when unknown."""
    if not raw:
        return None
    key = str(raw).strip().upper().replace("_", "").replace(" ", "")
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return StepAction(key)
    except ValueError:
        return None


@dataclass(frozen=True)
class TargetDescriptor:
    target: str
    action: Action
    value: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.target or not self.target.strip():
            raise ValueError("target descriptor must not be empty")

    @property
    def text(self) -> str:
        return self.target.strip()

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.action.value} '{self.text}' = '{self.value}'"
        return f"{self.action.value} '{self.text}'"
