from __future__ import annotations

from enum import Enum

from playwright.async_api import Error as PlaywrightError


class FailureClass(str, Enum):
    NOT_FOUND = "not_found"
    STALE = "stale"
    TIMEOUT = "timeout"
    ACTION_REJECTED = "action_rejected"
    FATAL = "fatal"


class HealingError(Exception):
    """Base for failures that map onto a step's failure class."""

    failure_class: FailureClass = FailureClass.NOT_FOUND


class StaleContextError(HealingError):
    """A window, frame or element handle went away while it was being used."""

    failure_class = FailureClass.STALE


class FatalSessionError(HealingError):
    """No usable window is left in the browser session; the run cannot continue."""

    failure_class = FailureClass.FATAL


class RunStoppedError(Exception):
    """Raised at a checkpoint once stop() was requested."""


_CLOSED_MARKERS = (
    "target closed",
    "target page, context or browser has been closed",
    "has been closed",
    "execution context was destroyed",
    "frame was detached",
    "element is not attached",
    "not attached to the dom",
)


def is_closed_error(exc: BaseException) -> bool:
    if not isinstance(exc, PlaywrightError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _CLOSED_MARKERS)
