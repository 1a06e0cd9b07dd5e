from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

AFFIRMATIVE = {"", "yes", "y", "true", "1", "x"}


class StepStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    SKIPPED = "SKIPPED"
    STOPPED = "STOPPED"


@dataclass
class Instruction:
    step: str
    action: str
    target: str = ""
    data: str = ""
    execute: Optional[str] = None
    row_number: Optional[int] = None

    @property
    def should_execute(self) -> bool:
        if self.execute is None:
            return True
        return str(self.execute).strip().lower() in AFFIRMATIVE


@dataclass
class StepResult:
    step: str
    action: str
    target: str
    status: StepStatus
    remarks: str = ""
    actual_output: str = ""
    screenshot: Optional[str] = None
    page_source: Optional[str] = None
    failure_class: Optional[str] = None
    row_number: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "step": self.step,
            "action": self.action,
            "target": self.target,
            "status": self.status.value,
            "remarks": self.remarks,
            "actualOutput": self.actual_output,
            "screenshot": self.screenshot,
            "pageSource": self.page_source,
            "failureClass": self.failure_class,
        }
