"""Outcome types for provisioning steps that are allowed to degrade."""

from dataclasses import dataclass
from enum import Enum


class StepStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    DEGRADED = "degraded"


@dataclass
class StepResult:
    """Outcome of a best-effort step.

    Fatal failures are raised, never returned; a DEGRADED result means the
    step failed but the session can carry on without it.
    """

    status: StepStatus
    detail: str = ""
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.OK

    @classmethod
    def skipped(cls, detail: str) -> "StepResult":
        return cls(StepStatus.SKIPPED, detail)

    @classmethod
    def degraded(cls, detail: str, output: str = "") -> "StepResult":
        return cls(StepStatus.DEGRADED, detail, output)
