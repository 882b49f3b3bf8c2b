# types.py
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

class StepStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

class RunOutcome(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    HALTED = "halted"
    LOGGING_UNAVAILABLE = "logging_unavailable"

@dataclass(frozen=True)
class StepResult:
    label: str
    status: StepStatus
    started_at: datetime
    ended_at: datetime
    exit_code: Optional[int] = None
    output: str = ""
    ignorable: bool = False

    @property
    def duration(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)

@dataclass
class RunLog:
    """Ordered record of every step attempted during one run."""
    path: Path
    results: List[StepResult] = field(default_factory=list)
    outcome: RunOutcome = RunOutcome.PENDING
    halted_at: Optional[str] = None

    def append(self, result: StepResult) -> None:
        self.results.append(result)

    @property
    def labels(self) -> List[str]:
        return [result.label for result in self.results]

    @property
    def failures(self) -> List[StepResult]:
        return [result for result in self.results if result.status == StepStatus.FAILED]

    @property
    def exit_code(self) -> int:
        if self.outcome == RunOutcome.COMPLETED:
            return 0
        if self.outcome == RunOutcome.LOGGING_UNAVAILABLE:
            return 3
        return 1
