from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .types import RunLog


class StepRunnerError(Exception):
    """Base exception class for steprunner errors."""


class RunFailed(StepRunnerError):
    """Raised when a fatal step fails and the run halts."""

    def __init__(self, label: str, output: str = "", run_log: Optional["RunLog"] = None) -> None:
        msg = f"Step '{label}' failed"
        last_line = output.strip().splitlines()[-1] if output.strip() else ""
        if last_line:
            msg += f": {last_line}"
        super().__init__(msg)
        self.label = label
        self.output = output
        self.run_log = run_log


class LoggingUnavailable(StepRunnerError):
    """Raised when the durable run log cannot be written."""

    def __init__(self, path: Path, cause: Exception, run_log: Optional["RunLog"] = None) -> None:
        super().__init__(f"Cannot write run log {path}: {cause}")
        self.path = path
        self.cause = cause
        self.run_log = run_log


class UnknownPlanError(StepRunnerError):
    """Raised when a provisioning plan name is not registered."""

    def __init__(self, name: str, known: Optional[list[str]] = None) -> None:
        msg = f"Unknown plan '{name}'"
        if known:
            msg += f" (available: {', '.join(known)})"
        super().__init__(msg)
        self.name = name
