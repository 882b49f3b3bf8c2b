import time
import logging
from typing import TYPE_CHECKING, Dict, TextIO, Optional

import click

from steprunner.runlog import format_line
from steprunner.types import StepResult, StepStatus

if TYPE_CHECKING:
    from steprunner.runner import Step

logger = logging.getLogger(__name__)

class RunnerCallback:
    """Interface for runner callbacks."""
    async def before_step(self, step: "Step") -> None:
        pass

    async def after_step(self, step: "Step", result: StepResult) -> None:
        pass

class TimingCallback(RunnerCallback):
    """Callback that tracks execution time for each step."""
    def __init__(self) -> None:
        self.step_timings: Dict[str, float] = {}
        self._current_start: float = 0.0

    async def before_step(self, step: "Step") -> None:
        self._current_start = time.monotonic()

    async def after_step(self, step: "Step", result: StepResult) -> None:
        duration = 0.0 if result.status == StepStatus.SKIPPED else time.monotonic() - self._current_start
        self.step_timings[step.label] = duration
        logger.info("Finished step", extra={"step": step.label, "duration": duration, "status": result.status.value})

class ConsoleEchoCallback(RunnerCallback):
    """Mirror step progress to the terminal (the ``--debug`` echo).

    Failures go to stderr so they show up even when stdout is redirected.
    """
    def __init__(self, file: Optional[TextIO] = None, show_output: bool = True) -> None:
        self.file = file
        self.show_output = show_output

    def _echo(self, level: str, message: str) -> None:
        err = level != "INFO" and self.file is None
        for line in message.splitlines() or [""]:
            click.echo(format_line(level, line), file=self.file, err=err)

    async def before_step(self, step: "Step") -> None:
        self._echo("INFO", f">>> STEP: {step.label}")

    async def after_step(self, step: "Step", result: StepResult) -> None:
        if self.show_output and result.output:
            self._echo("INFO", result.output.rstrip())
        if result.status == StepStatus.SKIPPED:
            self._echo("INFO", f"{step.label}: skipped")
        elif result.status == StepStatus.FAILED:
            level = "WARN" if step.ignorable else "ERROR"
            suffix = " (ignored)" if step.ignorable else ""
            self._echo(level, f"{step.label}: exit code {result.exit_code}{suffix}")
        else:
            self._echo("INFO", f"{step.label}: exit code {result.exit_code}")
