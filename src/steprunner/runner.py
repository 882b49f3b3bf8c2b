import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .actions import Action, ActionOutcome, CallableAction, CommandAction, ShellAction
from .callbacks import ConsoleEchoCallback, RunnerCallback
from .decorators import get_metadata
from .exceptions import LoggingUnavailable, RunFailed
from .runlog import RunLogFile
from .types import RunLog, RunOutcome, StepResult, StepStatus

logger = logging.getLogger(__name__)

DEFAULT_LOG_PATH = Path("/var/log/template-cleanup.log")
LOG_PATH_ENV = "STEPRUNNER_LOG_FILE"


@dataclass(frozen=True)
class Step:
    """One administrative action in a provisioning run."""

    label: str
    action: Action
    ignorable: bool = False
    condition: Optional[Callable[[], bool]] = None

    @classmethod
    def command(cls, label: str, *argv: str, **kwargs: Any) -> "Step":
        env = kwargs.pop("env", None)
        cwd = kwargs.pop("cwd", None)
        return cls(label, CommandAction(*argv, env=env, cwd=cwd), **kwargs)

    @classmethod
    def shell(cls, label: str, script: str, **kwargs: Any) -> "Step":
        return cls(label, ShellAction(script), **kwargs)

    @classmethod
    def from_function(cls, func: Callable[..., Any], *args: Any, **kwargs: Any) -> "Step":
        """Build a step from a function decorated with ``@step``."""
        metadata = get_metadata(func)
        label = metadata.label or func.__name__.replace("_", " ")
        return cls(
            label,
            CallableAction(func, *args, **kwargs),
            ignorable=metadata.ignorable,
            condition=metadata.condition,
        )


@dataclass
class RunnerConfig:
    """Configuration for a provisioning run."""

    log_path: Path = DEFAULT_LOG_PATH
    debug: bool = False
    log_mode: int = 0o600

    @classmethod
    def from_env(cls, **overrides: Any) -> "RunnerConfig":
        overrides = {key: value for key, value in overrides.items() if value is not None}
        if "log_path" not in overrides and os.environ.get(LOG_PATH_ENV):
            overrides["log_path"] = Path(os.environ[LOG_PATH_ENV])
        return cls(**overrides)


class StepRunner:
    """Runs steps one at a time, in order, recording each to the run log."""

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        callbacks: Optional[list[RunnerCallback]] = None,
    ) -> None:
        self.steps: list[Step] = []
        self.config = config or RunnerConfig()
        self.callbacks: list[RunnerCallback] = list(callbacks or [])
        if self.config.debug:
            self.callbacks.append(ConsoleEchoCallback())
        self.sink = RunLogFile(Path(self.config.log_path), mode=self.config.log_mode)
        self.run_log: Optional[RunLog] = None

    def add_step(self, step: Step) -> None:
        self.steps.append(step)

    def add_callback(self, callback: RunnerCallback) -> None:
        self.callbacks.append(callback)

    def _log(self, run_log: RunLog, level: str, message: str) -> None:
        try:
            self.sink.write(level, message)
        except OSError as e:
            run_log.outcome = RunOutcome.LOGGING_UNAVAILABLE
            logger.error("Run log unavailable", extra={"path": str(self.sink.path), "error": str(e)})
            raise LoggingUnavailable(self.sink.path, e, run_log) from e

    async def _notify(self, hook: str, *args: Any) -> None:
        for callback in self.callbacks:
            try:
                await getattr(callback, hook)(*args)
            except Exception:
                logger.exception(f"Callback {type(callback).__name__}.{hook} failed")

    async def _run_step(self, step: Step, run_log: RunLog) -> StepResult:
        started_at = datetime.now()
        try:
            should_run = step.condition is None or bool(step.condition())
        except Exception as e:
            logger.exception(f"Condition for step {step.label} raised")
            should_run = True
            outcome: Optional[ActionOutcome] = ActionOutcome(1, f"Condition raised {type(e).__name__}: {e}")
        else:
            outcome = None

        if not should_run:
            self._log(run_log, "INFO", f"Skipping '{step.label}': condition not met")
            result = StepResult(step.label, StepStatus.SKIPPED, started_at, datetime.now(), ignorable=step.ignorable)
            await self._notify("after_step", step, result)
            return result

        self._log(run_log, "INFO", f">>> STEP: {step.label}")
        self._log(run_log, "INFO", f">>> COMMAND: {step.action.describe()}")
        await self._notify("before_step", step)

        if outcome is None:
            try:
                outcome = await step.action()
            except Exception as e:
                logger.exception(f"Action for step {step.label} raised")
                outcome = ActionOutcome(1, f"{type(e).__name__}: {e}")

        ended_at = datetime.now()
        if outcome.output.strip():
            self._log(run_log, "INFO", outcome.output.rstrip())
        self._log(run_log, "INFO", f">>> EXIT CODE: {outcome.exit_code}")

        status = StepStatus.COMPLETED if outcome.succeeded else StepStatus.FAILED
        result = StepResult(
            label=step.label,
            status=status,
            started_at=started_at,
            ended_at=ended_at,
            exit_code=outcome.exit_code,
            output=outcome.output,
            ignorable=step.ignorable,
        )

        if status == StepStatus.FAILED:
            if step.ignorable:
                self._log(run_log, "WARN", f"'{step.label}' failed with exit code {outcome.exit_code} (ignored)")
            else:
                self._log(run_log, "ERROR", f"'{step.label}' failed with exit code {outcome.exit_code}; run halted")

        await self._notify("after_step", step, result)
        return result

    async def run(self, steps: Optional[Iterable[Step]] = None) -> RunLog:
        """Run ``steps`` (or the added steps) and return the completed run log.

        Raises ``RunFailed`` when a non-ignorable step fails and
        ``LoggingUnavailable`` when the log file cannot be written. Both carry
        the partial ``RunLog``.
        """
        steps = list(steps) if steps is not None else list(self.steps)
        run_log = RunLog(path=self.sink.path, outcome=RunOutcome.RUNNING)
        self.run_log = run_log

        try:
            self.sink.open()
        except OSError as e:
            run_log.outcome = RunOutcome.LOGGING_UNAVAILABLE
            raise LoggingUnavailable(self.sink.path, e, run_log) from e
        self._log(run_log, "INFO", f"Run started: {len(steps)} steps")

        for step in steps:
            logger.info("Starting step", extra={"step": step.label})
            result = await self._run_step(step, run_log)
            run_log.append(result)

            if result.status == StepStatus.FAILED and not step.ignorable:
                run_log.outcome = RunOutcome.HALTED
                run_log.halted_at = step.label
                raise RunFailed(step.label, result.output, run_log)

            logger.info("Completed step", extra={"step": step.label, "status": result.status.value})

        run_log.outcome = RunOutcome.COMPLETED
        self._log(run_log, "INFO", f"Run completed: {len(run_log.results)} steps, {len(run_log.failures)} ignored failures")
        return run_log


async def run_steps(
    steps: Iterable[Step],
    log_path: Path,
    debug_echo: bool = False,
    callbacks: Optional[list[RunnerCallback]] = None,
) -> RunLog:
    runner = StepRunner(RunnerConfig(log_path=Path(log_path), debug=debug_echo), callbacks=callbacks)
    return await runner.run(steps)
