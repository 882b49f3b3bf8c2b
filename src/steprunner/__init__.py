from .actions import ActionOutcome, CallableAction, CommandAction, FirstOf, RetryingAction, ShellAction
from .callbacks import ConsoleEchoCallback, RunnerCallback, TimingCallback
from .decorators import ignorable, step, when
from .download import DownloadAction
from .exceptions import LoggingUnavailable, RunFailed, StepRunnerError, UnknownPlanError
from .runner import RunnerConfig, Step, StepRunner, run_steps
from .types import RunLog, RunOutcome, StepResult, StepStatus

__all__ = [
    "ActionOutcome",
    "CallableAction",
    "CommandAction",
    "ConsoleEchoCallback",
    "DownloadAction",
    "FirstOf",
    "LoggingUnavailable",
    "RetryingAction",
    "RunFailed",
    "RunLog",
    "RunOutcome",
    "RunnerCallback",
    "RunnerConfig",
    "ShellAction",
    "Step",
    "StepResult",
    "StepRunner",
    "StepRunnerError",
    "StepStatus",
    "TimingCallback",
    "UnknownPlanError",
    "ignorable",
    "run_steps",
    "step",
    "when",
]
