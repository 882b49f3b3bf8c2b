import asyncio
import inspect
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

# Shell conventions for "could not execute" and "not found".
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class ActionOutcome:
    exit_code: int
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class Action(Protocol):
    """Anything the runner can await for a single outcome."""

    def describe(self) -> str: ...

    def __call__(self) -> Awaitable[ActionOutcome]: ...


class CommandAction:
    """Run an external program, capturing stdout and stderr together."""

    def __init__(
        self,
        *argv: str,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> None:
        if not argv:
            raise ValueError("CommandAction needs at least a program name")
        self.argv = tuple(argv)
        self.env = dict(env) if env else None
        self.cwd = cwd

    def describe(self) -> str:
        return shlex.join(self.argv)

    async def __call__(self) -> ActionOutcome:
        env = None
        if self.env is not None:
            env = {**os.environ, **self.env}
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
                cwd=self.cwd,
            )
        except FileNotFoundError as e:
            return ActionOutcome(EXIT_NOT_FOUND, f"{self.argv[0]}: command not found ({e})")
        except PermissionError as e:
            return ActionOutcome(EXIT_NOT_EXECUTABLE, f"{self.argv[0]}: permission denied ({e})")

        stdout, _ = await process.communicate()
        return ActionOutcome(process.returncode, stdout.decode("utf-8", errors="replace"))

    def __repr__(self) -> str:
        return f"CommandAction({self.describe()!r})"


class ShellAction(CommandAction):
    """Run a bash snippet; used where redirection or heredocs are needed."""

    def __init__(self, script: str, shell: str = "bash", **kwargs: Any) -> None:
        super().__init__(shell, "-c", script, **kwargs)
        self.script = script

    def describe(self) -> str:
        return f"{self.argv[0]} -c {self.script!r}"


class CallableAction:
    """Run an in-process function (sync or async) as a step action.

    A raised exception is reported as exit status 1 with the exception text as
    output. Returning ``False`` is a failure; returning an ``ActionOutcome``
    passes it through unchanged.
    """

    def __init__(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.func = func
        self.args = args
        self.kwargs = kwargs

    def describe(self) -> str:
        return getattr(self.func, "__qualname__", repr(self.func))

    async def __call__(self) -> ActionOutcome:
        try:
            value = self.func(*self.args, **self.kwargs)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            logger.debug("In-process action raised", exc_info=True, extra={"action": self.describe()})
            return ActionOutcome(1, f"{type(e).__name__}: {e}")

        if isinstance(value, ActionOutcome):
            return value
        if value is False:
            return ActionOutcome(1, "")
        if value is None or value is True:
            return ActionOutcome(0, "")
        return ActionOutcome(0, str(value))


class FirstOf:
    """Try each action in turn until one succeeds."""

    def __init__(self, *actions: Action) -> None:
        if not actions:
            raise ValueError("FirstOf needs at least one action")
        self.actions = actions

    def describe(self) -> str:
        return " || ".join(action.describe() for action in self.actions)

    async def __call__(self) -> ActionOutcome:
        outputs = []
        outcome = ActionOutcome(1, "")
        for action in self.actions:
            outcome = await action()
            outputs.append(f">>> {action.describe()} (exit {outcome.exit_code})\n{outcome.output}".rstrip())
            if outcome.succeeded:
                break
        return ActionOutcome(outcome.exit_code, "\n".join(outputs))


class RetryingAction:
    """Retry one action a bounded number of times with a fixed delay.

    The wrapped action reports exactly one outcome to the runner: the first
    success, or the last failure once every attempt is spent.
    """

    def __init__(self, action: Action, attempts: int = 5, delay: float = 3.0) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.action = action
        self.attempts = attempts
        self.delay = delay

    def describe(self) -> str:
        return f"{self.action.describe()} (up to {self.attempts} attempts)"

    async def __call__(self) -> ActionOutcome:
        outputs = []
        outcome = ActionOutcome(1, "")
        for attempt in range(1, self.attempts + 1):
            outcome = await self.action()
            if outcome.output:
                outputs.append(outcome.output.rstrip())
            if outcome.succeeded:
                break

            outputs.append(f"Attempt {attempt} failed with exit code {outcome.exit_code}")
            logger.info(
                "Attempt failed",
                extra={"action": self.action.describe(), "attempt": attempt},
            )
            if attempt < self.attempts:
                outputs.append(f"Retrying in {self.delay:g} seconds...")
                await asyncio.sleep(self.delay)
        return ActionOutcome(outcome.exit_code, "\n".join(outputs))
