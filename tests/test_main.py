import os
import re
from pathlib import Path

import pytest

from steprunner.actions import ActionOutcome, CallableAction, CommandAction, RetryingAction
from steprunner.callbacks import RunnerCallback, TimingCallback
from steprunner.decorators import ignorable, step, when
from steprunner.exceptions import LoggingUnavailable, RunFailed
from steprunner.runner import RunnerConfig, Step, StepRunner, run_steps
from steprunner.types import RunOutcome, StepResult, StepStatus

LINE_PATTERN = re.compile(r"^\[\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\] \[(INFO|WARN|ERROR)\] ")

# ===== Helpers for Testing =====


def recording_step(label: str, calls: list, exit_code: int = 0, output: str = "", **kwargs) -> Step:
    def action() -> ActionOutcome:
        calls.append(label)
        return ActionOutcome(exit_code, output)

    return Step(label, CallableAction(action), **kwargs)


def levels(path: Path) -> list[str]:
    return [LINE_PATTERN.match(line).group(1) for line in path.read_text().splitlines()]


class MockCallback(RunnerCallback):
    def __init__(self):
        self.before_calls = []
        self.after_calls = []

    async def before_step(self, step: Step) -> None:
        self.before_calls.append(step.label)

    async def after_step(self, step: Step, result: StepResult) -> None:
        self.after_calls.append((step.label, result.status))


class BrokenCallback(RunnerCallback):
    async def before_step(self, step: Step) -> None:
        raise RuntimeError("callback exploded")


# ===== Test Fixtures =====


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "logs" / "template-cleanup.log"


@pytest.fixture
def runner(log_path):
    return StepRunner(RunnerConfig(log_path=log_path))


# ===== Tests =====


@pytest.mark.asyncio
async def test_runs_every_step_in_order(runner):
    calls = []
    for label in ("first", "second", "third"):
        runner.add_step(recording_step(label, calls))
    run_log = await runner.run()
    assert calls == ["first", "second", "third"]
    assert run_log.labels == calls
    assert run_log.outcome == RunOutcome.COMPLETED
    assert run_log.exit_code == 0
    assert all(result.status == StepStatus.COMPLETED for result in run_log.results)


@pytest.mark.asyncio
async def test_fatal_failure_halts_run(runner):
    calls = []
    steps = [
        recording_step("one", calls),
        recording_step("two", calls, exit_code=2, output="boom"),
        recording_step("three", calls),
    ]
    with pytest.raises(RunFailed) as excinfo:
        await runner.run(steps)
    assert calls == ["one", "two"]
    assert excinfo.value.label == "two"
    assert excinfo.value.output == "boom"
    run_log = excinfo.value.run_log
    assert run_log.outcome == RunOutcome.HALTED
    assert run_log.halted_at == "two"
    assert run_log.labels == ["one", "two"]
    assert run_log.exit_code != 0


@pytest.mark.asyncio
async def test_ignorable_failure_continues_with_warning(runner, log_path):
    calls = []
    steps = [
        recording_step("optional", calls, exit_code=1, ignorable=True),
        recording_step("after", calls),
    ]
    run_log = await runner.run(steps)
    assert calls == ["optional", "after"]
    assert run_log.outcome == RunOutcome.COMPLETED
    assert [result.label for result in run_log.failures] == ["optional"]
    warnings = [line for line in log_path.read_text().splitlines() if "[WARN]" in line]
    assert len(warnings) == 1
    assert "'optional' failed with exit code 1 (ignored)" in warnings[0]


@pytest.mark.asyncio
async def test_fatal_command_writes_one_error_line(runner, log_path):
    steps = [Step.command("stop service", "sh", "-c", "echo stopping; exit 1")]
    with pytest.raises(RunFailed) as excinfo:
        await runner.run(steps)
    assert excinfo.value.run_log.halted_at == "stop service"
    assert excinfo.value.run_log.exit_code != 0
    assert levels(log_path).count("ERROR") == 1
    assert "stopping" in log_path.read_text()


@pytest.mark.asyncio
async def test_ignorable_then_fatal_success(runner, log_path):
    steps = [
        Step.command("remove optional cert", "sh", "-c", "echo 'not found' >&2; exit 1", ignorable=True),
        Step.command("restart service", "sh", "-c", "echo restarted"),
    ]
    run_log = await runner.run(steps)
    assert run_log.outcome == RunOutcome.COMPLETED
    assert run_log.exit_code == 0
    found = levels(log_path)
    assert found.count("WARN") == 1
    assert found.count("ERROR") == 0
    assert "INFO" in found[found.index("WARN") + 1:]
    assert "not found" in run_log.results[0].output


@pytest.mark.asyncio
async def test_converged_rerun_only_warns(log_path):
    state = {"feature_enabled": True}

    def disable_feature() -> ActionOutcome:
        if not state["feature_enabled"]:
            return ActionOutcome(1, "feature already disabled")
        state["feature_enabled"] = False
        return ActionOutcome(0, "feature disabled")

    steps = [Step("disable feature", CallableAction(disable_feature), ignorable=True)]
    first = await run_steps(steps, log_path)
    assert first.outcome == RunOutcome.COMPLETED
    assert levels(log_path).count("WARN") == 0

    second = await run_steps(steps, log_path)
    assert second.outcome == RunOutcome.COMPLETED
    assert levels(log_path).count("WARN") == 1
    assert second.results[0].output == "feature already disabled"


@pytest.mark.asyncio
async def test_log_is_append_only(log_path):
    calls = []
    await run_steps([recording_step("first run", calls)], log_path)
    first_content = log_path.read_text()
    await run_steps([recording_step("second run", calls)], log_path)
    content = log_path.read_text()
    assert content.startswith(first_content)
    assert "first run" in content and "second run" in content
    for line in content.splitlines():
        assert LINE_PATTERN.match(line)


@pytest.mark.asyncio
async def test_log_file_permissions(runner, log_path):
    await runner.run([])
    assert log_path.stat().st_mode & 0o777 == 0o600


@pytest.mark.asyncio
async def test_missing_binary_is_a_failure(runner):
    steps = [Step.command("run tool", "definitely-not-a-real-binary-4242")]
    with pytest.raises(RunFailed) as excinfo:
        await runner.run(steps)
    assert excinfo.value.run_log.results[0].exit_code == 127


@pytest.mark.asyncio
async def test_raising_action_is_fatal_unless_ignorable(runner):
    def explode():
        raise ValueError("TestError")

    with pytest.raises(RunFailed) as excinfo:
        await runner.run([Step("explode", CallableAction(explode))])
    assert "TestError" in str(excinfo.value)

    calls = []
    run_log = await runner.run([
        Step("explode", CallableAction(explode), ignorable=True),
        recording_step("after", calls),
    ])
    assert calls == ["after"]
    assert run_log.results[0].exit_code == 1


@pytest.mark.asyncio
async def test_condition_skips_step(runner, log_path):
    calls = []
    run_log = await runner.run([
        recording_step("skipped", calls, condition=lambda: False),
        recording_step("kept", calls, condition=lambda: True),
    ])
    assert calls == ["kept"]
    assert run_log.results[0].status == StepStatus.SKIPPED
    assert "Skipping 'skipped': condition not met" in log_path.read_text()


@pytest.mark.asyncio
async def test_log_unavailable_at_start(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    calls = []
    with pytest.raises(LoggingUnavailable) as excinfo:
        await run_steps([recording_step("never", calls)], blocker / "run.log")
    assert calls == []
    assert excinfo.value.run_log.outcome == RunOutcome.LOGGING_UNAVAILABLE
    assert excinfo.value.run_log.exit_code == 3


@pytest.mark.asyncio
async def test_log_unavailable_mid_run_is_fatal(runner, log_path):
    calls = []

    def break_log():
        log_path.unlink()
        log_path.mkdir()

    with pytest.raises(LoggingUnavailable):
        await runner.run([
            Step("break log", CallableAction(break_log), ignorable=True),
            recording_step("after", calls, ignorable=True),
        ])
    assert calls == []
    assert runner.run_log.outcome == RunOutcome.LOGGING_UNAVAILABLE


@pytest.mark.asyncio
async def test_retrying_action_reports_once(runner):
    attempts = []

    def flaky() -> ActionOutcome:
        attempts.append(1)
        return ActionOutcome(1, "download failed")

    steps = [Step("download", RetryingAction(CallableAction(flaky), attempts=5, delay=0), ignorable=True)]
    run_log = await runner.run(steps)
    assert len(attempts) == 5
    assert len(run_log.results) == 1
    assert run_log.results[0].status == StepStatus.FAILED
    assert "Attempt 5 failed" in run_log.results[0].output


@pytest.mark.asyncio
async def test_retrying_action_stops_on_success():
    attempts = []

    def eventually() -> ActionOutcome:
        attempts.append(1)
        return ActionOutcome(0 if len(attempts) == 3 else 1, f"attempt {len(attempts)}")

    outcome = await RetryingAction(CallableAction(eventually), attempts=5, delay=0)()
    assert outcome.succeeded
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_runner_callbacks(runner):
    callback = MockCallback()
    runner.add_callback(callback)
    calls = []
    await runner.run([
        recording_step("a", calls),
        recording_step("b", calls, exit_code=1, ignorable=True),
        recording_step("c", calls, condition=lambda: False),
    ])
    assert callback.before_calls == ["a", "b"]
    assert callback.after_calls == [
        ("a", StepStatus.COMPLETED),
        ("b", StepStatus.FAILED),
        ("c", StepStatus.SKIPPED),
    ]


@pytest.mark.asyncio
async def test_timing_callback(runner):
    timing_callback = TimingCallback()
    runner.add_callback(timing_callback)
    calls = []
    await runner.run([recording_step("a", calls), recording_step("b", calls)])
    assert set(timing_callback.step_timings.keys()) == {"a", "b"}
    for timing in timing_callback.step_timings.values():
        assert timing >= 0


@pytest.mark.asyncio
async def test_broken_callback_does_not_change_control_flow(runner):
    runner.add_callback(BrokenCallback())
    calls = []
    run_log = await runner.run([recording_step("a", calls), recording_step("b", calls)])
    assert calls == ["a", "b"]
    assert run_log.outcome == RunOutcome.COMPLETED


@pytest.mark.asyncio
async def test_debug_echo(log_path, capsys):
    calls = []
    await run_steps(
        [recording_step("loud", calls, output="hello"), recording_step("quiet", calls, exit_code=1, ignorable=True)],
        log_path,
        debug_echo=True,
    )
    captured = capsys.readouterr()
    assert ">>> STEP: loud" in captured.out
    assert "hello" in captured.out
    assert "[WARN] quiet: exit code 1 (ignored)" in captured.err


@pytest.mark.asyncio
async def test_no_echo_without_debug(log_path, capsys):
    await run_steps([recording_step("silent", [], output="hello")], log_path)
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "hello" in log_path.read_text()


@pytest.mark.asyncio
async def test_step_from_decorated_function(runner):
    flags = {"present": False}

    @step("Remove optional cert")
    @ignorable
    @when(lambda: flags["present"])
    def remove_cert():
        raise FileNotFoundError("cert")

    built = Step.from_function(remove_cert)
    assert built.label == "Remove optional cert"
    assert built.ignorable

    run_log = await runner.run([built])
    assert run_log.results[0].status == StepStatus.SKIPPED

    flags["present"] = True
    run_log = await runner.run([built])
    assert run_log.results[0].status == StepStatus.FAILED
    assert run_log.outcome == RunOutcome.COMPLETED


def test_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("STEPRUNNER_LOG_FILE", str(tmp_path / "env.log"))
    assert RunnerConfig.from_env().log_path == tmp_path / "env.log"
    assert RunnerConfig.from_env(log_path=tmp_path / "flag.log").log_path == tmp_path / "flag.log"
    monkeypatch.delenv("STEPRUNNER_LOG_FILE")
    assert RunnerConfig.from_env(log_path=None).log_path == Path("/var/log/template-cleanup.log")


def test_command_action_describe():
    assert CommandAction("rm", "-f", "/tmp/a b").describe() == "rm -f '/tmp/a b'"


@pytest.mark.asyncio
async def test_undecodable_file_names_are_logged(log_path):
    def list_debs() -> str:
        return "\n".join(os.fsdecode(name) for name in [b"a.deb", b"\xff.deb"])

    steps = [
        Step("list leftover packages", CallableAction(list_debs), ignorable=True),
        Step.command("restart service", "sh", "-c", "echo restarted"),
    ]
    run_log = await run_steps(steps, log_path)
    assert run_log.outcome == RunOutcome.COMPLETED
    content = log_path.read_text()
    assert "\\udcff.deb" in content
    assert ">>> EXIT CODE: 0" in content
    assert "restarted" in content


@pytest.mark.asyncio
async def test_command_step_in_working_directory(runner, tmp_path):
    run_log = await runner.run([Step.command("in dir", "pwd", cwd=str(tmp_path))])
    assert run_log.results[0].output.strip() == str(tmp_path)


def test_step_statuses():
    assert {status.name for status in StepStatus} == {"COMPLETED", "FAILED", "SKIPPED"}
