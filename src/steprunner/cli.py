"""Command line entry point: ``steprunner [--debug] PLAN``."""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click

from .exceptions import LoggingUnavailable, RunFailed
from .plans import PLANS, get_plan
from .runner import RunnerConfig, StepRunner

EXIT_HALTED = 1
EXIT_NOT_ROOT = 1
EXIT_LOG_UNAVAILABLE = 3


def _is_root() -> bool:
    return os.geteuid() == 0


@click.command()
@click.argument("plan", type=click.Choice(sorted(PLANS)))
@click.option("--debug", is_flag=True, help="Echo every step and its output to the console")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Append-only run log (default: $STEPRUNNER_LOG_FILE or /var/log/template-cleanup.log)",
)
@click.option("--allow-non-root", is_flag=True, help="Skip the root check")
@click.option("--list", "list_steps", is_flag=True, help="Print the plan's steps and exit")
def main(plan: str, debug: bool, log_file: Optional[Path], allow_non_root: bool, list_steps: bool) -> None:
    """Run the provisioning PLAN one step at a time."""
    logging.basicConfig(level=logging.WARNING)

    steps = get_plan(plan)

    if list_steps:
        for number, step in enumerate(steps, 1):
            flag = " (ignorable)" if step.ignorable else ""
            click.echo(f"{number:2}. {step.label}{flag}")
        return

    if not allow_non_root and not _is_root():
        click.echo(f"This command must be run as root. Use: sudo {' '.join(sys.argv)}", err=True)
        sys.exit(EXIT_NOT_ROOT)

    config = RunnerConfig.from_env(log_path=log_file, debug=debug)
    runner = StepRunner(config)

    click.echo(f"[{plan}] Starting...")
    click.echo(f"[{plan}] Logfile: {config.log_path}")
    try:
        run_log = asyncio.run(runner.run(steps))
    except RunFailed as e:
        click.echo(f"[{plan}] ERROR: {e}", err=True)
        click.echo(f"[{plan}] See {config.log_path} for the full output", err=True)
        sys.exit(EXIT_HALTED)
    except LoggingUnavailable as e:
        click.echo(f"[{plan}] ERROR: {e}", err=True)
        sys.exit(EXIT_LOG_UNAVAILABLE)

    ignored = len(run_log.failures)
    click.echo(f"[{plan}] Complete ({len(run_log.results)} steps, {ignored} ignored failures).")
    click.echo(f"[{plan}] Logfile: {config.log_path} (view with: sudo tail -f {config.log_path})")
