"""sqlwave run command - materialize models wave by wave and run tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

from sqlwave.cli.commands._options import project_options, run_options
from sqlwave.cli.errors import CLIError, handle_errors
from sqlwave.cli.output import print_run_result, success

if TYPE_CHECKING:
    from sqlwave.results import RunResult


def report_run(result: RunResult, verb: str) -> None:
    """Print run tables and exit with the run's status."""
    print_run_result(result)
    models = result.model_counts()
    tests = result.test_counts()
    summary = (
        f"{models['success']} succeeded, {models['failed']} failed, "
        f"{models['skipped']} skipped; tests: {tests['passed']} passed, "
        f"{tests['warned']} warned, {tests['failed']} failed, {tests['error']} errored"
    )
    if result.success:
        success(f"{verb} completed in {result.total_duration_ms}ms: {summary}")
        return
    reason = "cancelled" if result.cancelled else "failed"
    raise CLIError(f"{verb} {reason}: {summary}", exit_code=result.exit_code)


@click.command()
@project_options
@run_options
@click.option(
    "--test-policy",
    type=click.Choice(["after_each_wave", "after_all"]),
    default="after_all",
    show_default=True,
    help="Run tests after each wave (failures skip dependents) or once at the end.",
)
def run(
    project_dir: str,
    profiles_dir: str | None,
    target_name: str | None,
    select: tuple[str, ...],
    threads: int | None,
    fail_fast: bool,
    timeout_seconds: float | None,
    test_policy: str,
) -> None:
    """Materialize the selected models and run their tests.

    Models in the same wave run concurrently. A failed model skips its
    descendants; independent branches keep running. Exits 1 when any model
    fails or any error-severity test fails.

    Examples:

        sqlwave run

        sqlwave run --select +fct_orders --threads 8 --test-policy after_each_wave
    """
    from sqlwave.config import RunConfig, TestPolicy
    from sqlwave.runner import PipelineRunner

    config = RunConfig(
        threads=threads,
        test_policy=TestPolicy(test_policy),
        fail_fast=fail_fast,
        timeout_seconds=timeout_seconds,
        select=list(select),
    )
    with handle_errors():
        runner = PipelineRunner.from_project(
            project_dir,
            profiles_dir=profiles_dir,
            target_name=target_name,
            config=config,
        )
        result = runner.run()

    report_run(result, "Run")
