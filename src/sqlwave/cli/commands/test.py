"""sqlwave test command - run data tests against existing relations."""

from __future__ import annotations

import click

from sqlwave.cli.commands._options import project_options, run_options
from sqlwave.cli.commands.run import report_run
from sqlwave.cli.errors import handle_errors


@click.command()
@project_options
@run_options
def test(
    project_dir: str,
    profiles_dir: str | None,
    target_name: str | None,
    select: tuple[str, ...],
    threads: int | None,
    fail_fast: bool,
    timeout_seconds: float | None,
) -> None:
    """Run the selected tests without materializing models.

    Examples:

        sqlwave test

        sqlwave test --select fct_orders
    """
    from sqlwave.config import RunConfig
    from sqlwave.runner import PipelineRunner

    config = RunConfig(
        threads=threads,
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
        result = runner.test()

    report_run(result, "Test")
