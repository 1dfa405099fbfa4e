"""sqlwave plan command - show execution waves."""

from __future__ import annotations

import click

from sqlwave.cli.commands._options import project_options
from sqlwave.cli.errors import handle_errors
from sqlwave.cli.output import print_json, print_plan, warning


@click.command("plan")
@project_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
def plan_cmd(
    project_dir: str,
    profiles_dir: str | None,
    target_name: str | None,
    select: tuple[str, ...],
    as_json: bool,
) -> None:
    """Show the waves the selected models would run in.

    With `--json` the output also lists the scheduler tasks, one per model.

    Examples:

        sqlwave plan

        sqlwave plan --select stg_orders+ --json
    """
    from sqlwave.config import RunConfig
    from sqlwave.runner import PipelineRunner
    from sqlwave.scheduler import build_scheduler_tasks

    with handle_errors():
        runner = PipelineRunner.from_project(
            project_dir,
            profiles_dir=profiles_dir,
            target_name=target_name,
            config=RunConfig(select=list(select)),
        )
        compiled = runner.compile()
        execution_plan = compiled.plan

    if as_json:
        print_json(
            {
                "waves": [w.model_dump() for w in execution_plan.waves],
                "tasks": [t.model_dump() for t in build_scheduler_tasks(compiled)],
            }
        )
    elif not execution_plan.waves:
        warning("Nothing to run")
    else:
        print_plan(execution_plan)
