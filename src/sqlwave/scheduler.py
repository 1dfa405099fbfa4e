"""Export an execution plan to a workflow scheduler.

Each planned model becomes one task that depends on the tasks of the models
it reads, so a failed model only holds back its own dependents. A task
materializes its model (producers count as materialized) and runs the tests
it owns, then fails when that run fails: model and test status surface as
task success or failure in the scheduler.

A test is owned by the task of the last planned model it reads. That task
also depends on the tasks of the test's other models. Tests reading only
sources go to the first model that reads one of those sources.

The Airflow builder needs the ``airflow`` extra (apache-airflow).
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from sqlwave.config import RunConfig
from sqlwave.errors import RunFailedError
from sqlwave.nodes import SOURCE_PREFIX
from sqlwave.results import ModelStatus, RunReport
from sqlwave.runner import PipelineRunner

if TYPE_CHECKING:
    from sqlwave.results import RunResult
    from sqlwave.runner import CompiledProject

logger = structlog.get_logger(__name__)

DEFAULT_START_DATE = datetime(2024, 1, 1, tzinfo=UTC)


class SchedulerTask(BaseModel):
    """One scheduler task per planned model.

    Attributes:
        task_id: Task identifier (the model name).
        wave: Wave of the model.
        models: Models the task materializes.
        tests: Test ids the task runs after materializing.
        upstream_task_ids: Tasks that must succeed first.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    task_id: str = Field(..., min_length=1, description="Task identifier")
    wave: int = Field(..., ge=0, description="Wave index")
    models: list[str] = Field(default_factory=list, description="Models the task builds")
    tests: list[str] = Field(default_factory=list, description="Tests the task runs")
    upstream_task_ids: list[str] = Field(default_factory=list, description="Upstream tasks")


def _test_owners(compiled: CompiledProject, order: dict[str, int]) -> dict[str, list[str]]:
    """Planned models each test reads, owner (last in plan order) last."""
    owners: dict[str, list[str]] = {}
    for test in compiled.tests:
        models = [m for m in compiled.test_models[test.unique_id] if m in order]
        if not models:
            sources = {
                n
                for n in compiled.graph.test_dependencies(test)
                if n.startswith(SOURCE_PREFIX)
            }
            models = [
                name
                for name in compiled.plan.models
                if sources.intersection(compiled.graph.sources(name))
            ][:1]
        if not models:
            logger.debug("test_not_scheduled", test=test.unique_id)
            continue
        owners[test.unique_id] = sorted(set(models), key=order.__getitem__)
    return owners


def build_scheduler_tasks(compiled: CompiledProject) -> list[SchedulerTask]:
    """Turn planned models into tasks wired along the dependency graph.

    Tasks come out in plan order and only depend on earlier tasks.

    Example:
        >>> tasks = build_scheduler_tasks(compile_project(manifest))
        >>> [(t.task_id, t.upstream_task_ids) for t in tasks]
        [('stg_orders', []), ('fct_orders', ['stg_orders'])]
    """
    order = {name: i for i, name in enumerate(compiled.plan.models)}
    owned: dict[str, list[str]] = {name: [] for name in order}
    upstream: dict[str, set[str]] = {
        name: {p for p in compiled.graph.upstream(name) if p in order} for name in order
    }
    for test_id, models in _test_owners(compiled, order).items():
        *others, owner = models
        owned[owner].append(test_id)
        upstream[owner].update(others)

    return [
        SchedulerTask(
            task_id=name,
            wave=wave.index,
            models=[name],
            tests=owned[name],
            upstream_task_ids=sorted(upstream[name], key=order.__getitem__),
        )
        for wave in compiled.plan.waves
        for name in wave.models
    ]


def run_models(
    project_dir: str,
    models: list[str],
    *,
    tests: list[str] | None = None,
    profiles_dir: str | None = None,
    target_name: str | None = None,
    threads: int | None = None,
) -> dict[str, Any]:
    """Task body: materialize some models, then run their tests.

    Args:
        project_dir: Project root.
        models: Models to materialize.
        tests: Test ids to run; None runs the tests of ``models``.
        profiles_dir: Directory holding profiles.yml.
        target_name: Target to run against.
        threads: Worker pool size override.

    Returns:
        Per-model and per-test statuses (pushed to XCom by Airflow).

    Raises:
        RunFailedError: If any model failed or any error-severity test failed.
    """
    runner = PipelineRunner.from_project(
        project_dir,
        profiles_dir=profiles_dir,
        target_name=target_name,
        config=RunConfig(select=models, test_ids=tests, threads=threads),
    )
    result: RunResult = runner.run()
    summary = {
        "models": {m.name: m.status.value for m in result.models},
        "tests": {t.unique_id: t.status.value for t in result.tests},
    }
    if not result.success:
        failed = [m.name for m in result.models if m.status is ModelStatus.FAILED]
        failed += [t.unique_id for t in result.tests if t.fails_run]
        raise RunFailedError(
            f"Run failed: {', '.join(failed) or 'cancelled'}",
            internal_details=RunReport(result=result).to_text(),
        )
    return summary


def build_airflow_dag(
    project_dir: str | Path,
    *,
    dag_id: str,
    profiles_dir: str | Path | None = None,
    target_name: str | None = None,
    schedule: Any = None,
    start_date: datetime = DEFAULT_START_DATE,
    default_args: dict[str, Any] | None = None,
    select: list[str] | None = None,
    threads: int | None = None,
) -> Any:
    """Build an Airflow DAG with one PythonOperator per model.

    The plan is computed when the DAG file is parsed, so a structural error
    in the project surfaces as a DAG import error.

    Args:
        project_dir: Project root.
        dag_id: Airflow DAG id.
        profiles_dir: Directory holding profiles.yml.
        target_name: Target to run against.
        schedule: Airflow schedule (cron string, timedelta, or None).
        start_date: DAG start date.
        default_args: Default operator arguments.
        select: Node selectors restricting the plan.
        threads: Worker pool size override.

    Returns:
        airflow.DAG whose task dependencies follow the model graph.

    Example:
        >>> dag = build_airflow_dag("/opt/airflow/dags/data_pipeline", dag_id="sqlwave_dag")
    """
    from airflow import DAG
    from airflow.operators.python import PythonOperator

    runner = PipelineRunner.from_project(
        project_dir,
        profiles_dir=profiles_dir,
        target_name=target_name,
        config=RunConfig(select=select or []),
    )
    tasks = build_scheduler_tasks(runner.compile())

    with DAG(
        dag_id=dag_id,
        schedule=schedule,
        start_date=start_date,
        catchup=False,
        default_args=default_args or {},
        tags=["sqlwave", runner.manifest.project_name],
    ) as dag:
        operators: dict[str, Any] = {}
        for task in tasks:
            operators[task.task_id] = PythonOperator(
                task_id=task.task_id,
                python_callable=run_models,
                op_kwargs={
                    "project_dir": str(project_dir),
                    "models": task.models,
                    "tests": task.tests,
                    "profiles_dir": str(profiles_dir) if profiles_dir is not None else None,
                    "target_name": target_name,
                    "threads": threads,
                },
            )
        for task in tasks:
            for upstream in task.upstream_task_ids:
                operators[upstream] >> operators[task.task_id]

    logger.info("airflow_dag_built", dag_id=dag_id, tasks=len(tasks))
    return dag
