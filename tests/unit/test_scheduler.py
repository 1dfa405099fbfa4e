"""Unit tests for scheduler export."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import CLEAN_ORDERS, build_manifest, ref, seed_orders

from sqlwave.errors import RunFailedError
from sqlwave.nodes import GenericTest, GenericTestKind, Manifest
from sqlwave.results import RunResult
from sqlwave.runner import PipelineRunner, compile_project
from sqlwave.scheduler import SchedulerTask, build_scheduler_tasks, run_models


def branches(*tests: GenericTest) -> Manifest:
    """a -> b -> c reading a source, plus an independent d -> e chain."""
    return build_manifest(
        {
            "a": "select id from {{ source('tpch', 'orders') }}",
            "b": f"select id from {ref('a')}",
            "c": f"select id from {ref('b')}",
            "d": "select 1 as id",
            "e": f"select id from {ref('d')}",
        },
        sources=[("tpch", "orders")],
        tests=list(tests),
    )


def task_map(manifest: Manifest) -> dict[str, SchedulerTask]:
    return {t.task_id: t for t in build_scheduler_tasks(compile_project(manifest))}


class TestBuildSchedulerTasks:
    """Tests for model-to-task conversion."""

    def test_one_task_per_model_along_the_graph(self) -> None:
        tasks = build_scheduler_tasks(compile_project(branches()))

        assert [(t.task_id, t.wave, t.models, t.upstream_task_ids) for t in tasks] == [
            ("a", 0, ["a"], []),
            ("d", 0, ["d"], []),
            ("b", 1, ["b"], ["a"]),
            ("e", 1, ["e"], ["d"]),
            ("c", 2, ["c"], ["b"]),
        ]

    def test_branches_do_not_wait_on_each_other(self) -> None:
        """A model only waits for its own producers, not the previous wave."""
        tasks = task_map(branches())

        assert tasks["e"].upstream_task_ids == ["d"]
        assert "a" not in tasks["e"].upstream_task_ids

    def test_tests_owned_by_their_model(self) -> None:
        tasks = task_map(
            branches(
                GenericTest(kind=GenericTestKind.UNIQUE, column="id", attached_to="b"),
                GenericTest(kind=GenericTestKind.NOT_NULL, column="id", attached_to="e"),
            )
        )

        assert tasks["b"].tests == ["unique_b_id"]
        assert tasks["e"].tests == ["not_null_e_id"]
        assert tasks["a"].tests == []

    def test_cross_branch_test_waits_for_both_models(self) -> None:
        """A test reading two branches runs in the later task, after both."""
        relationships = GenericTest(
            kind=GenericTestKind.RELATIONSHIPS,
            column="id",
            attached_to="b",
            arguments={"to": "ref('d')", "field": "id"},
        )
        tasks = task_map(branches(relationships))

        assert tasks["b"].tests == ["relationships_b_id"]
        assert tasks["b"].upstream_task_ids == ["a", "d"]
        assert tasks["d"].tests == []

    def test_source_test_runs_with_first_reader(self) -> None:
        source_test = GenericTest(
            kind=GenericTestKind.NOT_NULL, column="id", attached_to="source:tpch.orders"
        )
        tasks = task_map(branches(source_test))

        assert tasks["a"].tests == ["not_null_tpch_orders_id"]

    def test_selection(self) -> None:
        compiled = compile_project(branches(), select=["b+"])
        tasks = build_scheduler_tasks(compiled)

        assert [(t.task_id, t.upstream_task_ids) for t in tasks] == [("b", []), ("c", ["b"])]

    def test_empty_plan(self) -> None:
        assert build_scheduler_tasks(compile_project(build_manifest({}))) == []


class TestRunModels:
    """Tests for the task body."""

    def test_runs_only_the_given_models(self, sample_project: Path) -> None:
        summary = run_models(str(sample_project), ["stg_orders"])

        assert summary["models"] == {"stg_orders": "success"}
        assert summary["tests"]["unique_stg_orders_order_key"] == "passed"
        assert "unique_fct_orders_order_key" not in summary["tests"]

    def test_runs_only_the_given_tests(self, sample_project: Path) -> None:
        summary = run_models(
            str(sample_project), ["stg_orders"], tests=["unique_stg_orders_order_key"]
        )

        assert summary["tests"] == {"unique_stg_orders_order_key": "passed"}

    def test_failure_raises(self, dirty_project: Path) -> None:
        run_models(str(dirty_project), ["stg_orders"])

        with pytest.raises(RunFailedError, match="accepted_values_fct_orders_status_code"):
            run_models(str(dirty_project), ["fct_orders"])

    def test_cancelled_run_raises(self) -> None:
        with patch("sqlwave.scheduler.PipelineRunner") as runner_cls:
            runner_cls.from_project.return_value.run.return_value = RunResult(cancelled=True)

            with pytest.raises(RunFailedError, match="Run failed: cancelled"):
                run_models("/srv/project", ["a"], tests=[], threads=2)

        config = runner_cls.from_project.call_args.kwargs["config"]
        assert config.select == ["a"]
        assert config.test_ids == []
        assert config.threads == 2

    def test_failed_task_only_stops_its_dependents(
        self, make_project: Callable[..., Path], db_path: Path
    ) -> None:
        """Walk the tasks the way a scheduler would, with one broken branch."""
        seed_orders(db_path, CLEAN_ORDERS)
        project_dir = make_project(
            overrides={
                "models/staging/stg_broken.sql": (
                    "select no_such_column from {{ source('tpch', 'orders') }}"
                ),
                "models/marts/fct_broken.sql": "select * from {{ ref('stg_broken') }}",
            }
        )
        tasks = build_scheduler_tasks(PipelineRunner.from_project(project_dir).compile())

        states: dict[str, str] = {}
        for task in tasks:
            if any(states[u] != "success" for u in task.upstream_task_ids):
                states[task.task_id] = "upstream_failed"
                continue
            try:
                run_models(str(project_dir), task.models, tests=task.tests)
            except RunFailedError:
                states[task.task_id] = "failed"
            else:
                states[task.task_id] = "success"

        assert states == {
            "stg_broken": "failed",
            "stg_orders": "success",
            "fct_broken": "upstream_failed",
            "fct_orders": "success",
        }


class TestBuildAirflowDag:
    """Tests for the Airflow DAG builder (needs the airflow extra)."""

    def test_dag_follows_model_graph(self, sample_project: Path) -> None:
        pytest.importorskip("airflow")
        from sqlwave.scheduler import build_airflow_dag

        dag = build_airflow_dag(sample_project, dag_id="sqlwave_test")

        assert sorted(dag.task_ids) == ["fct_orders", "stg_orders"]
        assert dag.get_task("fct_orders").upstream_task_ids == {"stg_orders"}
        assert dag.get_task("stg_orders").op_kwargs["models"] == ["stg_orders"]
        assert "unique_stg_orders_order_key" in dag.get_task("stg_orders").op_kwargs["tests"]
