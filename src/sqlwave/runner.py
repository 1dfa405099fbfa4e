"""Pipeline runner: pre-flight, wave execution, tests and run report.

A run has two phases:

1. Pre-flight (no warehouse access): build the dependency graph, resolve
   the selection, plan waves, render every model and test. Any structural
   error (parse, unknown reference, cycle, unresolved symbol, macro arity)
   is raised here and nothing is sent to the warehouse.
2. Execution: waves run one after another; models inside a wave run
   concurrently on a thread pool sized to the target's ``threads``. A
   failed model skips its transitive dependents while unrelated branches
   keep going.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from sqlwave.config import PROJECT_FILE_NAME, ProjectConfig, RunConfig, TestPolicy
from sqlwave.errors import ConfigurationError, MaterializationError
from sqlwave.graph import DependencyGraph, build_graph
from sqlwave.materializer import Materializer
from sqlwave.nodes import SOURCE_PREFIX, GenericTest, Manifest, SingularTest
from sqlwave.parser import ProjectParser
from sqlwave.planner import ExecutionPlan, plan
from sqlwave.profiles import ProfilesConfig, find_profiles_file
from sqlwave.quality import TestRunner, compile_test
from sqlwave.renderer import render
from sqlwave.results import (
    ModelResult,
    ModelState,
    ModelStatus,
    RunResult,
    SkipReason,
    TestResult,
)
from sqlwave.symbols import SymbolTable
from sqlwave.warehouse.factory import create_warehouse
from sqlwave.warehouse.pool import ConnectionPool

if TYPE_CHECKING:
    from sqlwave.warehouse.base import Warehouse

logger = structlog.get_logger(__name__)

COMPILED_DIR_NAME = "compiled"


@dataclass(frozen=True)
class CompiledProject:
    """Everything the execution phase needs, fully rendered.

    Attributes:
        manifest: Parsed project.
        graph: Dependency graph.
        symbols: Symbol table used for rendering.
        plan: Waves of selected models.
        model_sql: Rendered SQL per planned model.
        tests: Selected tests in declaration order.
        test_sql: Compiled test query per test id.
        test_models: Models each test reads, per test id.
    """

    manifest: Manifest
    graph: DependencyGraph
    symbols: SymbolTable
    plan: ExecutionPlan
    model_sql: dict[str, str] = field(default_factory=dict)
    tests: list[GenericTest | SingularTest] = field(default_factory=list)
    test_sql: dict[str, str] = field(default_factory=dict)
    test_models: dict[str, list[str]] = field(default_factory=dict)

    def write(self, target_dir: str | Path) -> list[Path]:
        """Write rendered SQL under ``<target_dir>/compiled``.

        Models keep their project-relative path; generic tests are written
        as ``compiled/tests/<test id>.sql``.

        Returns:
            Paths written.
        """
        root = Path(target_dir) / COMPILED_DIR_NAME
        written: list[Path] = []
        for name, sql in self.model_sql.items():
            path = root / self.graph.model(name).path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(sql)
            written.append(path)
        for test in self.tests:
            if isinstance(test, SingularTest):
                relative = test.path
            else:
                relative = f"tests/{test.unique_id}.sql"
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.test_sql[test.unique_id])
            written.append(path)
        return written


def compile_project(
    manifest: Manifest,
    *,
    select: list[str] | None = None,
    test_ids: list[str] | None = None,
) -> CompiledProject:
    """Run the pre-flight pass.

    Args:
        manifest: Parsed project.
        select: Node selectors; empty or None selects every model.
        test_ids: Tests to keep, by unique id. None keeps the tests of the
            selected models.

    Returns:
        CompiledProject with rendered SQL for every selected model and test.

    Raises:
        UnknownReferenceError: On references to unknown models or sources.
        CyclicDependencyError: On dependency cycles.
        UnresolvedReferenceError: On unresolved template symbols.
        MacroArityError: On macro calls with wrong arguments.
        ParseError: On template syntax errors.
    """
    graph = build_graph(manifest)
    selected = graph.select(select or [])
    selected_set = set(selected)
    execution_plan = plan(graph, selected if select else None)
    symbols = SymbolTable.from_manifest(manifest)

    model_sql: dict[str, str] = {}
    for name in execution_plan.models:
        model = graph.model(name)
        logger.debug("model_state_changed", model=name, state=ModelState.RENDERING.value)
        model_sql[name] = render(model.raw_sql, symbols, name=model.path, this=model.relation)

    # a selected run picks tests touching the selection (or the sources it
    # reads), minus tests that also read a model built after the selection
    touched = selected_set | {s for name in selected for s in graph.sources(name)}
    later = set(graph.descendants_of(selected)) - selected_set

    tests: list[GenericTest | SingularTest] = []
    test_sql: dict[str, str] = {}
    test_models: dict[str, list[str]] = {}
    for test in manifest.tests:
        nodes = graph.test_dependencies(test)
        models = [n for n in nodes if not n.startswith(SOURCE_PREFIX)]
        if test_ids is not None:
            if test.unique_id not in test_ids:
                continue
        elif select and (not touched.intersection(nodes) or later.intersection(models)):
            continue
        tests.append(test)
        test_models[test.unique_id] = models
        test_sql[test.unique_id] = compile_test(test, symbols)

    logger.info(
        "project_compiled",
        models=len(model_sql),
        tests=len(tests),
        waves=len(execution_plan),
    )
    return CompiledProject(
        manifest=manifest,
        graph=graph,
        symbols=symbols,
        plan=execution_plan,
        model_sql=model_sql,
        tests=tests,
        test_sql=test_sql,
        test_models=test_models,
    )


class PipelineRunner:
    """Run a project against a warehouse.

    Attributes:
        manifest: Parsed project.
        warehouse: Target warehouse adapter.
        config: Run options.
        threads: Worker pool size and connection slots.
        target_path: Artifact directory, or None to write no artifacts.

    Example:
        >>> runner = PipelineRunner.from_project("data_pipeline", target_name="dev")
        >>> result = runner.run()
        >>> result.success
        True
    """

    def __init__(
        self,
        manifest: Manifest,
        warehouse: Warehouse,
        *,
        config: RunConfig | None = None,
        target_path: str | Path | None = None,
    ) -> None:
        self.manifest = manifest
        self.warehouse = warehouse
        self.config = config or RunConfig()
        self.threads = self.config.threads or warehouse.threads
        self.target_path = Path(target_path) if target_path is not None else None
        self._cancel = threading.Event()
        self._failure = threading.Event()
        self._log = logger.bind(project=manifest.project_name, warehouse=warehouse.type)

    @classmethod
    def from_project(
        cls,
        project_dir: str | Path,
        *,
        profiles_dir: str | Path | None = None,
        target_name: str | None = None,
        config: RunConfig | None = None,
    ) -> PipelineRunner:
        """Load project, profile and target, then create a runner.

        No warehouse connection is opened here.

        Raises:
            ConfigurationError: If the project, profiles or target are invalid.
            ParseError: If a project file is malformed.
        """
        project_dir = Path(project_dir)
        project = ProjectConfig.from_yaml(project_dir / PROJECT_FILE_NAME)
        if not project.profile:
            raise ConfigurationError(
                "Project does not name a profile",
                file_path=str(project_dir / PROJECT_FILE_NAME),
                field_path="profile",
            )

        profiles = ProfilesConfig.from_yaml(find_profiles_file(profiles_dir, project_dir))
        target = profiles.get_target(project.profile, target_name)

        manifest = ProjectParser(
            project_dir,
            default_schema=target.schema_name,
            default_database=target.database,
            project=project,
        ).parse()

        return cls(
            manifest,
            create_warehouse(target),
            config=config,
            target_path=project_dir / project.target_path,
        )

    @property
    def cancelled(self) -> bool:
        """Whether cancel() was called or the timeout elapsed."""
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop scheduling work.

        Statements already running finish; models not yet started are
        skipped and the run fails. Safe to call from any thread.
        """
        if not self._cancel.is_set():
            self._log.warning("run_cancel_requested")
        self._cancel.set()

    def compile(self) -> CompiledProject:
        """Pre-flight pass; see compile_project()."""
        return compile_project(
            self.manifest, select=self.config.select, test_ids=self.config.test_ids
        )

    def run(self) -> RunResult:
        """Materialize every selected model and run its tests.

        Returns:
            RunResult with one ModelResult per planned model and one
            TestResult per selected test.

        Raises:
            SqlwaveError: On structural errors, before any warehouse statement.
        """
        compiled = self.compile()
        return self._execute(compiled, materialize=True)

    def test(self) -> RunResult:
        """Run the selected tests against already materialized relations."""
        compiled = self.compile()
        return self._execute(compiled, materialize=False)

    def _deadline(self, start: float) -> float | None:
        if self.config.timeout_seconds is None:
            return None
        return start + self.config.timeout_seconds

    def _execute(self, compiled: CompiledProject, *, materialize: bool) -> RunResult:
        started_at = datetime.now(UTC)
        start = time.monotonic()
        self._failure.clear()
        self._log.info(
            "run_started",
            threads=self.threads,
            waves=len(compiled.plan),
            models=len(compiled.model_sql) if materialize else 0,
            tests=len(compiled.tests),
            test_policy=self.config.test_policy.value,
        )

        pool = ConnectionPool(self.warehouse, size=self.threads, retry=self.config.retry)
        with pool, ThreadPoolExecutor(
            max_workers=self.threads, thread_name_prefix="sqlwave"
        ) as executor:
            execution = _Execution(
                self,
                compiled,
                executor,
                Materializer(pool, compiled.symbols),
                TestRunner(pool, compiled.symbols),
                deadline=self._deadline(start),
            )
            if materialize:
                execution.run_waves()
            execution.run_remaining_tests(require_models=materialize)

        result = RunResult(
            models=execution.model_results(),
            tests=execution.test_results(),
            cancelled=self.cancelled,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            total_duration_ms=int((time.monotonic() - start) * 1000),
        )

        self._log.info(
            "run_completed",
            success=result.success,
            cancelled=result.cancelled,
            duration_ms=result.total_duration_ms,
            **{f"models_{k}": v for k, v in result.model_counts().items()},
        )

        if self.target_path is not None:
            if materialize:
                compiled.write(self.target_path)
            result.write_json(self.target_path)
        return result


class _Execution:
    """Mutable state of one run; touched only from the scheduling thread."""

    def __init__(
        self,
        runner: PipelineRunner,
        compiled: CompiledProject,
        executor: ThreadPoolExecutor,
        materializer: Materializer,
        tests: TestRunner,
        *,
        deadline: float | None,
    ) -> None:
        self.runner = runner
        self.compiled = compiled
        self.executor = executor
        self.materializer = materializer
        self.test_runner = tests
        self.deadline = deadline
        self.models: dict[str, ModelResult] = {}
        self.tests: dict[str, TestResult] = {}
        self.blocked: dict[str, tuple[SkipReason, str]] = {}
        self.planned = set(compiled.plan.models)
        self._log = runner._log

    def model_results(self) -> list[ModelResult]:
        return [self.models[n] for n in self.compiled.plan.models if n in self.models]

    def test_results(self) -> list[TestResult]:
        return [self.tests[t.unique_id] for t in self.compiled.tests if t.unique_id in self.tests]

    def _remaining(self) -> float | None:
        # once cancelled, running statements are waited on without a bound
        if self.deadline is None or self.runner.cancelled:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def _check_deadline(self) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            if not self.runner.cancelled:
                self._log.warning(
                    "run_timed_out", timeout_seconds=self.runner.config.timeout_seconds
                )
            self.runner.cancel()

    def _wait_all(self, futures: dict[Future[Any], str]) -> list[Any]:
        results: list[Any] = []
        pending = set(futures)
        while pending:
            done, pending = wait(pending, timeout=self._remaining(), return_when=FIRST_COMPLETED)
            self._check_deadline()
            results.extend(f.result() for f in done)
        return results

    def _skip(self, name: str, wave: int, reason: SkipReason, message: str) -> ModelResult:
        self._log.info("model_skipped", model=name, reason=reason.value)
        return ModelResult(
            name=name,
            status=ModelStatus.SKIPPED,
            wave=wave,
            relation=self.compiled.graph.model(name).relation.render(),
            message=message,
            skip_reason=reason,
        )

    def _block_descendants(self, names: list[str], reason: SkipReason, message: str) -> None:
        for descendant in self.compiled.graph.descendants_of(names):
            self.blocked.setdefault(descendant, (reason, message))

    def _materialize(self, name: str, wave: int) -> ModelResult:
        if self.runner.cancelled:
            return self._skip(name, wave, SkipReason.CANCELLED, "run cancelled")
        if self.runner.config.fail_fast and self.runner._failure.is_set():
            return self._skip(name, wave, SkipReason.FAIL_FAST, "skipped after earlier failure")

        model = self.compiled.graph.model(name)
        self._log.debug("model_state_changed", model=name, state=ModelState.MATERIALIZING.value)
        start = time.monotonic()
        try:
            self.materializer.materialize(model, self.compiled.model_sql[name])
        except MaterializationError as e:
            self.runner._failure.set()
            status, message = ModelStatus.FAILED, e.reason
        else:
            status, message = ModelStatus.SUCCESS, ""
        self._log.debug("model_state_changed", model=name, state=status.value)
        return ModelResult(
            name=name,
            status=status,
            wave=wave,
            relation=model.relation.render(),
            message=message,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    def _run_test(self, test: GenericTest | SingularTest) -> TestResult:
        models = self.compiled.test_models[test.unique_id]
        if self.runner.cancelled:
            return TestRunner.skipped(test, models=models, message="run cancelled")
        result = self.test_runner.run_test(
            test, models=models, sql=self.compiled.test_sql[test.unique_id]
        )
        if result.fails_run:
            self.runner._failure.set()
        return result

    def run_waves(self) -> None:
        waves = self.compiled.plan.waves
        for wave in waves:
            self._check_deadline()
            to_run: list[str] = []
            for name in wave.models:
                if self.runner.cancelled:
                    self.models[name] = self._skip(
                        name, wave.index, SkipReason.CANCELLED, "run cancelled"
                    )
                elif name in self.blocked:
                    reason, message = self.blocked[name]
                    self.models[name] = self._skip(name, wave.index, reason, message)
                else:
                    to_run.append(name)

            self._log.info("wave_started", wave=wave.index, models=len(to_run))
            futures = {
                self.executor.submit(self._materialize, name, wave.index): name for name in to_run
            }
            for result in self._wait_all(futures):
                self.models[result.name] = result
                if result.status is ModelStatus.FAILED:
                    self._block_descendants(
                        [result.name],
                        SkipReason.UPSTREAM_FAILURE,
                        f"upstream model '{result.name}' failed",
                    )
            self._log.info("wave_completed", wave=wave.index)

            if self.runner.config.test_policy is TestPolicy.AFTER_EACH_WAVE:
                self._run_ready_tests()

    def _run_ready_tests(self) -> None:
        ready = []
        for test in self.compiled.tests:
            if test.unique_id in self.tests:
                continue
            models = self.compiled.test_models[test.unique_id]
            if all(self._materialized(m) for m in models if m in self.planned):
                ready.append(test)

        futures = {self.executor.submit(self._run_test, t): t.unique_id for t in ready}
        for result in self._wait_all(futures):
            self.tests[result.unique_id] = result
            if result.fails_run and result.models:
                self._block_descendants(
                    result.models,
                    SkipReason.TEST_FAILURE,
                    f"test '{result.unique_id}' failed",
                )

    def _materialized(self, name: str) -> bool:
        result = self.models.get(name)
        return result is not None and result.status is ModelStatus.SUCCESS

    def run_remaining_tests(self, *, require_models: bool) -> None:
        runnable = []
        for test in self.compiled.tests:
            if test.unique_id in self.tests:
                continue
            models = self.compiled.test_models[test.unique_id]
            missing = [
                m
                for m in models
                if require_models and m in self.planned and not self._materialized(m)
            ]
            if missing:
                self.tests[test.unique_id] = TestRunner.skipped(
                    test,
                    models=models,
                    message=f"dependency '{missing[0]}' did not materialize",
                )
            else:
                runnable.append(test)

        futures = {self.executor.submit(self._run_test, t): t.unique_id for t in runnable}
        for result in self._wait_all(futures):
            self.tests[result.unique_id] = result
