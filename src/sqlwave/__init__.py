"""sqlwave: dependency-aware SQL transformation runner.

This package provides:
- ProjectParser: Load a project directory into a Manifest
- build_graph / plan: Dependency DAG and execution waves
- PipelineRunner: Materialize models wave by wave and run data tests
- build_scheduler_tasks / build_airflow_dag: Scheduler export
"""

from __future__ import annotations

__version__ = "0.1.0"

# Configuration
from sqlwave.config import ProjectConfig, RetryConfig, RunConfig, TestPolicy

# Error types
from sqlwave.errors import (
    ConfigurationError,
    CyclicDependencyError,
    MacroArityError,
    MaterializationError,
    ParseError,
    RunFailedError,
    SecretResolutionError,
    SqlwaveError,
    TestViolationError,
    UnknownReferenceError,
    UnresolvedReferenceError,
    WarehouseConnectionError,
    WarehouseError,
)

# Graph and planning
from sqlwave.graph import DependencyGraph, build_graph
from sqlwave.nodes import (
    GenericTest,
    Macro,
    Manifest,
    Materialization,
    Model,
    Relation,
    Severity,
    SingularTest,
    SourceTable,
)
from sqlwave.parser import ProjectParser, load_manifest
from sqlwave.planner import ExecutionPlan, Wave, plan
from sqlwave.profiles import DuckDBTarget, ProfilesConfig, SnowflakeTarget

# Rendering
from sqlwave.renderer import extract_references, render
from sqlwave.results import ModelResult, ModelStatus, RunResult, TestResult, TestStatus

# Execution
from sqlwave.runner import CompiledProject, PipelineRunner, compile_project
from sqlwave.scheduler import SchedulerTask, build_airflow_dag, build_scheduler_tasks
from sqlwave.symbols import SymbolTable

__all__ = [
    "__version__",
    # Configuration
    "ProjectConfig",
    "RetryConfig",
    "RunConfig",
    "TestPolicy",
    "DuckDBTarget",
    "SnowflakeTarget",
    "ProfilesConfig",
    # Errors
    "SqlwaveError",
    "ParseError",
    "ConfigurationError",
    "SecretResolutionError",
    "UnresolvedReferenceError",
    "MacroArityError",
    "UnknownReferenceError",
    "CyclicDependencyError",
    "WarehouseError",
    "WarehouseConnectionError",
    "MaterializationError",
    "TestViolationError",
    "RunFailedError",
    # Nodes
    "Manifest",
    "Model",
    "SourceTable",
    "Macro",
    "GenericTest",
    "SingularTest",
    "Relation",
    "Materialization",
    "Severity",
    # Rendering
    "SymbolTable",
    "render",
    "extract_references",
    # Parsing, graph, planning
    "ProjectParser",
    "load_manifest",
    "DependencyGraph",
    "build_graph",
    "ExecutionPlan",
    "Wave",
    "plan",
    # Execution
    "CompiledProject",
    "PipelineRunner",
    "compile_project",
    "ModelResult",
    "ModelStatus",
    "TestResult",
    "TestStatus",
    "RunResult",
    # Scheduler
    "SchedulerTask",
    "build_scheduler_tasks",
    "build_airflow_dag",
]
