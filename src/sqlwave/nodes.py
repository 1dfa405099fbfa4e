"""Project node models for sqlwave.

Immutable representations of everything a project declares:
- Relation: a fully qualified warehouse object name
- Model: a templated SQL transformation materialized as a view or table
- SourceTable: an externally owned table, never materialized
- Macro: a named, parameterized SQL generator
- DependencyEdge: consumer model -> producer model or source
- GenericTest / SingularTest: data-quality assertions
- Manifest: the parsed project as a whole

Nodes are created once per run by the parser and never mutated.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

SOURCE_PREFIX = "source:"


class Materialization(str, Enum):
    """How a model is persisted in the warehouse."""

    VIEW = "view"
    TABLE = "table"


class Severity(str, Enum):
    """Test severity. Only ``error`` violations fail a run."""

    ERROR = "error"
    WARN = "warn"


class GenericTestKind(str, Enum):
    """Built-in generic test kinds."""

    UNIQUE = "unique"
    NOT_NULL = "not_null"
    RELATIONSHIPS = "relationships"
    ACCEPTED_VALUES = "accepted_values"


class Relation(BaseModel):
    """A warehouse object name.

    Attributes:
        database: Database (catalog), omitted from the rendered name when None.
        schema_name: Schema.
        identifier: Object name.

    Example:
        >>> Relation(database="dbt_db", schema="dbt_schema", identifier="fct_orders").render()
        'dbt_db.dbt_schema.fct_orders'
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    database: str | None = None
    schema_name: str = Field(..., alias="schema", min_length=1)
    identifier: str = Field(..., min_length=1)

    def render(self) -> str:
        """Return the dot-joined fully qualified name."""
        parts = [self.database, self.schema_name, self.identifier]
        return ".".join(p for p in parts if p)

    @property
    def schema_relation(self) -> str:
        """Fully qualified schema name (``database.schema`` or ``schema``)."""
        return ".".join(p for p in (self.database, self.schema_name) if p)

    def __str__(self) -> str:
        return self.render()


class ColumnInfo(BaseModel):
    """A declared column."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    description: str = ""


class Model(BaseModel):
    """A named SQL transformation unit.

    Attributes:
        name: Unique model name (file stem).
        path: Path of the template relative to the project root.
        raw_sql: Template text.
        materialization: View or table.
        relation: Where the model is materialized.
        columns: Columns declared in YAML.
        declaration_index: Discovery order, used for deterministic tie breaks.
        config: Effective configuration (folder config merged with config() call).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    path: str
    raw_sql: str
    materialization: Materialization = Materialization.VIEW
    relation: Relation
    columns: list[ColumnInfo] = Field(default_factory=list)
    description: str = ""
    declaration_index: int = Field(default=0, ge=0)
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def unique_id(self) -> str:
        """Node id used in graphs and reports."""
        return self.name


class SourceTable(BaseModel):
    """An externally owned table declared under ``sources:``.

    Example:
        >>> table.unique_id
        'source:tpch.orders'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_name: str = Field(..., min_length=1)
    table_name: str = Field(..., min_length=1)
    relation: Relation
    columns: list[ColumnInfo] = Field(default_factory=list)
    description: str = ""
    path: str = ""

    @property
    def unique_id(self) -> str:
        """Node id used in graphs and reports."""
        return source_id(self.source_name, self.table_name)


class Macro(BaseModel):
    """A macro definition.

    Attributes:
        name: Macro name, callable from templates.
        params: Parameter names in declaration order.
        defaults_count: Number of trailing parameters with defaults.
        path: File that defines the macro.
        source_text: Full text of the defining file.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    params: list[str] = Field(default_factory=list)
    defaults_count: int = Field(default=0, ge=0)
    path: str = ""
    source_text: str

    @property
    def min_args(self) -> int:
        """Number of required parameters."""
        return len(self.params) - self.defaults_count

    @property
    def max_args(self) -> int:
        """Total number of parameters."""
        return len(self.params)


class DependencyEdge(BaseModel):
    """Consumer model depends on a producer model or source table."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    consumer: str
    producer: str
    kind: Literal["ref", "source"]


class GenericTest(BaseModel):
    """A schema-declared, parametrized test on one column.

    Attributes:
        kind: Test kind.
        column: Column under test.
        attached_to: Unique id of the tested model or source table.
        arguments: Kind-specific arguments (``to``/``field`` or ``values``/``quote``).
        severity: error or warn.
        declared_in: YAML file declaring the test.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: GenericTestKind
    column: str = Field(..., min_length=1)
    attached_to: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)
    severity: Severity = Severity.ERROR
    declared_in: str = ""

    @property
    def unique_id(self) -> str:
        """Deterministic test id (e.g., ``accepted_values_fct_orders_status_code``)."""
        target = self.attached_to.removeprefix(SOURCE_PREFIX).replace(".", "_")
        return f"{self.kind.value}_{target}_{self.column}"


class SingularTest(BaseModel):
    """An ad-hoc SQL test; every returned row is a violation."""

    __test__ = False

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    path: str
    raw_sql: str
    severity: Severity = Severity.ERROR

    @property
    def unique_id(self) -> str:
        """Test id (file stem)."""
        return self.name


TestCase = GenericTest | SingularTest


class Manifest(BaseModel):
    """A parsed project.

    Attributes:
        project_name: Project name.
        models: Models in declaration order.
        sources: Source tables keyed by unique id.
        macros: Macros keyed by name.
        tests: Generic and singular tests.
        vars: Project variables.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    project_name: str
    models: list[Model] = Field(default_factory=list)
    sources: dict[str, SourceTable] = Field(default_factory=dict)
    macros: dict[str, Macro] = Field(default_factory=dict)
    tests: list[GenericTest | SingularTest] = Field(default_factory=list)
    vars: dict[str, Any] = Field(default_factory=dict)

    def get_model(self, name: str) -> Model:
        """Return a model by name.

        Raises:
            KeyError: If no such model exists.
        """
        for model in self.models:
            if model.name == name:
                return model
        raise KeyError(name)

    @property
    def model_names(self) -> list[str]:
        """Model names in declaration order."""
        return [m.name for m in self.models]


def source_id(source_name: str, table_name: str) -> str:
    """Build the graph id of a source table."""
    return f"{SOURCE_PREFIX}{source_name}.{table_name}"
