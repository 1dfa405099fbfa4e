"""Project parser: load a sqlwave project directory into a Manifest.

Project layout::

    sqlwave_project.yml
    models/
        staging/stg_orders.sql
        staging/sources.yml      # sources: and models: declarations
        marts/fct_orders.sql
        marts/schema.yml
    macros/pricing.sql
    tests/fct_orders_date_valid.sql

Discovery order (sorted paths) is the declaration order used for
deterministic scheduling. Parsing never touches the warehouse.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sqlwave.config import PROJECT_FILE_NAME, ProjectConfig
from sqlwave.errors import ParseError
from sqlwave.nodes import (
    ColumnInfo,
    GenericTest,
    GenericTestKind,
    Macro,
    Manifest,
    Materialization,
    Model,
    Relation,
    Severity,
    SingularTest,
    SourceTable,
    source_id,
)
from sqlwave.renderer import extract_macros, extract_references

logger = structlog.get_logger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")


class ColumnDeclaration(BaseModel):
    """A column entry in a schema YAML file."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    description: str = ""
    tests: list[Any] = Field(default_factory=list)
    data_tests: list[Any] = Field(default_factory=list)

    @property
    def all_tests(self) -> list[Any]:
        return [*self.tests, *self.data_tests]


class ModelDeclaration(BaseModel):
    """A ``models:`` entry: documentation, config and tests for one model."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    description: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    columns: list[ColumnDeclaration] = Field(default_factory=list)


class SourceTableDeclaration(BaseModel):
    """A table entry under a source."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    identifier: str | None = None
    description: str = ""
    columns: list[ColumnDeclaration] = Field(default_factory=list)


class SourceDeclaration(BaseModel):
    """A ``sources:`` entry."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = Field(..., min_length=1)
    database: str | None = None
    schema_name: str | None = Field(default=None, alias="schema")
    description: str = ""
    tables: list[SourceTableDeclaration] = Field(default_factory=list)


class SchemaFile(BaseModel):
    """One schema YAML file."""

    model_config = ConfigDict(extra="ignore")

    models: list[ModelDeclaration] = Field(default_factory=list)
    sources: list[SourceDeclaration] = Field(default_factory=list)


class ProjectParser:
    """Load a project directory into a Manifest.

    Attributes:
        project_dir: Project root.
        project: Parsed sqlwave_project.yml.
        default_schema: Target schema for models without a custom schema.
        default_database: Target database, if the warehouse uses one.

    Example:
        >>> parser = ProjectParser(Path("data_pipeline"), default_schema="dbt_schema")
        >>> manifest = parser.parse()
        >>> manifest.model_names
        ['stg_tpch_orders', 'fct_orders']
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        default_schema: str = "main",
        default_database: str | None = None,
        project: ProjectConfig | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self.project = project or ProjectConfig.from_yaml(self.project_dir / PROJECT_FILE_NAME)
        self.default_schema = default_schema
        self.default_database = default_database
        self._log = logger.bind(project=self.project.name)

    def parse(self) -> Manifest:
        """Parse every project file.

        Returns:
            Manifest with models, sources, macros and tests.

        Raises:
            ParseError: If any template or YAML declaration is malformed.
        """
        macros = self._parse_macros()
        schema_files = self._load_schema_files()

        sources: dict[str, SourceTable] = {}
        model_declarations: dict[str, tuple[str, ModelDeclaration]] = {}
        for rel_path, schema in schema_files:
            for source in schema.sources:
                for table in self._build_source_tables(source, rel_path):
                    if table.unique_id in sources:
                        raise ParseError(
                            f"Duplicate source table '{table.source_name}.{table.table_name}'",
                            file_path=rel_path,
                        )
                    sources[table.unique_id] = table
            for declaration in schema.models:
                if declaration.name in model_declarations:
                    raise ParseError(
                        f"Model '{declaration.name}' declared twice",
                        file_path=rel_path,
                    )
                model_declarations[declaration.name] = (rel_path, declaration)

        models = self._parse_models(model_declarations)
        model_names = {m.name for m in models}

        tests: list[GenericTest | SingularTest] = []
        for name, (rel_path, declaration) in model_declarations.items():
            if name not in model_names:
                self._log.warning("declaration_without_model", model=name, path=rel_path)
                continue
            for column in declaration.columns:
                for entry in column.all_tests:
                    tests.append(_parse_generic_test(entry, column.name, name, rel_path))

        for rel_path, schema in schema_files:
            for source in schema.sources:
                for table_decl in source.tables:
                    attached = source_id(source.name, table_decl.name)
                    for column in table_decl.columns:
                        for entry in column.all_tests:
                            tests.append(
                                _parse_generic_test(entry, column.name, attached, rel_path)
                            )

        tests.extend(self._parse_singular_tests())

        seen_tests: set[str] = set()
        for test in tests:
            if test.unique_id in seen_tests:
                location = test.path if isinstance(test, SingularTest) else test.declared_in
                raise ParseError(f"Duplicate test '{test.unique_id}'", file_path=location)
            seen_tests.add(test.unique_id)

        self._log.info(
            "project_parsed",
            models=len(models),
            sources=len(sources),
            macros=len(macros),
            tests=len(tests),
        )

        return Manifest(
            project_name=self.project.name,
            models=models,
            sources=sources,
            macros=macros,
            tests=tests,
            vars=self.project.vars,
        )

    def _files(self, dirs: list[str], suffixes: tuple[str, ...]) -> list[Path]:
        files: list[Path] = []
        for directory in dirs:
            root = self.project_dir / directory
            if not root.is_dir():
                continue
            files.extend(
                p for p in sorted(root.rglob("*")) if p.is_file() and p.suffix in suffixes
            )
        return files

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.project_dir).as_posix()

    def _parse_macros(self) -> dict[str, Macro]:
        macros: dict[str, Macro] = {}
        for path in self._files(self.project.macro_paths, (".sql",)):
            rel_path = self._relative(path)
            for macro in extract_macros(path.read_text(), path=rel_path):
                if macro.name in macros:
                    raise ParseError(
                        f"Macro '{macro.name}' defined twice (also in {macros[macro.name].path})",
                        file_path=rel_path,
                    )
                macros[macro.name] = macro
        return macros

    def _load_schema_files(self) -> list[tuple[str, SchemaFile]]:
        schema_files: list[tuple[str, SchemaFile]] = []
        for path in self._files(self.project.model_paths, YAML_SUFFIXES):
            rel_path = self._relative(path)
            try:
                data = yaml.safe_load(path.read_text()) or {}
            except yaml.YAMLError as e:
                mark = getattr(e, "problem_mark", None)
                raise ParseError(
                    f"Invalid YAML: {getattr(e, 'problem', None) or e}",
                    file_path=rel_path,
                    line_number=mark.line + 1 if mark is not None else None,
                ) from e
            if not isinstance(data, dict):
                raise ParseError("Schema file must be a mapping", file_path=rel_path)
            try:
                schema_files.append((rel_path, SchemaFile.model_validate(data)))
            except ValidationError as e:
                first = e.errors()[0]
                loc = ".".join(str(x) for x in first["loc"])
                raise ParseError(
                    f"Invalid declaration at '{loc}': {first['msg']}",
                    file_path=rel_path,
                    internal_details=str(e),
                ) from e
        return schema_files

    def _build_source_tables(self, source: SourceDeclaration, rel_path: str) -> list[SourceTable]:
        return [
            SourceTable(
                source_name=source.name,
                table_name=table.name,
                relation=Relation(
                    database=source.database or self.default_database,
                    schema=source.schema_name or source.name,
                    identifier=table.identifier or table.name,
                ),
                columns=[ColumnInfo(name=c.name, description=c.description) for c in table.columns],
                description=table.description,
                path=rel_path,
            )
            for table in source.tables
        ]

    def _parse_models(
        self, declarations: dict[str, tuple[str, ModelDeclaration]]
    ) -> list[Model]:
        models: list[Model] = []
        seen: dict[str, str] = {}

        for model_dir in self.project.model_paths:
            root = self.project_dir / model_dir
            for path in self._files([model_dir], (".sql",)):
                rel_path = self._relative(path)
                name = path.stem
                if name in seen:
                    raise ParseError(
                        f"Model '{name}' defined twice (also in {seen[name]})",
                        file_path=rel_path,
                    )
                seen[name] = rel_path

                raw_sql = path.read_text()
                references = extract_references(raw_sql, name=rel_path)

                folder = path.parent.relative_to(root).parts
                config = self.project.folder_config(folder)
                declaration = declarations.get(name)
                if declaration is not None:
                    config.update(declaration[1].config)
                config.update(references.config)

                if config.get("enabled") is False:
                    self._log.debug("model_disabled", model=name)
                    continue

                models.append(
                    Model(
                        name=name,
                        path=rel_path,
                        raw_sql=raw_sql,
                        materialization=self._materialization(config, rel_path),
                        relation=Relation(
                            database=config.get("database") or self.default_database,
                            schema=self._schema_for(config.get("schema")),
                            identifier=config.get("alias") or name,
                        ),
                        columns=[
                            ColumnInfo(name=c.name, description=c.description)
                            for c in (declaration[1].columns if declaration else [])
                        ],
                        description=declaration[1].description if declaration else "",
                        declaration_index=len(models),
                        config=config,
                    )
                )
        return models

    def _materialization(self, config: dict[str, Any], rel_path: str) -> Materialization:
        value = config.get("materialized", Materialization.VIEW.value)
        try:
            return Materialization(str(value).lower())
        except ValueError as e:
            allowed = ", ".join(m.value for m in Materialization)
            raise ParseError(
                f"Unsupported materialization '{value}' (expected one of: {allowed})",
                file_path=rel_path,
            ) from e

    def _schema_for(self, custom: str | None) -> str:
        if not custom:
            return self.default_schema
        return f"{self.default_schema}_{custom}"

    def _parse_singular_tests(self) -> list[SingularTest]:
        tests: list[SingularTest] = []
        for path in self._files(self.project.test_paths, (".sql",)):
            rel_path = self._relative(path)
            raw_sql = path.read_text()
            references = extract_references(raw_sql, name=rel_path)
            tests.append(
                SingularTest(
                    name=path.stem,
                    path=rel_path,
                    raw_sql=raw_sql,
                    severity=_parse_severity(references.config.get("severity"), rel_path),
                )
            )
        return tests


def _parse_severity(value: Any, rel_path: str) -> Severity:
    if value is None:
        return Severity.ERROR
    try:
        return Severity(str(value).lower())
    except ValueError as e:
        raise ParseError(
            f"Unsupported severity '{value}' (expected 'error' or 'warn')",
            file_path=rel_path,
        ) from e


def _parse_generic_test(entry: Any, column: str, attached_to: str, rel_path: str) -> GenericTest:
    """Turn one YAML test entry into a GenericTest.

    Accepted forms::

        - unique
        - accepted_values:
            values: ['P', 'O', 'F']
            config:
              severity: warn
    """
    if isinstance(entry, str):
        kind_name, arguments = entry, {}
    elif isinstance(entry, dict) and len(entry) == 1:
        kind_name, raw_arguments = next(iter(entry.items()))
        arguments = dict(raw_arguments or {})
    else:
        raise ParseError(f"Malformed test entry on column '{column}'", file_path=rel_path)

    try:
        kind = GenericTestKind(kind_name)
    except ValueError as e:
        allowed = ", ".join(k.value for k in GenericTestKind)
        raise ParseError(
            f"Unknown generic test '{kind_name}' (expected one of: {allowed})",
            file_path=rel_path,
        ) from e

    config = arguments.pop("config", None) or {}
    severity = _parse_severity(arguments.pop("severity", config.get("severity")), rel_path)

    if kind is GenericTestKind.ACCEPTED_VALUES:
        values = arguments.get("values")
        if not isinstance(values, list) or not values:
            raise ParseError(
                f"accepted_values on '{column}' needs a non-empty 'values' list",
                file_path=rel_path,
            )
        arguments.setdefault("quote", True)
    elif kind is GenericTestKind.RELATIONSHIPS:
        if not isinstance(arguments.get("to"), str) or not isinstance(arguments.get("field"), str):
            raise ParseError(
                f"relationships on '{column}' needs 'to' and 'field'",
                file_path=rel_path,
            )

    return GenericTest(
        kind=kind,
        column=column,
        attached_to=attached_to,
        arguments=arguments,
        severity=severity,
        declared_in=rel_path,
    )


def load_manifest(
    project_dir: str | Path,
    *,
    default_schema: str = "main",
    default_database: str | None = None,
) -> Manifest:
    """Parse a project directory.

    Convenience function that creates a ProjectParser and parses.

    Args:
        project_dir: Project root containing sqlwave_project.yml.
        default_schema: Target schema for models.
        default_database: Target database for models and sources.

    Returns:
        Parsed Manifest.
    """
    return ProjectParser(
        Path(project_dir),
        default_schema=default_schema,
        default_database=default_database,
    ).parse()
