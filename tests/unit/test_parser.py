"""Unit tests for the project parser."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from sqlwave.errors import ConfigurationError, ParseError
from sqlwave.nodes import GenericTest, GenericTestKind, Manifest, Materialization, Severity
from sqlwave.parser import ProjectParser, load_manifest

MINI_PROJECT = {
    "sqlwave_project.yml": "name: mini\n",
    "models/a.sql": "select 1 as id\n",
}


def parse(make_project: Callable[..., Path], **files: str) -> Manifest:
    """Parse the minimal project with extra files (keys use '__' for '/')."""
    extra = {name.replace("__", "/"): content for name, content in files.items()}
    project_dir = make_project(MINI_PROJECT, overrides=extra)
    return ProjectParser(project_dir, default_schema="analytics").parse()


class TestSampleProject:
    """Tests against the sample orders project."""

    def test_models_in_discovery_order(self, sample_manifest: Manifest) -> None:
        """Test models are discovered in sorted path order."""
        assert sample_manifest.model_names == ["fct_orders", "stg_orders"]
        assert [m.declaration_index for m in sample_manifest.models] == [0, 1]

    def test_materializations(self, sample_manifest: Manifest) -> None:
        """Test folder config and config() set the materialization."""
        assert sample_manifest.get_model("fct_orders").materialization is Materialization.TABLE
        assert sample_manifest.get_model("stg_orders").materialization is Materialization.VIEW

    def test_relations(self, sample_manifest: Manifest) -> None:
        """Test models land in the target schema and sources in their own."""
        assert sample_manifest.get_model("stg_orders").relation.render() == "analytics.stg_orders"
        source = sample_manifest.sources["source:tpch.orders"]
        assert source.relation.render() == "raw.orders"

    def test_declared_columns(self, sample_manifest: Manifest) -> None:
        """Test YAML documentation is attached to the model."""
        model = sample_manifest.get_model("stg_orders")
        assert model.description == "Renamed TPC-H orders"
        assert [c.name for c in model.columns] == ["order_key"]

    def test_macros(self, sample_manifest: Manifest) -> None:
        """Test macros are registered by name."""
        macro = sample_manifest.macros["discounted_amount"]
        assert macro.path == "macros/pricing.sql"
        assert macro.params == ["column", "discount"]

    def test_tests(self, sample_manifest: Manifest) -> None:
        """Test generic tests from models and sources plus singular tests."""
        assert [t.unique_id for t in sample_manifest.tests] == [
            "unique_fct_orders_order_key",
            "not_null_fct_orders_order_key",
            "relationships_fct_orders_order_key",
            "accepted_values_fct_orders_status_code",
            "unique_stg_orders_order_key",
            "not_null_tpch_orders_o_orderkey",
            "fct_orders_date_valid",
        ]

    def test_accepted_values_arguments(self, sample_manifest: Manifest) -> None:
        """Test accepted_values keeps its values and defaults quote to true."""
        test = next(
            t for t in sample_manifest.tests if t.unique_id.startswith("accepted_values")
        )
        assert isinstance(test, GenericTest)
        assert test.kind is GenericTestKind.ACCEPTED_VALUES
        assert test.arguments == {"values": ["P", "O", "F"], "quote": True}
        assert test.severity is Severity.ERROR
        assert test.declared_in == "models/marts/schema.yml"

    def test_source_test_attached_to_source(self, sample_manifest: Manifest) -> None:
        """Test source column tests are attached to the source id."""
        test = next(t for t in sample_manifest.tests if t.unique_id.startswith("not_null_tpch"))
        assert isinstance(test, GenericTest)
        assert test.attached_to == "source:tpch.orders"

    def test_vars(self, sample_manifest: Manifest) -> None:
        """Test project vars are carried on the manifest."""
        assert sample_manifest.vars == {"min_order_key": 0}

    def test_load_manifest(self, make_project: Callable[..., Path]) -> None:
        """Test the convenience loader."""
        manifest = load_manifest(make_project(), default_schema="analytics")
        assert manifest.project_name == "data_pipeline"


class TestModelConfig:
    """Tests for model configuration resolution."""

    def test_custom_schema_and_alias(self, make_project: Callable[..., Path]) -> None:
        """Test custom schema is appended to the target schema."""
        manifest = parse(
            make_project,
            **{"models__b.sql": "{{ config(schema='finance', alias='orders_b') }}select 1"},
        )
        relation = manifest.get_model("b").relation
        assert relation.schema_name == "analytics_finance"
        assert relation.identifier == "orders_b"

    def test_yaml_config(self, make_project: Callable[..., Path]) -> None:
        """Test config in a models: declaration applies."""
        schema = "models:\n  - name: a\n    config:\n      materialized: table\n"
        manifest = parse(make_project, **{"models__schema.yml": schema})
        assert manifest.get_model("a").materialization is Materialization.TABLE

    def test_disabled_model_skipped(self, make_project: Callable[..., Path]) -> None:
        """Test enabled=false removes the model."""
        manifest = parse(make_project, **{"models__b.sql": "{{ config(enabled=false) }}select 1"})
        assert manifest.model_names == ["a"]

    def test_unsupported_materialization(self, make_project: Callable[..., Path]) -> None:
        """Test unknown materializations are rejected."""
        with pytest.raises(ParseError, match="Unsupported materialization 'incremental'"):
            parse(make_project, **{"models__b.sql": "{{ config(materialized='incremental') }}"})

    def test_duplicate_model_name(self, make_project: Callable[..., Path]) -> None:
        """Test two files with the same stem are rejected."""
        with pytest.raises(ParseError, match="Model 'a' defined twice"):
            parse(make_project, **{"models__sub__a.sql": "select 2"})

    def test_template_syntax_error(self, make_project: Callable[..., Path]) -> None:
        """Test template errors name the file."""
        with pytest.raises(ParseError, match="models/b.sql"):
            parse(make_project, **{"models__b.sql": "select {{ ref('a' }}"})


class TestSchemaFiles:
    """Tests for YAML declarations."""

    def test_malformed_yaml(self, make_project: Callable[..., Path]) -> None:
        """Test YAML syntax errors carry the file and line."""
        with pytest.raises(ParseError) as exc_info:
            parse(make_project, **{"models__schema.yml": "models:\n  - name: a\n   bad: [\n"})
        assert exc_info.value.file_path == "models/schema.yml"

    def test_invalid_declaration(self, make_project: Callable[..., Path]) -> None:
        """Test schema validation errors are parse errors."""
        with pytest.raises(ParseError, match="Invalid declaration"):
            parse(make_project, **{"models__schema.yml": "models:\n  - description: no name\n"})

    def test_unknown_generic_test(self, make_project: Callable[..., Path]) -> None:
        """Test unknown test kinds are rejected."""
        schema = "models:\n  - name: a\n    columns:\n      - name: id\n        tests: [positive]\n"
        with pytest.raises(ParseError, match="Unknown generic test 'positive'"):
            parse(make_project, **{"models__schema.yml": schema})

    def test_accepted_values_needs_values(self, make_project: Callable[..., Path]) -> None:
        """Test accepted_values without values is rejected."""
        schema = (
            "models:\n  - name: a\n    columns:\n      - name: id\n"
            "        tests:\n          - accepted_values:\n              quote: false\n"
        )
        with pytest.raises(ParseError, match="non-empty 'values'"):
            parse(make_project, **{"models__schema.yml": schema})

    def test_relationships_needs_to_and_field(self, make_project: Callable[..., Path]) -> None:
        """Test relationships needs both arguments."""
        schema = (
            "models:\n  - name: a\n    columns:\n      - name: id\n"
            "        tests:\n          - relationships:\n              to: ref('a')\n"
        )
        with pytest.raises(ParseError, match="'to' and 'field'"):
            parse(make_project, **{"models__schema.yml": schema})

    def test_warn_severity(self, make_project: Callable[..., Path]) -> None:
        """Test severity from a config block."""
        schema = (
            "models:\n  - name: a\n    columns:\n      - name: id\n"
            "        tests:\n          - not_null:\n              config:\n"
            "                severity: warn\n"
        )
        manifest = parse(make_project, **{"models__schema.yml": schema})
        (test,) = manifest.tests
        assert test.severity is Severity.WARN

    def test_duplicate_test(self, make_project: Callable[..., Path]) -> None:
        """Test the same test declared twice is rejected."""
        schema = (
            "models:\n  - name: a\n    columns:\n      - name: id\n"
            "        tests: [unique, unique]\n"
        )
        with pytest.raises(ParseError, match="Duplicate test 'unique_a_id'"):
            parse(make_project, **{"models__schema.yml": schema})

    def test_declaration_without_model(self, make_project: Callable[..., Path]) -> None:
        """Test declarations for missing models are ignored with their tests."""
        schema = (
            "models:\n  - name: ghost\n    columns:\n      - name: id\n"
            "        tests: [unique]\n"
        )
        manifest = parse(make_project, **{"models__schema.yml": schema})
        assert manifest.tests == []

    def test_duplicate_source_table(self, make_project: Callable[..., Path]) -> None:
        """Test a source table declared twice is rejected."""
        source = "sources:\n  - name: tpch\n    tables:\n      - name: orders\n"
        with pytest.raises(ParseError, match="Duplicate source table 'tpch.orders'"):
            parse(
                make_project,
                **{"models__one.yml": source, "models__two.yml": source},
            )

    def test_source_identifier_and_database(self, make_project: Callable[..., Path]) -> None:
        """Test source database, schema default and identifier override."""
        source = (
            "sources:\n  - name: tpch\n    database: snowflake_sample_data\n"
            "    tables:\n      - name: orders\n        identifier: ORDERS_V2\n"
        )
        manifest = parse(make_project, **{"models__sources.yml": source})
        relation = manifest.sources["source:tpch.orders"].relation
        assert relation.render() == "snowflake_sample_data.tpch.ORDERS_V2"


class TestSingularTests:
    """Tests for singular tests."""

    def test_severity_from_config(self, make_project: Callable[..., Path]) -> None:
        """Test config(severity='warn') in a singular test."""
        sql = "{{ config(severity='warn') }}select * from {{ ref('a') }}"
        manifest = parse(make_project, **{"tests__a_positive.sql": sql})
        (test,) = manifest.tests
        assert test.unique_id == "a_positive"
        assert test.severity is Severity.WARN

    def test_bad_severity(self, make_project: Callable[..., Path]) -> None:
        """Test unknown severities are rejected."""
        with pytest.raises(ParseError, match="Unsupported severity 'fatal'"):
            parse(make_project, **{"tests__t.sql": "{{ config(severity='fatal') }}select 1"})


class TestProjectFile:
    """Tests for project file handling in the parser."""

    def test_missing_project_file(self, tmp_path: Path) -> None:
        """Test a directory without sqlwave_project.yml."""
        with pytest.raises(ConfigurationError, match="Project file not found"):
            ProjectParser(tmp_path)

    def test_missing_directories_are_ignored(self, make_project: Callable[..., Path]) -> None:
        """Test absent macro and test directories are not an error."""
        manifest = parse(make_project)
        assert manifest.macros == {}
        assert manifest.tests == []
