"""Unit tests for the dependency graph."""

from __future__ import annotations

import pytest
from conftest import build_manifest, ref

from sqlwave.errors import CyclicDependencyError, UnknownReferenceError
from sqlwave.graph import DependencyGraph, build_graph
from sqlwave.nodes import GenericTest, GenericTestKind, Manifest, SingularTest

SOURCE = "{{ source('tpch', 'orders') }}"

MACROS = """
{% macro from_b() %}{{ ref('b') }}{% endmacro %}
{% macro via_from_b() %}{{ from_b() }}{% endmacro %}
{% macro orders() %}{{ source('tpch', 'orders') }}{% endmacro %}
{% macro loop_a() %}{{ loop_b() }}{% endmacro %}
{% macro loop_b() %}{{ loop_a() }}{{ ref('b') }}{% endmacro %}
{% macro ghost() %}{{ ref('ghost') }}{% endmacro %}
"""


@pytest.fixture
def branches() -> DependencyGraph:
    """a -> b -> c plus an independent d -> e chain."""
    manifest = build_manifest(
        {
            "a": f"select * from {SOURCE}",
            "b": f"select * from {ref('a')}",
            "c": f"select * from {ref('b')}",
            "d": "select 1 as id",
            "e": f"select * from {ref('d')}",
        },
        sources=[("tpch", "orders")],
        folders={"a": "staging", "d": "staging", "b": "marts", "c": "marts", "e": "marts"},
    )
    return build_graph(manifest)


class TestBuildGraph:
    """Tests for edge extraction and validation."""

    def test_edges_follow_references(self, branches: DependencyGraph) -> None:
        """ref() and source() calls become edges."""
        ref_edges = {(e.consumer, e.producer) for e in branches.edges if e.kind == "ref"}
        assert ref_edges == {("b", "a"), ("c", "b"), ("e", "d")}
        assert branches.sources("a") == ["source:tpch.orders"]

    def test_repeated_reference_is_one_edge(self) -> None:
        """Referencing the same model twice adds a single edge."""
        manifest = build_manifest(
            {"a": "select 1", "b": f"select * from {ref('a')} join {ref('a')} using (x)"}
        )
        graph = build_graph(manifest)
        assert graph.upstream("b") == ["a"]

    def test_unknown_model_reference(self) -> None:
        """A ref() to a missing model names the consumer and the target."""
        manifest = build_manifest({"a": f"select * from {ref('missing')}"})

        with pytest.raises(UnknownReferenceError) as exc_info:
            build_graph(manifest)

        assert exc_info.value.consumer == "a"
        assert exc_info.value.target == "missing"
        assert exc_info.value.kind == "ref"

    def test_unknown_source_reference(self) -> None:
        """A source() to an undeclared table raises."""
        manifest = build_manifest({"a": "select * from {{ source('tpch', 'nation') }}"})

        with pytest.raises(UnknownReferenceError) as exc_info:
            build_graph(manifest)

        assert exc_info.value.kind == "source"
        assert exc_info.value.target == "tpch.nation"

    def test_two_model_cycle(self) -> None:
        """A -> B -> A is reported with both members."""
        manifest = build_manifest(
            {"a": f"select * from {ref('b')}", "b": f"select * from {ref('a')}"}
        )

        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(manifest)

        assert exc_info.value.members == {"a", "b"}
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]

    def test_self_reference_is_a_cycle(self) -> None:
        """A model referencing itself is cyclic."""
        manifest = build_manifest({"a": f"select * from {ref('a')}"})

        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(manifest)

        assert exc_info.value.members == {"a"}

    def test_cycle_behind_acyclic_prefix(self) -> None:
        """Cycles deeper in the graph are still found."""
        manifest = build_manifest(
            {
                "root": "select 1",
                "x": f"select * from {ref('root')} join {ref('z')} using (id)",
                "y": f"select * from {ref('x')}",
                "z": f"select * from {ref('y')}",
            }
        )

        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(manifest)

        assert exc_info.value.members == {"x", "y", "z"}

    def test_sample_project(self, sample_manifest: Manifest) -> None:
        """The sample mart depends on staging, staging on the raw source."""
        graph = build_graph(sample_manifest)

        assert graph.upstream("fct_orders") == ["stg_orders"]
        assert graph.sources("stg_orders") == ["source:tpch.orders"]
        assert len(graph) == 2


class TestMacroReferences:
    """Tests for references reached through macro calls."""

    def graph(self, model_sql: str) -> DependencyGraph:
        return build_graph(
            build_manifest(
                {"a": model_sql, "b": "select 1 as id"},
                sources=[("tpch", "orders")],
                macros=MACROS,
            )
        )

    def test_ref_inside_macro(self) -> None:
        graph = self.graph("select * from {{ from_b() }}")
        assert graph.upstream("a") == ["b"]
        assert graph.downstream("b") == ["a"]

    def test_nested_macro_calls(self) -> None:
        assert self.graph("select * from {{ via_from_b() }}").upstream("a") == ["b"]

    def test_source_inside_macro(self) -> None:
        graph = self.graph("select * from {{ orders() }}")
        assert graph.sources("a") == ["source:tpch.orders"]

    def test_recursive_macros_scanned_once(self) -> None:
        assert self.graph("select * from {{ loop_a() }}").upstream("a") == ["b"]

    def test_unknown_ref_inside_macro(self) -> None:
        with pytest.raises(UnknownReferenceError) as exc_info:
            self.graph("select * from {{ ghost() }}")

        assert exc_info.value.consumer == "a"
        assert exc_info.value.target == "ghost"

    def test_uncalled_macros_add_no_edges(self) -> None:
        """Other macros of the same file do not count."""
        assert self.graph("select * from {{ orders() }}").upstream("a") == []

    def test_local_macro_shadows_project_macro(self) -> None:
        graph = self.graph(
            "{% macro from_b() %}select 2 as id{% endmacro %}select * from ({{ from_b() }})"
        )
        assert graph.upstream("a") == []

    def test_singular_test_through_macro(self) -> None:
        graph = self.graph("select 1 as id")
        test = SingularTest(
            name="b_check", path="tests/b_check.sql", raw_sql="select * from {{ from_b() }}"
        )
        assert graph.test_dependencies(test) == ["b"]


class TestTraversal:
    """Tests for neighbour and closure queries."""

    def test_direct_neighbours(self, branches: DependencyGraph) -> None:
        assert branches.upstream("b") == ["a"]
        assert branches.downstream("a") == ["b"]
        assert branches.downstream("c") == []

    def test_descendants(self, branches: DependencyGraph) -> None:
        assert branches.descendants("a") == ["b", "c"]
        assert branches.descendants_of(["a", "d"]) == ["b", "c", "e"]

    def test_ancestors(self, branches: DependencyGraph) -> None:
        assert branches.ancestors("c") == ["a", "b"]
        assert branches.ancestors("d") == []

    def test_membership(self, branches: DependencyGraph) -> None:
        assert "a" in branches
        assert "source:tpch.orders" not in branches


class TestSelect:
    """Tests for node selectors."""

    def test_empty_selection_selects_everything(self, branches: DependencyGraph) -> None:
        assert branches.select([]) == ["a", "b", "c", "d", "e"]

    def test_plain_name(self, branches: DependencyGraph) -> None:
        assert branches.select(["b"]) == ["b"]

    def test_with_ancestors(self, branches: DependencyGraph) -> None:
        assert branches.select(["+c"]) == ["a", "b", "c"]

    def test_with_descendants(self, branches: DependencyGraph) -> None:
        assert branches.select(["b+"]) == ["b", "c"]

    def test_path_selector(self, branches: DependencyGraph) -> None:
        assert branches.select(["path:models/staging"]) == ["a", "d"]
        assert branches.select(["path:models/marts/"]) == ["b", "c", "e"]

    def test_union_in_declaration_order(self, branches: DependencyGraph) -> None:
        assert branches.select(["e", "+b"]) == ["a", "b", "e"]

    def test_unknown_selector(self, branches: DependencyGraph) -> None:
        with pytest.raises(UnknownReferenceError, match="nope"):
            branches.select(["nope+"])


class TestTestDependencies:
    """Tests for resolving what a data test reads."""

    def test_column_test_reads_its_model(self, branches: DependencyGraph) -> None:
        test = GenericTest(kind=GenericTestKind.UNIQUE, column="id", attached_to="e")
        assert branches.test_dependencies(test) == ["e"]

    def test_relationships_reads_both_sides(self, branches: DependencyGraph) -> None:
        test = GenericTest(
            kind=GenericTestKind.RELATIONSHIPS,
            column="id",
            attached_to="e",
            arguments={"to": "ref('d')", "field": "id"},
        )
        assert branches.test_dependencies(test) == ["e", "d"]

    def test_source_test(self, branches: DependencyGraph) -> None:
        test = GenericTest(
            kind=GenericTestKind.NOT_NULL, column="o_orderkey", attached_to="source:tpch.orders"
        )
        assert branches.test_dependencies(test) == ["source:tpch.orders"]
        assert branches.test_models(test) == []

    def test_singular_test_scans_its_template(self, branches: DependencyGraph) -> None:
        test = SingularTest(
            name="c_matches_a",
            path="tests/c_matches_a.sql",
            raw_sql=f"select * from {ref('c')} except select * from {ref('a')}",
        )
        assert branches.test_models(test) == ["c", "a"]

    def test_unknown_test_target(self, branches: DependencyGraph) -> None:
        test = SingularTest(
            name="broken", path="tests/broken.sql", raw_sql=f"select * from {ref('zzz')}"
        )
        with pytest.raises(UnknownReferenceError) as exc_info:
            branches.test_dependencies(test)
        assert exc_info.value.consumer == "broken"
