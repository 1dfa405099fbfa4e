"""Dependency graph over project models.

Edges come from a static scan of each model template (``ref`` and
``source`` calls, including those inside the macros it calls), so the
graph is known before anything is rendered or executed. Building the graph
fails fast on unknown references and cycles.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator

import structlog

from sqlwave.errors import CyclicDependencyError, UnknownReferenceError
from sqlwave.nodes import (
    SOURCE_PREFIX,
    DependencyEdge,
    GenericTest,
    GenericTestKind,
    Macro,
    Manifest,
    Model,
    SingularTest,
    source_id,
)
from sqlwave.renderer import extract_macro_references, extract_references

logger = structlog.get_logger(__name__)

PATH_SELECTOR_PREFIX = "path:"


class DependencyGraph:
    """Directed acyclic graph of models and the source tables they read.

    Model-to-model edges drive scheduling. Source edges are kept for
    reporting and test dependency checks; sources are never scheduled.

    Example:
        >>> graph = build_graph(manifest)
        >>> graph.upstream("fct_orders")
        ['stg_tpch_orders']
        >>> graph.select(["stg_tpch_orders+"])
        ['stg_tpch_orders', 'fct_orders']
    """

    def __init__(self, manifest: Manifest, edges: Iterable[DependencyEdge]) -> None:
        self.manifest = manifest
        self.edges: list[DependencyEdge] = list(edges)
        self._models: dict[str, Model] = {m.name: m for m in manifest.models}
        self._order = {m.name: m.declaration_index for m in manifest.models}

        self._upstream: dict[str, list[str]] = {name: [] for name in self._models}
        self._downstream: dict[str, list[str]] = {name: [] for name in self._models}
        self._sources: dict[str, list[str]] = {name: [] for name in self._models}

        for edge in self.edges:
            if edge.kind == "ref":
                self._upstream[edge.consumer].append(edge.producer)
                self._downstream[edge.producer].append(edge.consumer)
            else:
                self._sources[edge.consumer].append(edge.producer)

        for name in self._models:
            self._downstream[name] = self._sorted(self._downstream[name])

    @property
    def models(self) -> list[str]:
        """Model names in declaration order."""
        return list(self._models)

    def model(self, name: str) -> Model:
        """Return the model node for a name."""
        return self._models[name]

    def __contains__(self, name: object) -> bool:
        return name in self._models

    def __len__(self) -> int:
        return len(self._models)

    def _sorted(self, names: Iterable[str]) -> list[str]:
        return sorted(set(names), key=self._order.__getitem__)

    def upstream(self, name: str) -> list[str]:
        """Models that ``name`` references directly."""
        return list(self._upstream[name])

    def downstream(self, name: str) -> list[str]:
        """Models that reference ``name`` directly, in declaration order."""
        return list(self._downstream[name])

    def sources(self, name: str) -> list[str]:
        """Source table ids that ``name`` reads directly."""
        return list(self._sources[name])

    def _walk(self, start: Iterable[str], neighbours: dict[str, list[str]]) -> list[str]:
        seen: set[str] = set()
        queue = deque(start)
        while queue:
            current = queue.popleft()
            for nxt in neighbours[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return self._sorted(seen)

    def descendants(self, name: str) -> list[str]:
        """All transitive dependents of ``name``, in declaration order."""
        return self._walk([name], self._downstream)

    def descendants_of(self, names: Iterable[str]) -> list[str]:
        """All transitive dependents of any of ``names``."""
        return self._walk(names, self._downstream)

    def ancestors(self, name: str) -> list[str]:
        """All transitive dependencies of ``name``, in declaration order."""
        return self._walk([name], self._upstream)

    def select(self, selectors: Iterable[str]) -> list[str]:
        """Resolve node selectors to model names.

        Supported selectors:
        - ``name``: the model itself
        - ``+name``: the model and its ancestors
        - ``name+``: the model and its descendants
        - ``path:models/marts``: every model under a directory

        Args:
            selectors: Selector strings; an empty iterable selects everything.

        Returns:
            Selected model names in declaration order.

        Raises:
            UnknownReferenceError: If a selector names an unknown model.
        """
        selectors = list(selectors)
        if not selectors:
            return self.models

        selected: set[str] = set()
        for selector in selectors:
            if selector.startswith(PATH_SELECTOR_PREFIX):
                prefix = selector[len(PATH_SELECTOR_PREFIX) :].rstrip("/") + "/"
                selected.update(
                    m.name for m in self._models.values() if m.path.startswith(prefix)
                )
                continue

            with_ancestors = selector.startswith("+")
            with_descendants = selector.endswith("+")
            name = selector.strip("+")
            if name not in self._models:
                raise UnknownReferenceError(
                    "selector", name, kind="ref", available=self.models
                )
            selected.add(name)
            if with_ancestors:
                selected.update(self.ancestors(name))
            if with_descendants:
                selected.update(self.descendants(name))

        return self._sorted(selected)

    def test_dependencies(self, test: GenericTest | SingularTest) -> list[str]:
        """Node ids (models and ``source:`` ids) a test reads.

        Raises:
            UnknownReferenceError: If the test references an unknown node.
        """
        if isinstance(test, GenericTest):
            nodes = [test.attached_to]
            if test.kind is GenericTestKind.RELATIONSHIPS:
                references = extract_references(
                    "{{ " + str(test.arguments["to"]) + " }}", name=test.declared_in
                )
                nodes.extend(references.refs)
                nodes.extend(source_id(s, t) for s, t in references.sources)
        else:
            refs, sources = template_references(
                test.raw_sql, self.manifest.macros, name=test.path
            )
            nodes = [*refs, *(source_id(s, t) for s, t in sources)]

        for node in nodes:
            self._check_node(test.unique_id, node)
        return list(dict.fromkeys(nodes))

    def test_models(self, test: GenericTest | SingularTest) -> list[str]:
        """Model names a test reads (source dependencies dropped)."""
        return [n for n in self.test_dependencies(test) if not n.startswith(SOURCE_PREFIX)]

    def _check_node(self, consumer: str, node: str) -> None:
        if node.startswith(SOURCE_PREFIX):
            if node not in self.manifest.sources:
                raise UnknownReferenceError(
                    consumer,
                    node.removeprefix(SOURCE_PREFIX),
                    kind="source",
                    available=_source_names(self.manifest),
                )
        elif node not in self._models:
            raise UnknownReferenceError(consumer, node, kind="ref", available=self.models)


def _source_names(manifest: Manifest) -> list[str]:
    return sorted(k.removeprefix(SOURCE_PREFIX) for k in manifest.sources)


def _find_cycle(models: list[str], upstream: dict[str, list[str]]) -> list[str] | None:
    """Depth-first search with an explicit recursion stack.

    Returns:
        The first cycle found, first node repeated at the end, or None.
    """
    done: set[str] = set()
    for root in models:
        if root in done:
            continue
        path: list[str] = [root]
        on_stack: set[str] = {root}
        frames: list[Iterator[str]] = [iter(upstream[root])]
        while frames:
            nxt = next(frames[-1], None)
            if nxt is None:
                finished = path.pop()
                on_stack.discard(finished)
                done.add(finished)
                frames.pop()
                continue
            if nxt in on_stack:
                return [*path[path.index(nxt) :], nxt]
            if nxt not in done:
                path.append(nxt)
                on_stack.add(nxt)
                frames.append(iter(upstream[nxt]))
    return None


def template_references(
    text: str, macros: dict[str, Macro], *, name: str | None = None
) -> tuple[list[str], list[tuple[str, str]]]:
    """ref targets and source pairs a template reads, directly or via macros.

    Project macros called by the template are scanned transitively; each
    macro body is scanned once, so recursive macros terminate.

    Returns:
        Distinct ref targets and distinct (source, table) pairs, template
        references first.
    """
    references = extract_references(text, name=name)
    refs = list(references.refs)
    sources = list(references.sources)

    seen: set[str] = set()
    pending = deque(c.name for c in references.calls if c.name not in references.local_names)
    while pending:
        macro_name = pending.popleft()
        if macro_name in seen or macro_name not in macros:
            continue
        seen.add(macro_name)
        body = extract_macro_references(macros[macro_name])
        refs.extend(r for r in body.refs if r not in refs)
        sources.extend(s for s in body.sources if s not in sources)
        pending.extend(c.name for c in body.calls if c.name not in body.local_names)
    return refs, sources


def build_graph(manifest: Manifest) -> DependencyGraph:
    """Build the dependency graph of a manifest.

    Args:
        manifest: Parsed project.

    Returns:
        DependencyGraph with one edge per distinct reference.

    Raises:
        ParseError: If a template cannot be scanned.
        UnknownReferenceError: If a model, or a macro it calls, references an
            unknown model or source.
        CyclicDependencyError: If model references form a cycle.
    """
    model_names = manifest.model_names
    known = set(model_names)
    edges: list[DependencyEdge] = []

    for model in manifest.models:
        refs, sources = template_references(model.raw_sql, manifest.macros, name=model.path)
        for target in refs:
            if target not in known:
                raise UnknownReferenceError(
                    model.name, target, kind="ref", available=model_names
                )
            edges.append(DependencyEdge(consumer=model.name, producer=target, kind="ref"))
        for source_name, table_name in sources:
            producer = source_id(source_name, table_name)
            if producer not in manifest.sources:
                raise UnknownReferenceError(
                    model.name,
                    f"{source_name}.{table_name}",
                    kind="source",
                    available=_source_names(manifest),
                )
            edges.append(DependencyEdge(consumer=model.name, producer=producer, kind="source"))

    upstream: dict[str, list[str]] = {name: [] for name in model_names}
    for edge in edges:
        if edge.kind == "ref":
            upstream[edge.consumer].append(edge.producer)

    cycle = _find_cycle(model_names, upstream)
    if cycle is not None:
        raise CyclicDependencyError(cycle)

    logger.debug("graph_built", models=len(model_names), edges=len(edges))
    return DependencyGraph(manifest, edges)
