"""Typed symbol table for template rendering.

Every name a template can resolve is registered here with an explicit kind:
- RefSymbol: a model name resolving to its relation
- SourceSymbol: a (source, table) pair resolving to its relation
- MacroSymbol: a macro with a known parameter list

Lookups fail with UnresolvedReferenceError instead of rendering an empty
string, so a misspelled reference is caught before the warehouse sees it.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict

from sqlwave.errors import MacroArityError, UnresolvedReferenceError
from sqlwave.nodes import Macro, Relation

if TYPE_CHECKING:
    from sqlwave.nodes import Manifest


class RefSymbol(BaseModel):
    """``ref('<name>')`` target."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["ref"] = "ref"
    name: str
    relation: Relation


class SourceSymbol(BaseModel):
    """``source('<source>', '<table>')`` target."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["source"] = "source"
    source_name: str
    table_name: str
    relation: Relation


class MacroSymbol(BaseModel):
    """A callable macro."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["macro"] = "macro"
    macro: Macro

    @property
    def name(self) -> str:
        return self.macro.name

    def check_arity(self, positional: int, keywords: Iterable[str] = ()) -> None:
        """Validate a call against the macro's parameter list.

        Args:
            positional: Number of positional arguments.
            keywords: Keyword argument names.

        Raises:
            MacroArityError: If the call cannot bind to the parameters.
        """
        keywords = list(keywords)
        params = self.macro.params
        given = positional + len(keywords)

        for keyword in keywords:
            if keyword not in params:
                raise MacroArityError(
                    self.name,
                    min_args=self.macro.min_args,
                    max_args=self.macro.max_args,
                    given=given,
                    detail=f"unexpected keyword argument '{keyword}'",
                )
            if params.index(keyword) < positional:
                raise MacroArityError(
                    self.name,
                    min_args=self.macro.min_args,
                    max_args=self.macro.max_args,
                    given=given,
                    detail=f"multiple values for argument '{keyword}'",
                )

        if given > self.macro.max_args:
            raise MacroArityError(
                self.name,
                min_args=self.macro.min_args,
                max_args=self.macro.max_args,
                given=given,
            )

        required = params[: self.macro.min_args]
        bound = set(params[:positional]) | set(keywords)
        if any(name not in bound for name in required):
            raise MacroArityError(
                self.name,
                min_args=self.macro.min_args,
                max_args=self.macro.max_args,
                given=given,
            )


class SymbolTable:
    """Resolution context for rendering templates.

    Constructed explicitly and passed down; nothing is looked up from module
    state, so several pipelines can render side by side in one process.

    Example:
        >>> symbols = SymbolTable.from_manifest(manifest)
        >>> symbols.resolve_ref("stg_orders").relation.render()
        'dbt_db.dbt_schema.stg_orders'
    """

    def __init__(
        self,
        *,
        refs: Iterable[RefSymbol] = (),
        sources: Iterable[SourceSymbol] = (),
        macros: Iterable[MacroSymbol] = (),
        vars: dict[str, Any] | None = None,
    ) -> None:
        self.refs: dict[str, RefSymbol] = {r.name: r for r in refs}
        self.sources: dict[tuple[str, str], SourceSymbol] = {
            (s.source_name, s.table_name): s for s in sources
        }
        self.macros: dict[str, MacroSymbol] = {m.name: m for m in macros}
        self.vars: dict[str, Any] = dict(vars or {})

    @classmethod
    def from_manifest(cls, manifest: Manifest) -> SymbolTable:
        """Build the symbol table for every node in a manifest."""
        return cls(
            refs=[RefSymbol(name=m.name, relation=m.relation) for m in manifest.models],
            sources=[
                SourceSymbol(
                    source_name=s.source_name,
                    table_name=s.table_name,
                    relation=s.relation,
                )
                for s in manifest.sources.values()
            ],
            macros=[MacroSymbol(macro=m) for m in manifest.macros.values()],
            vars=manifest.vars,
        )

    def resolve_ref(self, name: str, *, template: str | None = None) -> RefSymbol:
        """Look up a model.

        Raises:
            UnresolvedReferenceError: If the model is unknown.
        """
        symbol = self.refs.get(name)
        if symbol is None:
            raise UnresolvedReferenceError(name, kind="ref", template=template)
        return symbol

    def resolve_source(
        self, source_name: str, table_name: str, *, template: str | None = None
    ) -> SourceSymbol:
        """Look up a source table.

        Raises:
            UnresolvedReferenceError: If the source table is unknown.
        """
        symbol = self.sources.get((source_name, table_name))
        if symbol is None:
            raise UnresolvedReferenceError(
                f"{source_name}.{table_name}", kind="source", template=template
            )
        return symbol

    def resolve_macro(self, name: str, *, template: str | None = None) -> MacroSymbol:
        """Look up a macro.

        Raises:
            UnresolvedReferenceError: If the macro is unknown.
        """
        symbol = self.macros.get(name)
        if symbol is None:
            raise UnresolvedReferenceError(name, kind="macro", template=template)
        return symbol

    def __contains__(self, name: object) -> bool:
        return name in self.macros
