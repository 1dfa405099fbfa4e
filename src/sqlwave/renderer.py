"""Template Renderer: turn templated SQL into executable SQL.

Templates use Jinja syntax. The names a template may call are:
- ``ref('model')``: relation of another model
- ``source('source', 'table')``: relation of a declared source table
- ``var('name', default)``: project variable
- ``config(...)``: model configuration, read statically, renders nothing
- ``this``: relation of the model being rendered (when rendering a model)
- any project macro, by name

Two passes are offered:
- extract_references(): static scan of the template AST, no execution
- render(): full rendering against a SymbolTable, pure and deterministic

Both raise before anything is sent to the warehouse.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from functools import lru_cache
from types import CodeType
from typing import TYPE_CHECKING, Any

from jinja2 import StrictUndefined, Template, TemplateSyntaxError, UndefinedError, nodes
from jinja2.nodes import Impossible
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, ConfigDict, Field

from sqlwave.errors import ParseError, UnresolvedReferenceError
from sqlwave.nodes import Macro

if TYPE_CHECKING:
    from sqlwave.nodes import Relation
    from sqlwave.symbols import MacroSymbol, SymbolTable

BUILTIN_NAMES = frozenset({"ref", "source", "var", "config", "this"})

# Names Jinja provides inside macro bodies and loops
_IMPLICIT_LOCALS = frozenset({"caller", "varargs", "kwargs", "loop"})

_UNDEFINED_PATTERN = re.compile(r"'([^']+)' is undefined")

_MISSING = object()

_ENV = SandboxedEnvironment(
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)


class CallSite(BaseModel):
    """A function call found by the static scan."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    positional: int = 0
    keywords: list[str] = Field(default_factory=list)
    dynamic: bool = False
    lineno: int = 0


class TemplateReferences(BaseModel):
    """Result of statically scanning one template.

    Attributes:
        refs: Distinct ``ref`` targets in order of appearance.
        sources: Distinct ``(source, table)`` pairs in order of appearance.
        calls: Calls to any other global name (macros, mostly).
        config: Literal keyword arguments passed to ``config()``.
        local_names: Names defined inside the template itself.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    refs: list[str] = Field(default_factory=list)
    sources: list[tuple[str, str]] = Field(default_factory=list)
    calls: list[CallSite] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    local_names: list[str] = Field(default_factory=list)


@lru_cache(maxsize=1024)
def _compile(source: str) -> CodeType:
    return _ENV.compile(source)


def _parse(text: str, name: str | None) -> nodes.Template:
    try:
        return _ENV.parse(text)
    except TemplateSyntaxError as e:
        raise ParseError(
            f"Template syntax error: {e.message}",
            file_path=name,
            line_number=e.lineno,
        ) from e


def _literal_strings(call: nodes.Call, func: str, expected: int, name: str | None) -> list[str]:
    values: list[str] = []
    for arg in call.args:
        if not isinstance(arg, nodes.Const) or not isinstance(arg.value, str):
            raise ParseError(
                f"{func}() arguments must be string literals",
                file_path=name,
                line_number=call.lineno,
            )
        values.append(arg.value)
    if len(values) != expected or call.kwargs or call.dyn_args or call.dyn_kwargs:
        raise ParseError(
            f"{func}() takes exactly {expected} argument(s)",
            file_path=name,
            line_number=call.lineno,
        )
    return values


def extract_references(text: str, *, name: str | None = None) -> TemplateReferences:
    """Statically scan a template for references and calls.

    Nothing is executed, so the scan is safe on untrusted templates and works
    before a symbol table exists.

    Args:
        text: Template text.
        name: Template name for error messages.

    Returns:
        TemplateReferences found in the template.

    Raises:
        ParseError: On syntax errors or non-literal ref()/source() arguments.

    Example:
        >>> refs = extract_references("select * from {{ ref('stg_orders') }}")
        >>> refs.refs
        ['stg_orders']
    """
    return _scan(_parse(text, name), name)


def extract_macro_references(macro: Macro) -> TemplateReferences:
    """Statically scan the body of one macro.

    Only the named ``{% macro %}`` block is scanned, not the other macros of
    its file.

    Raises:
        ParseError: On syntax errors or non-literal ref()/source() arguments.
    """
    return _scan_macro(macro.name, macro.source_text, macro.path or None)


@lru_cache(maxsize=256)
def _scan_macro(macro_name: str, text: str, path: str | None) -> TemplateReferences:
    ast = _parse(text, path)
    for block in ast.find_all(nodes.Macro):
        if block.name == macro_name:
            return _scan(block, path)
    return _scan(ast, path)


def _scan(ast: nodes.Node, name: str | None) -> TemplateReferences:
    local_names: set[str] = set(_IMPLICIT_LOCALS)
    for macro in ast.find_all(nodes.Macro):
        local_names.add(macro.name)
    for node in ast.find_all(nodes.Name):
        if node.ctx in ("store", "param"):
            local_names.add(node.name)

    refs: list[str] = []
    sources: list[tuple[str, str]] = []
    calls: list[CallSite] = []
    config: dict[str, Any] = {}

    for call in ast.find_all(nodes.Call):
        if not isinstance(call.node, nodes.Name):
            continue
        func = call.node.name

        if func == "ref":
            (target,) = _literal_strings(call, "ref", 1, name)
            if target not in refs:
                refs.append(target)
        elif func == "source":
            source_name, table_name = _literal_strings(call, "source", 2, name)
            if (source_name, table_name) not in sources:
                sources.append((source_name, table_name))
        elif func == "config":
            for kw in call.kwargs:
                try:
                    config[kw.key] = kw.value.as_const()
                except Impossible as e:
                    raise ParseError(
                        f"config({kw.key}=...) must be a literal value",
                        file_path=name,
                        line_number=call.lineno,
                    ) from e
        elif func != "var":
            calls.append(
                CallSite(
                    name=func,
                    positional=len(call.args),
                    keywords=[kw.key for kw in call.kwargs],
                    dynamic=call.dyn_args is not None or call.dyn_kwargs is not None,
                    lineno=call.lineno,
                )
            )

    return TemplateReferences(
        refs=refs,
        sources=sources,
        calls=calls,
        config=config,
        local_names=sorted(local_names),
    )


def extract_macros(text: str, *, path: str = "") -> list[Macro]:
    """Read the macro definitions in a macro file.

    Args:
        text: Macro file text.
        path: File path for error messages and bookkeeping.

    Returns:
        One Macro per ``{% macro %}`` block, in file order.

    Raises:
        ParseError: On syntax errors.
    """
    ast = _parse(text, path or None)
    return [
        Macro(
            name=m.name,
            params=[arg.name for arg in m.args],
            defaults_count=len(m.defaults),
            path=path,
            source_text=text,
        )
        for m in ast.body
        if isinstance(m, nodes.Macro)
    ]


def validate(text: str, symbols: SymbolTable, *, name: str | None = None) -> TemplateReferences:
    """Check every reference and macro call in a template without rendering.

    Args:
        text: Template text.
        symbols: Symbol table to resolve against.
        name: Template name for error messages.

    Returns:
        The static references of the template.

    Raises:
        ParseError: On syntax errors.
        UnresolvedReferenceError: If a ref, source or called name is unknown.
        MacroArityError: If a macro call has the wrong arguments.
    """
    references = extract_references(text, name=name)

    for target in references.refs:
        symbols.resolve_ref(target, template=name)
    for source_name, table_name in references.sources:
        symbols.resolve_source(source_name, table_name, template=name)

    known = BUILTIN_NAMES | set(_ENV.globals) | set(references.local_names)
    for call in references.calls:
        if call.name in known:
            continue
        symbol = symbols.resolve_macro(call.name, template=name)
        if not call.dynamic:
            symbol.check_arity(call.positional, call.keywords)

    return references


class _MacroCaller:
    """Callable bound into template globals for one macro."""

    def __init__(self, symbol: MacroSymbol, scope: _RenderScope) -> None:
        self._symbol = symbol
        self._scope = scope

    def __call__(self, *args: Any, **kwargs: Any) -> str:
        self._symbol.check_arity(len(args), kwargs.keys())
        macro = self._scope.load_macro(self._symbol.macro)
        return str(macro(*args, **kwargs))


class _RenderScope:
    """Globals and compiled macro modules for a single render call."""

    def __init__(
        self,
        symbols: SymbolTable,
        template_name: str | None,
        this: Relation | None,
    ) -> None:
        self._symbols = symbols
        self._template_name = template_name
        self._modules: dict[str, Any] = {}

        self.globals: dict[str, Any] = {
            "ref": self._ref,
            "source": self._source,
            "var": self._var,
            "config": _config,
        }
        if this is not None:
            self.globals["this"] = this.render()
        for name, symbol in symbols.macros.items():
            self.globals[name] = _MacroCaller(symbol, self)

    def template(self, text: str) -> Template:
        return Template.from_code(_ENV, _compile(text), _ENV.make_globals(self.globals))

    def load_macro(self, macro: Macro) -> Callable[..., Any]:
        module = self._modules.get(macro.source_text)
        if module is None:
            module = self.template(macro.source_text).module
            self._modules[macro.source_text] = module
        return getattr(module, macro.name)  # type: ignore[no-any-return]

    def _ref(self, name: str) -> str:
        return self._symbols.resolve_ref(name, template=self._template_name).relation.render()

    def _source(self, source_name: str, table_name: str) -> str:
        symbol = self._symbols.resolve_source(
            source_name, table_name, template=self._template_name
        )
        return symbol.relation.render()

    def _var(self, name: str, default: Any = _MISSING) -> Any:
        if name in self._symbols.vars:
            return self._symbols.vars[name]
        if default is not _MISSING:
            return default
        raise UnresolvedReferenceError(name, kind="var", template=self._template_name)


def _config(*args: Any, **kwargs: Any) -> str:
    return ""


def render(
    text: str,
    symbols: SymbolTable,
    *,
    name: str | None = None,
    this: Relation | None = None,
) -> str:
    """Render a template to executable SQL.

    Rendering has no side effects and depends only on its inputs: the same
    text and symbol table always produce the same SQL.

    Args:
        text: Template text.
        symbols: Symbol table to resolve against.
        name: Template name for error messages.
        this: Relation bound to ``this`` (the model being rendered).

    Returns:
        Fully resolved SQL.

    Raises:
        ParseError: On syntax errors.
        UnresolvedReferenceError: If any symbol cannot be resolved.
        MacroArityError: If a macro is called with the wrong arguments.

    Example:
        >>> render("select * from {{ ref('stg_orders') }}", symbols)
        'select * from dbt_db.dbt_schema.stg_orders'
    """
    validate(text, symbols, name=name)
    scope = _RenderScope(symbols, name, this)

    try:
        return scope.template(text).render()
    except UndefinedError as e:
        match = _UNDEFINED_PATTERN.search(str(e))
        symbol = match.group(1) if match else str(e)
        raise UnresolvedReferenceError(
            symbol, kind="name", template=name, internal_details=str(e)
        ) from e
    except TemplateSyntaxError as e:
        raise ParseError(
            f"Template syntax error: {e.message}",
            file_path=name,
            line_number=e.lineno,
        ) from e


def render_expression(
    expression: str,
    symbols: SymbolTable,
    *,
    name: str | None = None,
) -> str:
    """Render a bare expression such as ``ref('stg_orders')``.

    Used for YAML test arguments that point at another node.
    """
    return render("{{ " + expression + " }}", symbols, name=name)
