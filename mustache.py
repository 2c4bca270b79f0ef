"""
Mustache renderer over a tree of scoped contexts.

Supported:
- Variables: {{name}} (HTML-escaped), {{{name}}} and {{&name}} (unescaped)
- Sections: {{#name}} ... {{/name}} over value maps, lists of child contexts,
  lambdas and plain truthy variables
- Inverted sections: {{^name}} ... {{/name}}
- Comments: {{! comment }}
- Partials: {{> partial}} (rendered in the surrounding scope)

Data lives in Context objects. A Context keeps plain variables and sections
in separate namespaces; lookups that miss fall back to the parent context.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
import inspect
import logging
import re

log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 100

# -----------------------------
# Errors
# -----------------------------
class MustacheError(Exception):
    """Base class for all errors raised by this module."""


class KeyNotFound(MustacheError, KeyError):
    """A key is not bound as a plain variable in the queried context."""


class UnsupportedBindingType(MustacheError, TypeError):
    """A value cannot be bound as a variable, value section or lambda."""


class RecursionLimitExceeded(MustacheError, RecursionError):
    """Partials or lambdas expanded deeper than the renderer allows."""


class TemplateSyntaxError(MustacheError, ValueError):
    """Section tags in a template do not nest properly."""

# -----------------------------
# Escaping
# -----------------------------
def html_escape(s: str) -> str:
    # Apostrophes are left alone.
    return (
        s.replace("&", "&amp;")
         .replace("<", "&lt;")
         .replace(">", "&gt;")
         .replace('"', "&quot;")
    )

# -----------------------------
# Sections
# -----------------------------
class SectionKind(Enum):
    ABSENT = "absent"
    VALUE = "value"
    FUNC = "func"
    LIST = "list"


@dataclass(frozen=True)
class ValueSection:
    value: Mapping[str, str]
    kind = SectionKind.VALUE

    def empty(self) -> bool:
        return not self.value


@dataclass(frozen=True)
class FuncSection:
    func: Optional[Callable[[str], str]]
    kind = SectionKind.FUNC

    def empty(self) -> bool:
        return self.func is None


@dataclass(frozen=True)
class ListSection:
    contexts: List["Context"]
    kind = SectionKind.LIST

    def empty(self) -> bool:
        return not self.contexts


Section = Union[ValueSection, FuncSection, ListSection]

# Order in which a section tag probes the kinds bound to its key.
SECTION_PRIORITY = (SectionKind.VALUE, SectionKind.FUNC, SectionKind.LIST)

_SCALARS = (str, int, float, bool)
_SEQUENCES = (list, tuple, set, frozenset, bytes, bytearray)


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Context):
        raise UnsupportedBindingType("cannot bind a Context as a variable; use add_child_context()")
    if value is None or isinstance(value, _SEQUENCES):
        raise UnsupportedBindingType(
            f"cannot bind {type(value).__name__} as a variable; "
            "use add_child_context() to build lists"
        )
    return str(value)


def _to_value_map(value: Mapping[Any, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in value.items():
        if not isinstance(k, str):
            raise UnsupportedBindingType(f"value section keys must be str, got {type(k).__name__}")
        if not isinstance(v, _SCALARS):
            raise UnsupportedBindingType(
                f"value section {k!r} holds {type(v).__name__}; only scalars are allowed"
            )
        out[k] = _to_string(v)
    return out


def _check_lambda(func: Callable[..., Any]) -> None:
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        # Some builtins expose no signature.
        return
    try:
        sig.bind("")
    except TypeError as e:
        raise UnsupportedBindingType(f"lambda must take exactly one text argument: {e}") from e


def _is_flat(value: Mapping[Any, Any]) -> bool:
    return all(isinstance(v, (str, int, float)) and not isinstance(v, bool) for v in value.values())

# -----------------------------
# Context
# -----------------------------
class Context:
    """
    One scope of template data.

    `variables` holds plain strings and `sections` holds structured bindings.
    The parent is only referenced, never owned; a parent owns its children
    through the list sections created by add_child_context().
    """

    def __init__(self, parent: Optional[Context] = None):
        self.parent = parent
        self.variables: Dict[str, str] = {}
        self.sections: Dict[str, Section] = {}

    def __repr__(self) -> str:
        return f"Context(variables={self.variables!r}, sections={sorted(self.sections)!r})"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Context:
        ctx = cls()
        ctx.update(data)
        return ctx

    # public binding API

    def get(self, key: str) -> str:
        """Return the plain variable bound here. Parents and sections are not searched."""
        try:
            return self.variables[key]
        except KeyError:
            raise KeyNotFound(key) from None

    def set(self, key: str, value: Any) -> None:
        """
        Bind `value` to `key`.

        A mapping becomes a value section and a callable becomes a lambda
        section. Anything else is stored as a plain variable in its string form.
        """
        if isinstance(value, Mapping):
            self.sections[key] = ValueSection(_to_value_map(value))
        elif callable(value):
            _check_lambda(value)
            self.sections[key] = FuncSection(value)
        else:
            self.variables[key] = _to_string(value)

    def __getitem__(self, key: str) -> str:
        return self.get(key)

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def section_kind(self, key: str) -> SectionKind:
        section = self.sections.get(key)
        return SectionKind.ABSENT if section is None else section.kind

    def section(self, key: str) -> Any:
        """Return the payload of the section bound here, or None."""
        section = self.sections.get(key)
        if isinstance(section, ValueSection):
            return dict(section.value)
        if isinstance(section, FuncSection):
            return section.func
        if isinstance(section, ListSection):
            return tuple(section.contexts)
        return None

    def add_child_context(self, key: str, reserve: int = 1) -> Context:
        """
        Create a child scope and append it to the list section at `key`.

        A section of another kind at `key` is replaced by a new list. `reserve`
        is only a sizing hint; Python lists grow on demand.
        """
        child = Context(self)
        current = self.sections.get(key)
        if isinstance(current, ListSection):
            current.contexts.append(child)
        else:
            self.sections[key] = ListSection([child])
        return child

    def update(self, data: Mapping[str, Any]) -> None:
        """
        Bind JSON/YAML-shaped data.

        None and False stay unbound. Lists become list sections: mapping items
        fill one child context each and scalar items are bound to ".". Flat
        mappings become value sections, nested ones a single child context.
        Keys are bound in their string form, so YAML's `1: one` is {{1}}.
        """
        for key, value in data.items():
            key = str(key)
            if value is None or value is False:
                continue
            if isinstance(value, (list, tuple)):
                self._bind_list(key, value)
            elif isinstance(value, Mapping) and not _is_flat(value):
                self.add_child_context(key).update(value)
            elif isinstance(value, Mapping):
                self.set(key, {str(k): v for k, v in value.items()})
            else:
                self.set(key, value)

    def _bind_list(self, key: str, items: Sequence[Any]) -> None:
        self.sections[key] = ListSection([])
        for item in items:
            child = self.add_child_context(key)
            if isinstance(item, Mapping):
                child.update(item)
            elif isinstance(item, (list, tuple)):
                child._bind_list(".", item)
            elif item is not None and item is not False:
                child.set(".", item)

    # resolution, used while rendering

    def _chain(self) -> Iterator[Context]:
        ctx: Optional[Context] = self
        while ctx is not None:
            yield ctx
            ctx = ctx.parent

    def fetch(self, key: str) -> Optional[str]:
        for ctx in self._chain():
            if key in ctx.variables:
                return ctx.variables[key]
        return None

    def lookup(self, key: str, kind: SectionKind) -> Optional[Section]:
        """Nearest section bound to `key` with exactly this kind."""
        for ctx in self._chain():
            section = ctx.sections.get(key)
            if section is not None and section.kind is kind:
                return section
        return None

    def fetch_value(self, key: str) -> Optional[Mapping[str, str]]:
        section = self.lookup(key, SectionKind.VALUE)
        return None if section is None else section.value

    def fetch_func(self, key: str) -> Optional[Callable[[str], str]]:
        section = self.lookup(key, SectionKind.FUNC)
        return None if section is None else section.func

    def fetch_list(self, key: str) -> Optional[List[Context]]:
        section = self.lookup(key, SectionKind.LIST)
        return None if section is None else section.contexts

    def section_kind_at(self, key: str) -> SectionKind:
        for ctx in self._chain():
            section = ctx.sections.get(key)
            if section is not None:
                return section.kind
        return SectionKind.ABSENT

# -----------------------------
# AST nodes
# -----------------------------
@dataclass(frozen=True)
class TextNode:
    text: str

    def __str__(self) -> str:
        return f"[T : {self.text}]"


@dataclass(frozen=True)
class VarNode:
    key: str
    escaped: bool = True

    def __str__(self) -> str:
        return f"[{'V' if self.escaped else 'E'} : {self.key}]"


@dataclass(frozen=True)
class SectionNode:
    key: str
    inverted: bool = False
    children: Tuple["Node", ...] = ()
    # Unprocessed body text, handed to lambdas. None for hand-built trees.
    source: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        # Stored as a tuple so nodes stay hashable.
        object.__setattr__(self, "children", tuple(self.children))

    def __str__(self) -> str:
        inner = "".join(f"{child} " for child in self.children)
        return f"[{'I' if self.inverted else 'S'} : {self.key}, [ {inner}]]"


@dataclass(frozen=True)
class PartialNode:
    key: str

    def __str__(self) -> str:
        return f"[P : {self.key}]"


Node = Union[TextNode, VarNode, SectionNode, PartialNode]


def format_nodes(nodes: Sequence[Node]) -> str:
    """Diagnostic form of a node sequence, e.g. "[[T : Hi ], [V : name]]"."""
    return "[" + ", ".join(str(node) for node in nodes) + "]"


def to_source(nodes: Sequence[Node]) -> str:
    """Regenerate template text for a node sequence."""
    parts: List[str] = []
    for node in nodes:
        if isinstance(node, TextNode):
            parts.append(node.text)
        elif isinstance(node, VarNode):
            parts.append("{{" + node.key + "}}" if node.escaped else "{{{" + node.key + "}}}")
        elif isinstance(node, SectionNode):
            sigil = "^" if node.inverted else "#"
            parts.append("{{" + sigil + node.key + "}}" + to_source(node.children) + "{{/" + node.key + "}}")
        elif isinstance(node, PartialNode):
            parts.append("{{>" + node.key + "}}")
    return "".join(parts)

# -----------------------------
# Parsing
# -----------------------------
_TAG_RE = re.compile(
    r"\{\{(?:\{\s*(?P<triple>.+?)\s*\}|\s*(?P<sigil>[#^/!>&]?)\s*(?P<name>.*?)\s*)\}\}",
    re.DOTALL,
)

# Tags that swallow their whole line when nothing else is on it.
_STANDALONE = frozenset("#^/!>")


@dataclass
class _OpenSection:
    key: str
    inverted: bool
    body_start: int
    outer: List[Node]
    children: List[Node] = field(default_factory=list)


def _standalone_span(tmpl: str, start: int, end: int) -> Optional[Tuple[int, int]]:
    line_start = tmpl.rfind("\n", 0, start) + 1
    line_end = tmpl.find("\n", end)
    trim_end = len(tmpl) if line_end == -1 else line_end + 1
    if line_end == -1:
        line_end = len(tmpl)
    if tmpl[line_start:start].strip() or tmpl[end:line_end].strip():
        return None
    return line_start, trim_end


def parse(template: str) -> List[Node]:
    root: List[Node] = []
    stack: List[_OpenSection] = []
    children = root
    pos = 0
    for m in _TAG_RE.finditer(template):
        start, end = m.span()
        if m.group("triple") is not None:
            sigil, name = "&", m.group("triple")
        else:
            sigil, name = m.group("sigil"), m.group("name")
        if not name and sigil != "!":
            # Not a tag; stays part of the surrounding text.
            continue

        text_end, tag_end = start, end
        if sigil in _STANDALONE:
            span = _standalone_span(template, start, end)
            if span is not None:
                text_end, tag_end = max(pos, span[0]), span[1]
        if text_end > pos:
            children.append(TextNode(template[pos:text_end]))
        pos = tag_end

        if sigil == "!":
            continue
        if sigil in ("#", "^"):
            frame = _OpenSection(name, sigil == "^", tag_end, children)
            stack.append(frame)
            children = frame.children
        elif sigil == "/":
            if not stack or stack[-1].key != name:
                raise TemplateSyntaxError(f"Unmatched section end: {name}")
            frame = stack.pop()
            children = frame.outer
            children.append(SectionNode(
                frame.key, frame.inverted, frame.children,
                source=template[frame.body_start:text_end],
            ))
        elif sigil == ">":
            children.append(PartialNode(name))
        else:
            children.append(VarNode(name, escaped=(sigil == "")))

    if pos < len(template):
        children.append(TextNode(template[pos:]))
    if stack:
        raise TemplateSyntaxError(f"Unclosed section(s): {[f.key for f in stack]}")
    return root

# -----------------------------
# Partials
# -----------------------------
PartialResolver = Callable[[str], Optional[Sequence[Node]]]
PartialSource = Union[PartialResolver, Mapping[str, Union[str, Sequence[Node]]], None]


class TemplateLoader:
    """Partial store backed by a template directory."""

    def __init__(
        self,
        template_dir: Union[str, Path],
        suffixes: Sequence[str] = (".mustache", ".mustache.html"),
        parser: Callable[[str], List[Node]] = parse,
        encoding: str = "utf-8",
    ):
        self.template_dir = Path(template_dir)
        self.suffixes = tuple(suffixes)
        self.parser = parser
        self.encoding = encoding
        self._cache: Dict[str, List[Node]] = {}

    def find(self, name: str) -> Optional[Path]:
        # Try known suffixes first, then the raw name including its extension.
        for candidate in [name + suffix for suffix in self.suffixes] + [name]:
            path = self.template_dir / candidate
            if path.is_file():
                return path
        return None

    def __call__(self, name: str) -> Optional[List[Node]]:
        nodes = self._cache.get(name)
        if nodes is not None:
            return nodes
        path = self.find(name)
        if path is None:
            return None
        log.debug("loading partial %r from %s", name, path)
        nodes = self.parser(path.read_text(encoding=self.encoding))
        self._cache[name] = nodes
        return nodes

# -----------------------------
# Rendering
# -----------------------------
class Renderer:
    def __init__(
        self,
        partials: PartialSource = None,
        parser: Callable[[str], List[Node]] = parse,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.parser = parser
        self.max_depth = max_depth
        self._resolve_partial = self._make_resolver(partials)

    def _make_resolver(self, partials: PartialSource) -> PartialResolver:
        if partials is None:
            return lambda name: None
        if isinstance(partials, Mapping):
            parsed = {
                name: self.parser(value) if isinstance(value, str) else list(value)
                for name, value in partials.items()
            }
            return parsed.get
        return partials

    def render(self, template: str, data: Union[Context, Mapping[str, Any]]) -> str:
        ctx = data if isinstance(data, Context) else Context.from_mapping(data)
        return self.render_nodes(self.parser(template), ctx)

    def render_nodes(self, nodes: Sequence[Node], context: Context) -> str:
        return self._render(nodes, context, 0)

    def _enter(self, depth: int, key: str) -> int:
        if depth >= self.max_depth:
            raise RecursionLimitExceeded(
                f"more than {self.max_depth} nested partial/lambda expansions at {key!r}"
            )
        return depth + 1

    def _render(self, nodes: Sequence[Node], ctx: Context, depth: int) -> str:
        out: List[str] = []
        for node in nodes:
            if isinstance(node, TextNode):
                out.append(node.text)
            elif isinstance(node, VarNode):
                value = ctx.fetch(node.key)
                if value is not None:
                    out.append(html_escape(value) if node.escaped else value)
            elif isinstance(node, PartialNode):
                out.append(self._render_partial(node, ctx, depth))
            elif isinstance(node, SectionNode):
                out.append(self._render_section(node, ctx, depth))
            else:
                raise TypeError(f"unknown template node: {node!r}")
        return "".join(out)

    def _render_partial(self, node: PartialNode, ctx: Context, depth: int) -> str:
        nodes = self._resolve_partial(node.key)
        if nodes is None:
            log.debug("partial %r not found", node.key)
            return ""
        # Same scope as the including template.
        return self._render(nodes, ctx, self._enter(depth, node.key))

    def _resolve_section(self, ctx: Context, key: str) -> Optional[Section]:
        for kind in SECTION_PRIORITY:
            section = ctx.lookup(key, kind)
            if section is not None:
                return section
        return None

    def _render_section(self, node: SectionNode, ctx: Context, depth: int) -> str:
        section = self._resolve_section(ctx, node.key)

        if isinstance(section, ValueSection):
            if node.inverted:
                return self._render(node.children, ctx, depth) if section.empty() else ""
            if section.empty():
                return ""
            scope = Context(ctx)
            scope.variables.update(section.value)
            return self._render(node.children, scope, depth)

        if isinstance(section, ListSection):
            if node.inverted:
                return self._render(node.children, ctx, depth) if section.empty() else ""
            return "".join(self._render(node.children, child, depth) for child in section.contexts)

        if isinstance(section, FuncSection) and not node.inverted and not section.empty():
            return self._render_lambda(node, section.func, ctx, depth)

        truthy = bool(ctx.fetch(node.key))
        if truthy != node.inverted:
            return self._render(node.children, ctx, depth)
        return ""

    def _render_lambda(self, node: SectionNode, func: Callable[[str], str], ctx: Context, depth: int) -> str:
        text = node.source if node.source is not None else to_source(node.children)
        log.debug("invoking lambda section %r", node.key)
        result = func(text)
        fragment = "" if result is None else str(result)
        return self._render(self.parser(fragment), ctx, self._enter(depth, node.key))


def render(
    nodes: Sequence[Node],
    root_context: Context,
    resolve_partial: PartialSource = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> str:
    return Renderer(resolve_partial, max_depth=max_depth).render_nodes(nodes, root_context)
