"""Resource addresses and tagged attribute values.

An attribute value is either a literal (any JSON-compatible value, possibly a
nested list/dict) or one of the tagged variants defined here:

- ``Reference``: another resource's attribute, resolved by graph walk
- ``Placeholder``: ``each.key`` / ``each.value`` / ``count.index``, resolved
  by the multiplicity expansion pass

Tagged values are captured when a resource is declared and are never
evaluated by string interpolation. ``${...}`` is recognised only when it makes
up the whole string value.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, TypeAlias

from reconciler.errors import InvalidAddressError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

IndexKey: TypeAlias = int | str
PlaceholderKind: TypeAlias = Literal["each.key", "each.value", "count.index"]

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_ADDRESS = (
    rf"(?P<type>{_IDENT})\.(?P<name>{_IDENT}(?:-[A-Za-z0-9_]+)*)"
    r'(?:\[(?P<index>\d+|"[^"]*")\])?'
)
_ADDRESS_RE = re.compile(rf"^{_ADDRESS}$")
_REFERENCE_RE = re.compile(rf"^{_ADDRESS}\.(?P<attr>{_IDENT}(?:\.{_IDENT})*)$")
_INTERPOLATION_RE = re.compile(r"^\$\{\s*(?P<expr>[^${}]+?)\s*\}$")
_PLACEHOLDERS: frozenset[str] = frozenset({"each.key", "each.value", "count.index"})


def _parse_index(raw: str | None) -> IndexKey | None:
    if raw is None:
        return None
    if raw.startswith('"'):
        return raw[1:-1]
    return int(raw)


@dataclass(frozen=True, slots=True)
class ResourceAddress:
    """Stable identifier of a resource: ``type.name`` plus an optional index key."""

    resource_type: str
    name: str
    index: IndexKey | None = None

    @classmethod
    def parse(cls, value: str) -> ResourceAddress:
        m = _ADDRESS_RE.match(value.strip())
        if m is None:
            raise InvalidAddressError(value, 'expected type.name, type.name[0] or type.name["key"]')
        return cls(m["type"], m["name"], _parse_index(m["index"]))

    @property
    def base(self) -> ResourceAddress:
        """The address without its index key (the declared template)."""
        return ResourceAddress(self.resource_type, self.name)

    def with_index(self, index: IndexKey) -> ResourceAddress:
        return ResourceAddress(self.resource_type, self.name, index)

    def __str__(self) -> str:
        text = f"{self.resource_type}.{self.name}"
        if isinstance(self.index, int):
            text += f"[{self.index}]"
        elif isinstance(self.index, str):
            text += f"[{json.dumps(self.index)}]"
        return text


@dataclass(frozen=True, slots=True)
class Reference:
    """Unresolved reference to ``attribute`` of the resource at ``target``.

    ``attribute`` may be a dotted path into nested dict values.
    """

    target: ResourceAddress
    attribute: str

    @classmethod
    def parse(cls, value: str) -> Reference:
        m = _REFERENCE_RE.match(value.strip())
        if m is None:
            raise InvalidAddressError(value, "expected type.name.attribute")
        return cls(ResourceAddress(m["type"], m["name"], _parse_index(m["index"])), m["attr"])

    def __str__(self) -> str:
        return f"{self.target}.{self.attribute}"


@dataclass(frozen=True, slots=True)
class Placeholder:
    """Repetition value substituted by the expansion pass."""

    kind: PlaceholderKind

    def __str__(self) -> str:
        return self.kind


class _Unknown:
    """Value that will only be known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"


UNKNOWN = _Unknown()


def ref(expression: str) -> Reference:
    """Build a reference from ``type.name.attr`` or ``type.name[0].attr``."""
    return Reference.parse(expression)


def each(kind: PlaceholderKind) -> Placeholder:
    """Build a repetition placeholder (``each.key``, ``each.value``, ``count.index``)."""
    if kind not in _PLACEHOLDERS:
        raise InvalidAddressError(kind, f"expected one of {', '.join(sorted(_PLACEHOLDERS))}")
    return Placeholder(kind)


def _capture_string(value: str) -> Any:
    m = _INTERPOLATION_RE.match(value)
    if m is None:
        return value
    expr = m["expr"]
    if expr in _PLACEHOLDERS:
        return Placeholder(expr)  # type: ignore[arg-type]
    return Reference.parse(expr)


def capture(value: Any) -> Any:
    """Turn declared attribute values into tagged values where they are references.

    Accepts ``${type.name.attr}`` strings and the serialized forms
    ``{"$ref": ...}`` / ``{"$each": ...}``.
    """
    if isinstance(value, Reference | Placeholder):
        return value
    if isinstance(value, str):
        return _capture_string(value)
    if isinstance(value, dict):
        if set(value) == {"$ref"}:
            return Reference.parse(value["$ref"])
        if set(value) == {"$each"}:
            return each(value["$each"])
        return {k: capture(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [capture(v) for v in value]
    return value


def encode(value: Any) -> Any:
    """JSON-friendly form of an attribute value; inverse of :func:`capture`."""
    if isinstance(value, Reference):
        return {"$ref": str(value)}
    if isinstance(value, Placeholder):
        return {"$each": value.kind}
    if isinstance(value, dict):
        return {k: encode(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [encode(v) for v in value]
    return value


def transform(value: Any, fn: Callable[[Reference | Placeholder], Any]) -> Any:
    """Rebuild *value*, replacing every tagged leaf with ``fn(leaf)``."""
    if isinstance(value, Reference | Placeholder):
        return fn(value)
    if isinstance(value, dict):
        return {k: transform(v, fn) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [transform(v, fn) for v in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, list | tuple):
        for v in value:
            yield from iter_references(v)


def contains_tag(value: Any, tag: type) -> bool:
    if isinstance(value, tag):
        return True
    if isinstance(value, dict):
        return any(contains_tag(v, tag) for v in value.values())
    if isinstance(value, list | tuple):
        return any(contains_tag(v, tag) for v in value)
    return False


def contains_unknown(value: Any) -> bool:
    return contains_tag(value, _Unknown)


def lookup_path(attrs: dict[str, Any], path: str) -> tuple[bool, Any]:
    """Resolve a dotted *path* in *attrs*. Returns ``(found, value)``."""
    current: Any = attrs
    for segment in path.split("."):
        if current is UNKNOWN:
            return True, UNKNOWN
        if not isinstance(current, dict) or segment not in current:
            return False, None
        current = current[segment]
    return True, current
