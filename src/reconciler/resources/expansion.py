"""Expansion of repeated resources (``count`` / ``for_each``).

Runs before graph construction: every template is turned into concrete
instances with an index key, and placeholders in its attributes are
substituted. Expansion and graph building stay separate stages.

Ordinal repetition (``count``) keys instances by position, so removing or
reordering elements shifts later instances onto other elements. Keyed
repetition (``for_each``) keys instances by a unique string, so reordering the
input never changes which instance holds which value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from reconciler.errors import ConfigurationError, DuplicateAddressError, DuplicateKeyError
from reconciler.resources.references import IndexKey, Placeholder, transform

if TYPE_CHECKING:
    from collections.abc import Iterable

    from reconciler.resources.base import ResourceConfig

logger = logging.getLogger(__name__)


@dataclass
class Expansion:
    """Concrete instances plus the template -> {index key -> address} bindings."""

    instances: dict[str, ResourceConfig] = field(default_factory=dict)
    bindings: dict[str, dict[IndexKey, str]] = field(default_factory=dict)

    def instance_addresses(self, template: str) -> list[str]:
        """Addresses bound to a repeated template, ordered by index key."""
        binding = self.bindings.get(template, {})
        return [binding[k] for k in sorted(binding, key=lambda k: (isinstance(k, str), k))]


def _iter_keys(resource: ResourceConfig) -> list[tuple[IndexKey, Any, bool]]:
    """Return ``(key, each.value, ordinal)`` triples for a repeated resource."""
    if resource.count is not None:
        if isinstance(resource.count, int):
            return [(i, i, True) for i in range(resource.count)]
        return [(i, v, True) for i, v in enumerate(resource.count)]

    for_each = resource.for_each
    if isinstance(for_each, dict):
        items = list(for_each.items())
    else:
        items = [(k, k) for k in for_each or []]

    seen: set[Any] = set()
    for key, _ in items:
        if not isinstance(key, str):
            raise ConfigurationError(
                f"{resource.address}: for_each keys must be strings, got {type(key).__name__}"
            )
        if key in seen:
            raise DuplicateKeyError(resource.address, key)
        seen.add(key)
    return [(k, v, False) for k, v in items]


def _substitute(resource: ResourceConfig, key: IndexKey | None, value: Any, ordinal: bool) -> Any:
    def _replace(tag: Any) -> Any:
        if not isinstance(tag, Placeholder):
            return tag
        if key is None:
            raise ConfigurationError(
                f"{resource.address}: '{tag}' is only valid in a resource with count or for_each"
            )
        if tag.kind == "count.index" and not ordinal:
            raise ConfigurationError(f"{resource.address}: 'count.index' used with for_each")
        if tag.kind == "each.value":
            return value
        return key

    return transform(resource.attributes, _replace)


def expand(resources: Iterable[ResourceConfig]) -> Expansion:
    """Expand templates into concrete, uniquely addressed instances."""
    result = Expansion()
    for r in resources:
        if not r.is_repeated:
            if r.has_placeholders():
                _substitute(r, None, None, False)
            _add(result, r)
            continue

        binding: dict[IndexKey, str] = {}
        for key, value, ordinal in _iter_keys(r):
            inst = r.model_copy(
                update={
                    "index": key,
                    "count": None,
                    "for_each": None,
                    "attributes": _substitute(r, key, value, ordinal),
                }
            )
            _add(result, inst)
            binding[key] = inst.address
        result.bindings[r.address] = binding
        logger.debug("Expanded %s into %d instance(s)", r.address, len(binding))
    return result


def _add(result: Expansion, resource: ResourceConfig) -> None:
    if resource.address in result.instances:
        raise DuplicateAddressError(resource.address)
    result.instances[resource.address] = resource
