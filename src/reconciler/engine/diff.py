"""Attribute comparison and reference resolution."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from reconciler.resources.references import (
    Placeholder,
    Reference,
    contains_unknown,
    iter_references,
    lookup_path,
    transform,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Mapping

    from reconciler.core.provider import CompareStrategy
    from reconciler.core.state import ResourceInstance


def values_differ(
    desired: Any,
    prior: Any,
    *,
    strategy: CompareStrategy | None = None,
) -> bool:
    """Check whether a desired value differs from the prior (stored) value.

    Comparison semantics depend on *strategy*:

    - ``strategy="set"``:
      - If both values are lists, they are compared as sets (order-insensitive).
      - Other types fall back to strict equality.
    - ``strategy="exact"``:
      - Values are compared with strict equality.
      - For dicts, extra or missing keys are treated as differences.
    - ``strategy=None`` or ``"partial"``:
      - For dict values, only keys present in *desired* are compared.
      - Extra keys present only in *prior* (provider-added defaults) are ignored.
      - Non-dict values use strict equality.
    """
    if contains_unknown(desired):
        return True

    if strategy == "set":
        if isinstance(desired, list) and isinstance(prior, list):
            return _as_set(desired) != _as_set(prior)
        return desired != prior

    if strategy == "exact":
        return desired != prior

    if isinstance(desired, dict) and isinstance(prior, dict):
        return any(values_differ(v, prior.get(k), strategy="exact") for k, v in desired.items())
    return desired != prior


def _as_set(values: list[Any]) -> set[Any]:
    # Unhashable members (dicts, lists) compare through their canonical repr.
    return {v if isinstance(v, str | int | float | bool | None) else repr(v) for v in values}


def compute_diff(
    planned: Mapping[str, Any],
    prior: Mapping[str, Any],
    *,
    strategies: Mapping[str, CompareStrategy],
    ignore: Collection[str] = (),
) -> dict[str, dict[str, Any]]:
    """Return ``{attr: {"from": prior, "to": planned}}`` for changed attributes.

    Only attributes declared in *planned* are compared; attributes in *ignore*
    never appear. Unknown planned values always count as changed.
    """
    diff: dict[str, dict[str, Any]] = {}
    for key, value in planned.items():
        if key in ignore:
            continue
        if values_differ(value, prior.get(key), strategy=strategies.get(key)):
            diff[key] = {
                "from": prior.get(key),
                "to": None if contains_unknown(value) else value,
            }
    return diff


def instance_value(inst: ResourceInstance, attribute: str) -> Any:
    """Value of *attribute* on a tracked object; ``id`` falls back to the external id."""
    found, value = lookup_path(inst.attributes, attribute)
    if found:
        return value
    if attribute == "id":
        return inst.external_id
    return None


def resolve_attributes(
    attributes: Mapping[str, Any],
    lookup: Callable[[str, str], Any],
    bindings: Mapping[str, list[str]],
) -> dict[str, Any]:
    """Substitute references using ``lookup(address, attribute)``.

    An unindexed reference to a repeated resource resolves to the list of
    values of all its instances, in index order.
    """

    def _resolve(tag: Reference | Placeholder) -> Any:
        if isinstance(tag, Placeholder):
            raise ValueError(f"Unexpanded placeholder '{tag}'")
        target = str(tag.target)
        if tag.target.index is None and target in bindings:
            return [lookup(address, tag.attribute) for address in bindings[target]]
        return lookup(target, tag.attribute)

    return {k: transform(v, _resolve) for k, v in attributes.items()}


def inherited_sensitive(
    attributes: Mapping[str, Any],
    sensitive_of: Callable[[str], Collection[str]],
    bindings: Mapping[str, list[str]],
) -> list[str]:
    """Attributes whose references read a sensitive attribute of their target."""
    names: list[str] = []
    for key, value in attributes.items():
        for reference in iter_references(value):
            target = str(reference.target)
            if reference.target.index is None and target in bindings:
                targets = bindings[target]
            else:
                targets = [target]
            top = reference.attribute.split(".", 1)[0]
            if any(top in sensitive_of(t) for t in targets):
                names.append(key)
                break
    return names
