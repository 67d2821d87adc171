from __future__ import annotations

import pytest

from reconciler.errors import ConfigurationError, DuplicateKeyError, ValidationError
from reconciler.resources import Configuration, each, expand


def _expand(config: Configuration) -> dict[str, dict]:
    return {a: r.attributes for a, r in expand(config.resources).instances.items()}


def test_count_int_uses_ordinal_index() -> None:
    config = Configuration()
    config.declare("vm.web", {"name": "web-${count.index}", "slot": "${count.index}"}, count=2)

    instances = _expand(config)

    assert list(instances) == ["vm.web[0]", "vm.web[1]"]
    # Only whole-string placeholders are substituted.
    assert instances["vm.web[1]"] == {"name": "web-${count.index}", "slot": 1}


def test_count_list_allows_duplicates() -> None:
    config = Configuration()
    config.declare("vm.web", {"size": "${each.value}"}, count=["s", "s", "m"])

    instances = _expand(config)

    assert instances == {
        "vm.web[0]": {"size": "s"},
        "vm.web[1]": {"size": "s"},
        "vm.web[2]": {"size": "m"},
    }


def test_for_each_mapping_and_bindings() -> None:
    config = Configuration()
    config.declare(
        "group.env",
        {"name": "${each.key}", "location": "${each.value}"},
        for_each={"prod": "westeurope", "dev": "northeurope"},
    )

    expansion = expand(config.resources)

    assert expansion.instances['group.env["prod"]'].attributes == {
        "name": "prod",
        "location": "westeurope",
    }
    assert expansion.bindings["group.env"] == {
        "prod": 'group.env["prod"]',
        "dev": 'group.env["dev"]',
    }
    assert expansion.instance_addresses("group.env") == ['group.env["dev"]', 'group.env["prod"]']


def test_for_each_duplicate_key_rejected() -> None:
    config = Configuration()
    config.declare("group.env", {"name": "${each.key}"}, for_each=["a", "b", "a"])

    with pytest.raises(DuplicateKeyError, match="'a'"):
        expand(config.resources)


def test_count_and_for_each_are_exclusive() -> None:
    config = Configuration()
    with pytest.raises(ValidationError, match="mutually exclusive"):
        config.declare("vm.web", {}, count=1, for_each=["a"])


def test_placeholder_outside_repetition_rejected() -> None:
    config = Configuration()
    config.declare("vm.web", {"name": each("each.key")})

    with pytest.raises(ConfigurationError, match="only valid"):
        expand(config.resources)


def test_count_index_with_for_each_rejected() -> None:
    config = Configuration()
    config.declare("vm.web", {"n": "${count.index}"}, for_each=["a"])

    with pytest.raises(ConfigurationError, match="count.index"):
        expand(config.resources)


def test_keyed_repetition_stable_under_reordering() -> None:
    a = Configuration()
    a.declare("group.env", {"name": "${each.key}"}, for_each=["prod", "dev", "test"])
    b = Configuration()
    b.declare("group.env", {"name": "${each.key}"}, for_each=["test", "prod", "dev"])

    assert _expand(a) == _expand(b)


def test_ordinal_repetition_shifts_when_first_removed() -> None:
    before = Configuration()
    before.declare("vm.web", {"name": "${each.value}"}, count=["a", "b", "c"])
    after = Configuration()
    after.declare("vm.web", {"name": "${each.value}"}, count=["b", "c"])

    old, new = _expand(before), _expand(after)

    assert set(new) == {"vm.web[0]", "vm.web[1]"}
    assert old["vm.web[0]"] == {"name": "a"}
    assert new["vm.web[0]"] == {"name": "b"}
