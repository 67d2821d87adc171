from __future__ import annotations

import pytest

from reconciler.engine.graph import DependencyGraph, build_dependency_graph
from reconciler.errors import DependencyCycleError, UnresolvedReferenceError
from reconciler.resources import Configuration, expand


def test_topological_order_is_deterministic() -> None:
    g = DependencyGraph(
        nodes=["c", "b", "a"],
        dependencies={"c": ["b"], "b": [], "a": []},
    )
    assert g.topological_order() == ["a", "b", "c"]
    assert g.reverse_topological_order() == ["c", "b", "a"]


def test_dependencies_outside_graph_are_ignored() -> None:
    g = DependencyGraph(nodes=["a"], dependencies={"a": ["external"]})
    assert g.topological_order() == ["a"]


def test_cycle_detection_reports_sequence() -> None:
    g = DependencyGraph(
        nodes=["a", "b", "c", "d"],
        dependencies={"a": ["c"], "b": ["a"], "c": ["b"], "d": []},
    )
    with pytest.raises(DependencyCycleError) as exc_info:
        g.topological_order()

    cycle = exc_info.value.addresses
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "d" not in cycle
    assert " -> ".join(cycle) in str(exc_info.value)


def test_transitive_dependents() -> None:
    g = DependencyGraph(
        nodes=["a", "b", "c", "d"],
        dependencies={"b": ["a"], "c": ["b"], "d": []},
    )
    assert g.transitive_dependents("a") == ["b", "c"]
    assert g.dependents_of("a") == ["b"]
    assert g.dependencies_of("c") == ["b"]


def _config() -> Configuration:
    config = Configuration()
    config.declare("group.prod", {"name": "prod"})
    config.declare("vm.web", {"name": "web-${count.index}", "group": "${group.prod.id}"}, count=2)
    config.declare("lb.front", {"backends": "${vm.web.id}"})
    config.declare("dns.front", {"first": "${vm.web[0].ip}"}, depends_on=["lb.front"])
    return config


def test_build_graph_implicit_and_explicit_edges() -> None:
    graph, dep_map = build_dependency_graph(expand(_config().resources))

    assert dep_map["vm.web[0]"] == ["group.prod"]
    # Unindexed reference fans out to every instance.
    assert dep_map["lb.front"] == ["vm.web[0]", "vm.web[1]"]
    # Indexed reference binds to one instance; depends_on kept verbatim.
    assert dep_map["dns.front"] == ["lb.front", "vm.web[0]"]

    order = graph.topological_order()
    position = {a: i for i, a in enumerate(order)}
    for node, deps in dep_map.items():
        for dep in deps:
            assert position[dep] < position[node]


def test_unresolved_reference_names_attribute() -> None:
    config = Configuration()
    config.declare("vm.web", {"group": "${group.missing.id}"})

    with pytest.raises(UnresolvedReferenceError) as exc_info:
        build_dependency_graph(expand(config.resources))

    assert exc_info.value.attribute == "group"
    assert exc_info.value.target == "group.missing"
    assert "vm.web" in str(exc_info.value)


def test_unresolved_depends_on() -> None:
    config = Configuration()
    config.declare("vm.web", {}, depends_on=["group.missing"])

    with pytest.raises(UnresolvedReferenceError, match="depends_on"):
        build_dependency_graph(expand(config.resources))


def test_index_out_of_range_is_unresolved() -> None:
    config = Configuration()
    config.declare("vm.web", {"name": "x"}, count=1)
    config.declare("dns.a", {"ip": "${vm.web[3].ip}"})

    with pytest.raises(UnresolvedReferenceError, match=r"vm.web\[3\]"):
        build_dependency_graph(expand(config.resources))


def test_cycle_between_resources() -> None:
    config = Configuration()
    config.declare("a.one", {"x": "${b.two.id}"})
    config.declare("b.two", {"y": "${a.one.id}"})

    with pytest.raises(DependencyCycleError, match="a.one"):
        build_dependency_graph(expand(config.resources))
