from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from reconciler.core.state import compute_attributes_hash
from reconciler.engine import Action
from reconciler.errors import ApplyFailedError
from reconciler.resources import Configuration

if TYPE_CHECKING:
    from reconciler.core.state import InMemoryStateStore
    from reconciler.engine import Engine

    from .conftest import FakeProvider


def _config() -> Configuration:
    config = Configuration()
    config.declare("group.prod", {"name": "prod", "location": "westeurope"})
    config.declare("vm.web", {"name": "web", "size": "s"}, sensitive=["size"])
    return config


def test_refresh_without_persist_leaves_state(
    engine: Engine, provider: FakeProvider, store: InMemoryStateStore
) -> None:
    engine.apply(engine.plan(_config()))
    group_id = store.get("group.prod").external_id  # type: ignore[union-attr]
    provider.objects[group_id]["location"] = "northeurope"
    serial = store.snapshot().serial

    before, after = engine.refresh()

    assert before.resources["group.prod"].attributes["location"] == "westeurope"
    assert after.resources["group.prod"].attributes["location"] == "northeurope"
    assert store.snapshot().serial == serial


def test_refresh_persist_updates_and_drops_vanished(
    engine: Engine, provider: FakeProvider, store: InMemoryStateStore
) -> None:
    engine.apply(engine.plan(_config()))
    vm_id = store.get("vm.web").external_id  # type: ignore[union-attr]
    group_id = store.get("group.prod").external_id  # type: ignore[union-attr]
    provider.objects[group_id]["location"] = "northeurope"
    del provider.objects[vm_id]

    _, after = engine.refresh(persist=True)

    assert "vm.web" not in after.resources
    assert store.get("vm.web") is None
    assert store.get("group.prod").attributes["location"] == "northeurope"  # type: ignore[union-attr]


def test_refresh_tracks_attribute_hash(
    engine: Engine, provider: FakeProvider, store: InMemoryStateStore
) -> None:
    engine.apply(engine.plan(_config()))
    serial = store.snapshot().serial

    _, unchanged = engine.refresh(persist=True)
    assert store.snapshot().serial == serial
    assert unchanged.resources == store.snapshot().resources

    group_id = store.get("group.prod").external_id  # type: ignore[union-attr]
    provider.objects[group_id]["location"] = "northeurope"
    _, after = engine.refresh()

    refreshed = after.resources["group.prod"]
    assert refreshed.attributes_hash == compute_attributes_hash(refreshed.attributes)
    stored = store.get("group.prod")
    assert stored is not None
    assert refreshed.attributes_hash != stored.attributes_hash


def test_plan_with_refresh_recreates_vanished_object(
    engine: Engine, provider: FakeProvider, store: InMemoryStateStore
) -> None:
    engine.apply(engine.plan(_config()))
    del provider.objects[store.get("group.prod").external_id]  # type: ignore[union-attr]

    plan = engine.plan(_config(), refresh=True)

    assert plan.metadata.refresh
    assert plan.get("group.prod").action == Action.CREATE  # type: ignore[union-attr]
    assert plan.get("vm.web").action == Action.NOOP  # type: ignore[union-attr]


def test_drift_reports_changed_and_vanished(
    engine: Engine, provider: FakeProvider, store: InMemoryStateStore
) -> None:
    engine.apply(engine.plan(_config()))
    vm_id = store.get("vm.web").external_id  # type: ignore[union-attr]
    group_id = store.get("group.prod").external_id  # type: ignore[union-attr]
    provider.objects[vm_id]["size"] = "xl"
    del provider.objects[group_id]

    entries = {e.address: e for e in engine.drift()}

    assert entries["group.prod"].kind == "vanished"
    assert entries["vm.web"].kind == "changed"
    assert entries["vm.web"].diff == {"size": {"from": "s", "to": "xl"}}
    assert entries["vm.web"].sensitive == ["size"]
    # drift never writes state
    assert store.get("group.prod") is not None


def test_refresh_read_failure_names_address(
    engine: Engine, provider: FakeProvider, store: InMemoryStateStore
) -> None:
    engine.apply(engine.plan(_config()))
    group_id = store.get("group.prod").external_id  # type: ignore[union-attr]
    provider.failures[("read", group_id)] = ConnectionError("unreachable")

    with pytest.raises(ApplyFailedError, match="group.prod"):
        engine.plan(_config(), refresh=True)
