from __future__ import annotations

import json
import stat
import threading
from pathlib import Path

import pytest

from reconciler.core.state import (
    InMemoryStateStore,
    LocalStateStore,
    ResourceInstance,
    StateStore,
    compute_attributes_hash,
)
from reconciler.errors import StateConflictError, StateUnavailableError


def _inst(address: str = "group.prod", generation: int = 0, **attrs: object) -> ResourceInstance:
    rtype, name = address.split(".", 1)
    return ResourceInstance(
        address=address,
        resource_type=rtype,
        name=name,
        external_id=f"{name}-id",
        attributes=dict(attrs),
        generation=generation,
    )


@pytest.fixture(params=["memory", "local"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> StateStore:
    if request.param == "memory":
        return InMemoryStateStore()
    return LocalStateStore(tmp_path / "state.json")


def test_put_assigns_generation_and_hash(any_store: StateStore) -> None:
    stored = any_store.put(_inst(location="westeurope"))

    assert stored.generation == 1
    assert stored.attributes_hash == compute_attributes_hash({"location": "westeurope"})
    assert any_store.get("group.prod") == stored
    assert any_store.snapshot().serial == 1


def test_stale_generation_rejected(any_store: StateStore) -> None:
    first = any_store.put(_inst(v=1))
    any_store.put(first.model_copy(update={"attributes": {"v": 2}}))

    with pytest.raises(StateConflictError) as exc_info:
        any_store.put(first.model_copy(update={"attributes": {"v": 3}}))

    assert exc_info.value.address == "group.prod"
    assert any_store.get("group.prod").attributes == {"v": 2}  # type: ignore[union-attr]


def test_create_over_existing_record_rejected(any_store: StateStore) -> None:
    any_store.put(_inst())

    with pytest.raises(StateConflictError):
        any_store.put(_inst())


def test_remove(any_store: StateStore) -> None:
    stored = any_store.put(_inst())

    with pytest.raises(StateConflictError):
        any_store.remove("group.prod", generation=stored.generation + 5)
    assert any_store.remove("group.prod", generation=stored.generation) is True
    assert any_store.remove("group.prod") is False
    assert any_store.get("group.prod") is None


def test_list_is_sorted(any_store: StateStore) -> None:
    any_store.put(_inst("vm.web"))
    any_store.put(_inst("group.prod"))

    assert [a for a, _ in any_store.list()] == ["group.prod", "vm.web"]


def test_concurrent_writes_to_distinct_addresses(any_store: StateStore) -> None:
    def _write(i: int) -> None:
        any_store.put(_inst(f"vm.n{i}", i=i))

    threads = [threading.Thread(target=_write, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    doc = any_store.snapshot()
    assert len(doc.resources) == 8
    assert doc.serial == 8
    assert sorted(i.generation for i in doc.resources.values()) == list(range(1, 9))


def test_local_store_atomic_file_backup_and_mode(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "state.json"
    store = LocalStateStore(path)
    store.put(_inst(v=1))
    stored = store.get("group.prod")
    assert stored is not None
    store.put(stored.model_copy(update={"attributes": {"v": 2}}))

    data = json.loads(path.read_text())
    assert data["version"] == 1
    assert data["serial"] == 2
    assert data["resources"]["group.prod"]["attributes"] == {"v": 2}

    backup = json.loads(Path(str(path) + ".backup").read_text())
    assert backup["serial"] == 1
    assert stat.S_IMODE(Path(str(path) + ".backup").stat().st_mode) == 0o600
    assert not [p for p in path.parent.iterdir() if p.name.startswith(".state.json.")]


def test_local_store_reload_from_disk(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    LocalStateStore(path).put(_inst(v=1))

    other = LocalStateStore(path)
    assert other.get("group.prod").attributes == {"v": 1}  # type: ignore[union-attr]


def test_unwritten_local_state_keeps_lineage(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path / "state.json")
    first = store.snapshot().lineage

    store.adopt_lineage("saved-plan-lineage")

    assert first != "saved-plan-lineage"
    assert store.snapshot().lineage == "saved-plan-lineage"
    assert not (tmp_path / "state.json").exists()


def test_adopt_lineage_ignored_once_written() -> None:
    store = InMemoryStateStore()
    store.put(_inst())
    lineage = store.snapshot().lineage

    store.adopt_lineage("other")

    assert store.snapshot().lineage == lineage


def test_unreadable_state_is_unavailable(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.mkdir()

    with pytest.raises(StateUnavailableError, match="Cannot read state"):
        LocalStateStore(path).snapshot()


def test_corrupt_state_is_unavailable(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json")

    with pytest.raises(StateUnavailableError, match="corrupt"):
        LocalStateStore(path).get("group.prod")


def test_unlockable_state_is_unavailable(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store = LocalStateStore(blocker / "state.json")

    with pytest.raises(StateUnavailableError, match="lock"):
        store.snapshot()
    with pytest.raises(StateUnavailableError):
        store.put(_inst())
