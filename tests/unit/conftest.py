"""Shared fixtures for unit tests."""

from __future__ import annotations

import itertools
import threading
import time
from typing import TYPE_CHECKING, Any

import pytest

from reconciler.config.schema import EngineSettings, Workspace
from reconciler.core.provider import Provider, ResourceSchema
from reconciler.core.state import InMemoryStateStore
from reconciler.engine import Engine, ResourceTypeRegistry

if TYPE_CHECKING:
    from pathlib import Path

_RECONCILE_ENV_VARS = (
    "RECONCILE_STATE_PATH",
    "RECONCILE_PARALLELISM",
    "RECONCILE_OPERATION_TIMEOUT",
    "RECONCILE_REFRESH",
    "RECONCILE_LOG",
)


@pytest.fixture(autouse=True)
def _clean_reconcile_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove RECONCILE_* env vars so unit tests don't leak host config."""
    for var in _RECONCILE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class FakeProvider(Provider):
    """In-memory provider with call recording and failure injection.

    Objects are keyed by external id. Failures and delays are keyed by
    ``(operation, key)`` where key is the ``name`` attribute for ``create``
    and the external id for every other operation.
    """

    def __init__(self, computed: dict[str, Any] | None = None) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], BaseException] = {}
        self.delays: dict[tuple[str, str], float] = {}
        self.computed = computed or {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _enter(self, op: str, key: str) -> None:
        with self._lock:
            self.calls.append((op, key))
        delay = self.delays.get((op, key))
        if delay:
            time.sleep(delay)
        failure = self.failures.get((op, key))
        if failure is not None:
            raise failure

    def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        self._enter("create", str(attributes.get("name")))
        with self._lock:
            external_id = f"{resource_type}-{next(self._ids)}"
            observed = {**attributes, **self.computed, "id": external_id}
            self.objects[external_id] = observed
        return external_id, dict(observed)

    def read(self, resource_type: str, external_id: str) -> dict[str, Any] | None:
        _ = resource_type
        self._enter("read", external_id)
        obj = self.objects.get(external_id)
        return dict(obj) if obj is not None else None

    def update(
        self, resource_type: str, external_id: str, attribute_diff: dict[str, Any]
    ) -> dict[str, Any]:
        _ = resource_type
        self._enter("update", external_id)
        with self._lock:
            self.objects[external_id].update(attribute_diff)
            return dict(self.objects[external_id])

    def delete(self, resource_type: str, external_id: str) -> None:
        _ = resource_type
        self._enter("delete", external_id)
        with self._lock:
            del self.objects[external_id]

    def ops(self, op: str) -> list[str]:
        return [key for o, key in self.calls if o == op]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(provider: FakeProvider) -> ResourceTypeRegistry:
    reg = ResourceTypeRegistry()
    reg.register(ResourceSchema(resource_type="group", force_new=frozenset({"location"})), provider)
    reg.register(
        ResourceSchema(
            resource_type="vm",
            force_new=frozenset({"image"}),
            compare={"tags": "set"},
        ),
        provider,
    )
    reg.register(
        ResourceSchema(resource_type="disk", records_partial_state=True),
        provider,
    )
    return reg


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    return Workspace(root=tmp_path, settings=EngineSettings(refresh=False, operation_timeout=None))


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def engine(
    workspace: Workspace, registry: ResourceTypeRegistry, store: InMemoryStateStore
) -> Engine:
    return Engine(workspace=workspace, registry=registry, store=store)
