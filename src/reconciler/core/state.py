"""State storage for tracking provisioned resources.

The state store is the only shared mutable resource of an apply. Writes are
serialized per address; each write is checked against the generation the
writer last read (optimistic concurrency), so a stale writer is rejected with
``StateConflictError`` instead of silently overwriting a newer record.
"""

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import threading
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, Field

from reconciler.core.lock import StateLock
from reconciler.errors import StateConflictError, StateUnavailableError
from reconciler.resources.references import IndexKey

logger = logging.getLogger(__name__)

STATE_VERSION = 1

T = TypeVar("T")


def _canonical_json(obj: Any) -> str:
    # Stable encoding for hashes. `default=str` keeps it robust for
    # datetimes/paths/etc while staying deterministic enough for our use.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_attributes_hash(attrs: Mapping[str, Any]) -> str:
    """Compute a stable hash for a resource's stored attributes."""
    payload = _canonical_json(attrs)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _now() -> datetime:
    return datetime.now(UTC)


class ResourceInstance(BaseModel):
    """A tracked resource instance in the state.

    Attributes:
        address: Unique resource address (e.g., "group.prod", "vm.web[0]")
        resource_type: Type of the resource (e.g., "group")
        name: Resource name (e.g., "prod")
        index: Index key for repeated resources
        external_id: Provider-assigned identifier of the external object
        attributes: Last observed attribute values, sensitive ones included
        attributes_hash: SHA256 hash for change detection
        sensitive: Names of attributes never shown in plan/apply output
        dependencies: Addresses this instance depended on when last applied
        prevent_destroy: Lifecycle flag kept so removals from config stay guarded
        tainted: Object is known to be degraded and must be replaced
        generation: Write counter used for optimistic concurrency
    """

    address: str
    resource_type: str
    name: str
    index: IndexKey | None = None
    external_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    attributes_hash: str = ""
    sensitive: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    prevent_destroy: bool = False
    tainted: bool = False
    generation: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class StateDocument(BaseModel):
    """Versioned state layout.

    Attributes:
        version: State format version
        lineage: Identity of this state; plans are bound to it
        serial: Bumped on every write
        resources: Mapping of resource addresses to instances
    """

    version: int = STATE_VERSION
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    resources: dict[str, ResourceInstance] = Field(default_factory=dict)

    def generation_of(self, address: str) -> int:
        inst = self.resources.get(address)
        return inst.generation if inst is not None else 0


class StateStore:
    """Authoritative record of what is believed to be provisioned.

    Subclasses provide ``_read`` (a consistent snapshot) and ``_update``
    (an atomic read-modify-write of the whole document).
    """

    def __init__(self) -> None:
        self._locks_guard = threading.Lock()
        self._address_locks: dict[str, threading.Lock] = {}

    # -- backend hooks -------------------------------------------------

    def _read(self) -> StateDocument:
        raise NotImplementedError

    def _update(self, fn: Callable[[StateDocument], T]) -> T:
        raise NotImplementedError

    # -- public API ----------------------------------------------------

    def _address_lock(self, address: str) -> threading.Lock:
        with self._locks_guard:
            return self._address_locks.setdefault(address, threading.Lock())

    def snapshot(self) -> StateDocument:
        return self._read()

    def get(self, address: str) -> ResourceInstance | None:
        return self._read().resources.get(address)

    def list(self) -> list[tuple[str, ResourceInstance]]:
        return sorted(self._read().resources.items())

    def put(self, instance: ResourceInstance) -> ResourceInstance:
        """Write *instance*; ``instance.generation`` must equal the stored generation.

        Returns the stored record with its new generation.
        """
        address = instance.address

        def _write(doc: StateDocument) -> ResourceInstance:
            current = doc.generation_of(address)
            if instance.generation != current:
                raise StateConflictError(address, instance.generation, current)
            doc.serial += 1
            stored = instance.model_copy(
                update={
                    "generation": doc.serial,
                    "attributes_hash": compute_attributes_hash(instance.attributes),
                    "updated_at": _now(),
                },
                deep=True,
            )
            doc.resources[address] = stored
            return stored.model_copy(deep=True)

        with self._address_lock(address):
            stored = self._update(_write)
        logger.debug("State put %s generation=%d", address, stored.generation)
        return stored

    def remove(self, address: str, *, generation: int | None = None) -> bool:
        """Remove *address*. Returns False if it was not tracked."""

        def _delete(doc: StateDocument) -> bool:
            current = doc.generation_of(address)
            if generation is not None and generation != current:
                raise StateConflictError(address, generation, current)
            if address not in doc.resources:
                return False
            del doc.resources[address]
            doc.serial += 1
            return True

        with self._address_lock(address):
            removed = self._update(_delete)
        logger.debug("State remove %s removed=%s", address, removed)
        return removed

    def adopt_lineage(self, lineage: str) -> None:
        """Bind a never-written state to *lineage* (saved-plan bootstrap)."""

        def _adopt(doc: StateDocument) -> None:
            if doc.serial == 0 and not doc.resources:
                doc.lineage = lineage

        self._update(_adopt)


class InMemoryStateStore(StateStore):
    """State kept in process memory."""

    def __init__(self, document: StateDocument | None = None) -> None:
        super().__init__()
        self._doc = document or StateDocument()
        self._doc_lock = threading.Lock()

    def _read(self) -> StateDocument:
        with self._doc_lock:
            return self._doc.model_copy(deep=True)

    def _update(self, fn: Callable[[StateDocument], T]) -> T:
        with self._doc_lock:
            working = self._doc.model_copy(deep=True)
            result = fn(working)
            self._doc = working
            return result


class LocalStateStore(StateStore):
    """State kept in a local JSON file.

    - Writes atomically (temp file + fsync + rename), mode 0600
    - Keeps a ``.backup`` copy of the previous state when overwriting
    - Takes a shared file lock to read and an exclusive one to write, so
      other processes never observe a torn document
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._doc_lock = threading.Lock()
        # Lineage for a state that has never been written.
        self._unwritten = StateDocument()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> StateDocument:
        try:
            if not self._path.exists():
                return self._unwritten.model_copy(deep=True)
            return StateDocument.model_validate_json(self._path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise StateUnavailableError(f"Cannot read state {self._path}: {exc}") from exc
        except pydantic.ValidationError as exc:
            raise StateUnavailableError(f"State {self._path} is corrupt: {exc}") from exc

    def _save(self, doc: StateDocument) -> None:
        path = self._path
        backup_path = Path(str(path) + ".backup")
        content = json.dumps(doc.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Avoid TOCTOU race between exists() and read_bytes().
            with contextlib.suppress(FileNotFoundError):
                backup_path.write_bytes(path.read_bytes())
                backup_path.chmod(0o600)

            fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
            tmp_file = Path(tmp_path)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                tmp_file.replace(path)
            finally:
                with contextlib.suppress(FileNotFoundError):
                    tmp_file.unlink()
        except OSError as exc:
            raise StateUnavailableError(f"Cannot write state {path}: {exc}") from exc
        logger.debug("State saved: serial=%d path=%s", doc.serial, path)

    def _read(self) -> StateDocument:
        with StateLock(self._path, shared=True):
            return self._load()

    def _update(self, fn: Callable[[StateDocument], T]) -> T:
        with self._doc_lock, StateLock(self._path):
            doc = self._load()
            before = doc.serial
            result = fn(doc)
            if doc.serial != before:
                self._save(doc)
            elif not self._path.exists():
                self._unwritten = doc
            return result
