"""Engine types (plan, changes, metadata, apply report)."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from reconciler.errors import ApplyError


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY_THEN_CREATE = "destroy-then-create"
    CREATE_BEFORE_DESTROY = "create-before-destroy"
    DELETE = "delete"
    NOOP = "no-op"

    @property
    def is_replace(self) -> bool:
        return self in (Action.DESTROY_THEN_CREATE, Action.CREATE_BEFORE_DESTROY)

    @property
    def destroys(self) -> bool:
        return self is Action.DELETE or self.is_replace


class PlanMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    workspace: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool
    refresh: bool
    state_lineage: str
    state_serial: int
    # Generation of every address the plan touches (0 = absent).
    generations: dict[str, int] = Field(default_factory=dict)
    config_digest: str
    engine_version: str


class ResourceChange(BaseModel):
    """One planned operation.

    Attributes:
        desired: Declared config (references still unresolved), None for deletes
        prior: Stored attributes before the change
        planned: Attribute values as far as they are known at plan time
        unknown: Attributes whose value is only known after apply
        diff: ``{attr: {"from": ..., "to": ...}}`` for changed attributes
        replace_reasons: Attributes (or ``tainted`` / ``requested``) forcing replacement
        depends_on: Concrete addresses this resource depends on
    """

    model_config = ConfigDict(frozen=True)

    address: str
    resource_type: str
    action: Action
    desired: dict[str, Any] | None = None
    prior: dict[str, Any] | None = None
    prior_external_id: str | None = None
    planned: dict[str, Any] | None = None
    unknown: list[str] = Field(default_factory=list)
    diff: dict[str, Any] | None = None
    replace_reasons: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    sensitive: list[str] = Field(default_factory=list)


class Plan(BaseModel):
    """Immutable, reviewable result of planning.

    Compute and execute are separate steps: a plan can be saved, inspected and
    applied later, as long as the state it was computed from has not moved.
    """

    model_config = ConfigDict(frozen=True)

    metadata: PlanMetadata
    changes: list[ResourceChange]
    # Repeated template address -> concrete instance addresses.
    bindings: dict[str, list[str]] = Field(default_factory=dict)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def get(self, address: str) -> ResourceChange | None:
        return next((c for c in self.changes if c.address == address), None)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        # Plans carry sensitive values.
        os.chmod(path, 0o600)

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class ResourceStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOOP = "no-op"


class ResourceOutcome(BaseModel):
    """Terminal status of one address after apply."""

    address: str
    action: Action
    status: ResourceStatus
    error_type: str | None = None
    error: str | None = None


class ApplyResult(BaseModel):
    """Per-address report of an apply run; never a single pass/fail flag."""

    outcomes: dict[str, ResourceOutcome] = Field(default_factory=dict)
    applied: list[ResourceChange] = Field(default_factory=list)
    canceled: bool = False

    def status(self, address: str) -> ResourceStatus:
        return self.outcomes[address].status

    def addresses_with(self, status: ResourceStatus) -> list[str]:
        return sorted(a for a, o in self.outcomes.items() if o.status == status)

    def failed_addresses(self) -> list[str]:
        return self.addresses_with(ResourceStatus.FAILED)

    @property
    def ok(self) -> bool:
        return not self.canceled and not any(
            o.status in (ResourceStatus.FAILED, ResourceStatus.SKIPPED)
            for o in self.outcomes.values()
        )

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.applied:
            counts[c.action.value] += 1
        return counts

    def status_counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ResourceStatus}
        for o in self.outcomes.values():
            counts[o.status.value] += 1
        return counts

    def raise_on_failure(self) -> None:
        if self.failed_addresses():
            raise ApplyError(self)


class DriftEntry(BaseModel):
    """Difference between recorded state and the live object."""

    address: str
    resource_type: str
    kind: Literal["changed", "vanished"]
    diff: dict[str, Any] = Field(default_factory=dict)
    sensitive: list[str] = Field(default_factory=list)
