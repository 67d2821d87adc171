"""Workspace loading and convenience plan/apply API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from reconciler.config.loader import ConfigError, load_workspace
from reconciler.config.log import configure_logging
from reconciler.config.schema import EngineSettings, Workspace
from reconciler.engine.engine import Engine

if TYPE_CHECKING:
    import threading
    from collections.abc import Collection
    from pathlib import Path

    from reconciler.core.state import ResourceInstance, StateDocument
    from reconciler.engine.executor import ProgressCallback
    from reconciler.engine.registry import ResourceTypeRegistry
    from reconciler.engine.types import ApplyResult, DriftEntry, Plan
    from reconciler.resources.configuration import Configuration

__all__ = [
    "ConfigError",
    "EngineSettings",
    "Workspace",
    "apply",
    "configure_logging",
    "drift",
    "import_resource",
    "load",
    "load_workspace",
    "plan",
    "refresh",
]


def load(root: Path | str) -> Workspace:
    """Load the workspace rooted at *root*."""
    return load_workspace(root)


def plan(
    workspace: Workspace,
    configuration: Configuration,
    registry: ResourceTypeRegistry,
    *,
    destroy: bool = False,
    refresh: bool | None = None,
    replace: Collection[str] = (),
) -> Plan:
    """Plan changes for the given configuration."""
    engine = Engine(workspace=workspace, registry=registry)
    return engine.plan(configuration, destroy=destroy, refresh=refresh, replace=replace)


def apply(
    workspace: Workspace,
    plan_obj: Plan,
    registry: ResourceTypeRegistry,
    *,
    progress: ProgressCallback | None = None,
    cancel: threading.Event | None = None,
) -> ApplyResult:
    """Apply a previously computed plan."""
    engine = Engine(workspace=workspace, registry=registry)
    return engine.apply(plan_obj, progress=progress, cancel=cancel)


def import_resource(
    workspace: Workspace,
    registry: ResourceTypeRegistry,
    address: str,
    external_id: str,
) -> ResourceInstance:
    """Bind an existing external object to *address*."""
    return Engine(workspace=workspace, registry=registry).import_resource(address, external_id)


def refresh(
    workspace: Workspace, registry: ResourceTypeRegistry, *, persist: bool = False
) -> tuple[StateDocument, StateDocument]:
    """Refresh state from the live objects. Returns (pre_refresh, post_refresh)."""
    return Engine(workspace=workspace, registry=registry).refresh(persist=persist)


def drift(workspace: Workspace, registry: ResourceTypeRegistry) -> list[DriftEntry]:
    """Detect drift between state and the live objects."""
    return Engine(workspace=workspace, registry=registry).drift()
