"""Plan and apply engine."""

from reconciler.engine.engine import Engine
from reconciler.engine.executor import ApplyExecutor
from reconciler.engine.graph import DependencyGraph, build_dependency_graph
from reconciler.engine.registry import ResourceTypeRegistration, ResourceTypeRegistry
from reconciler.engine.types import (
    Action,
    ApplyResult,
    DriftEntry,
    Plan,
    PlanMetadata,
    ResourceChange,
    ResourceOutcome,
    ResourceStatus,
)

__all__ = [
    "Action",
    "ApplyExecutor",
    "ApplyResult",
    "DependencyGraph",
    "DriftEntry",
    "Engine",
    "Plan",
    "PlanMetadata",
    "ResourceChange",
    "ResourceOutcome",
    "ResourceStatus",
    "ResourceTypeRegistration",
    "ResourceTypeRegistry",
    "build_dependency_graph",
]
