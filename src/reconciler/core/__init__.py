"""Core infrastructure components: state storage and the provider interface."""

from reconciler.core.provider import CompareStrategy, Provider, ResourceSchema
from reconciler.core.state import (
    InMemoryStateStore,
    LocalStateStore,
    ResourceInstance,
    StateDocument,
    StateStore,
)

__all__ = [
    "CompareStrategy",
    "InMemoryStateStore",
    "LocalStateStore",
    "Provider",
    "ResourceInstance",
    "ResourceSchema",
    "StateDocument",
    "StateStore",
]
