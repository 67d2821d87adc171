"""Resource declarations."""

from reconciler.resources.base import Condition, Lifecycle, ResourceConfig
from reconciler.resources.configuration import Configuration
from reconciler.resources.expansion import Expansion, expand
from reconciler.resources.references import (
    UNKNOWN,
    Placeholder,
    Reference,
    ResourceAddress,
    each,
    ref,
)

__all__ = [
    "UNKNOWN",
    "Condition",
    "Configuration",
    "Expansion",
    "Lifecycle",
    "Placeholder",
    "Reference",
    "ResourceAddress",
    "ResourceConfig",
    "each",
    "expand",
    "ref",
]
