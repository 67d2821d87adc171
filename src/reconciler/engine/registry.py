"""Resource type registry for provider dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from reconciler.errors import UnknownResourceTypeError

if TYPE_CHECKING:
    from reconciler.core.provider import Provider, ResourceSchema


@dataclass(frozen=True)
class ResourceTypeRegistration:
    resource_type: str
    schema: ResourceSchema
    provider: Provider


class ResourceTypeRegistry:
    """Registry mapping resource_type -> (schema, provider)."""

    def __init__(self) -> None:
        self._registrations: dict[str, ResourceTypeRegistration] = {}

    def register(self, schema: ResourceSchema, provider: Provider) -> None:
        if schema.resource_type in self._registrations:
            raise ValueError(f"Resource type already registered: {schema.resource_type}")

        self._registrations[schema.resource_type] = ResourceTypeRegistration(
            resource_type=schema.resource_type,
            schema=schema,
            provider=provider,
        )

    def get(self, resource_type: str) -> ResourceTypeRegistration:
        try:
            return self._registrations[resource_type]
        except KeyError as e:
            raise UnknownResourceTypeError(resource_type) from e

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._registrations
