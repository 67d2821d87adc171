"""A configuration unit: the set of declared resources."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import pydantic

from reconciler.errors import DuplicateAddressError, InvalidAddressError, ValidationError
from reconciler.resources.base import Lifecycle, ResourceConfig
from reconciler.resources.references import ResourceAddress

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Mapping

logger = logging.getLogger(__name__)


class Configuration:
    """Declared resources, keyed by address.

    Example::

        config = Configuration()
        config.declare("group.prod", {"location": "westeurope"})
        config.declare(
            "vnet.main",
            {"group_id": "${group.prod.id}", "cidr": "10.0.0.0/16"},
            lifecycle={"prevent_destroy": True},
        )
    """

    def __init__(self, resources: Iterable[ResourceConfig] = ()) -> None:
        self._resources: dict[str, ResourceConfig] = {}
        for r in resources:
            self.add(r)

    def add(self, resource: ResourceConfig) -> ResourceConfig:
        if resource.address in self._resources:
            raise DuplicateAddressError(resource.address)
        self._resources[resource.address] = resource
        return resource

    def declare(
        self,
        address: str,
        attributes: Mapping[str, Any] | None = None,
        depends_on: Iterable[str] | None = None,
        *,
        sensitive: Iterable[str] = (),
        lifecycle: Lifecycle | Mapping[str, Any] | None = None,
        count: int | list[Any] | None = None,
        for_each: Mapping[str, Any] | list[str] | None = None,
    ) -> ResourceConfig:
        """Declare a resource; fails if *address* is already declared here."""
        addr = ResourceAddress.parse(address)
        if addr.index is not None:
            raise InvalidAddressError(address, "declare the template; use count/for_each to repeat")
        if str(addr) in self._resources:
            raise DuplicateAddressError(str(addr))

        try:
            resource = ResourceConfig(
                resource_type=addr.resource_type,
                name=addr.name,
                attributes=dict(attributes or {}),
                depends_on=list(depends_on or []),
                sensitive=list(sensitive),
                lifecycle=lifecycle if lifecycle is not None else Lifecycle(),
                count=count,
                for_each=(
                    for_each if for_each is None or isinstance(for_each, list) else dict(for_each)
                ),
            )
        except pydantic.ValidationError as exc:
            raise ValidationError([f"{address}: {e['msg']}" for e in exc.errors()]) from exc

        logger.debug("Declared %s", resource.address)
        return self.add(resource)

    def get(self, address: str) -> ResourceConfig | None:
        return self._resources.get(address)

    @property
    def resources(self) -> list[ResourceConfig]:
        return list(self._resources.values())

    def __iter__(self) -> Iterator[ResourceConfig]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, address: object) -> bool:
        return address in self._resources
