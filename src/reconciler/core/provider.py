"""Provider interface and per-type change policy."""

from __future__ import annotations

from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

CompareStrategy: TypeAlias = Literal["partial", "exact", "set"]


class ResourceSchema(BaseModel):
    """Change policy for one resource type, supplied alongside its provider.

    Attributes:
        resource_type: Type this policy applies to
        force_new: Attributes whose change requires destroying and recreating
            the object; every other attribute is updatable in place
        compare: Per-attribute comparison strategy:
            ``"partial"`` (default) compares only dict keys declared in config,
            ``"exact"`` uses strict equality,
            ``"set"`` compares lists ignoring order
        records_partial_state: The provider may raise ``PartialApplyError``
            and the engine should record the reported partial object
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    resource_type: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    force_new: frozenset[str] = frozenset()
    compare: dict[str, CompareStrategy] = Field(default_factory=dict)
    records_partial_state: bool = False


class Provider:
    """Base class for providers.

    Providers translate engine operations into calls against the external
    system. They receive fully resolved attribute values, never references.
    Subclass and override the CRUD methods; raise any exception on failure.
    """

    def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create the object. Return ``(external_id, observed_attributes)``."""
        raise NotImplementedError

    def read(self, resource_type: str, external_id: str) -> dict[str, Any] | None:
        """Read the object. Return None if it no longer exists."""
        raise NotImplementedError

    def update(
        self, resource_type: str, external_id: str, attribute_diff: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply changed attributes in place. Return observed attributes."""
        raise NotImplementedError

    def delete(self, resource_type: str, external_id: str) -> None:
        """Delete the object."""
        raise NotImplementedError
