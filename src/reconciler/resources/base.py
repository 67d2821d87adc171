"""Desired-state resource model."""

from __future__ import annotations

import re
from typing import Any, Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_serializer,
    field_validator,
    model_validator,
)

from reconciler.errors import ConditionEvaluationError
from reconciler.resources.references import (
    UNKNOWN,
    IndexKey,
    Placeholder,
    Reference,
    ResourceAddress,
    capture,
    contains_tag,
    encode,
    iter_references,
    lookup_path,
)

ConditionOperator = Literal[
    "eq", "ne", "in", "not_in", "contains", "matches", "present", "gt", "ge", "lt", "le"
]


class Condition(BaseModel):
    """A declarative check on one resource attribute.

    Preconditions run against the planned attributes, postconditions against
    the attributes the provider reports after apply.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    attribute: str
    operator: ConditionOperator = "eq"
    value: Any = None
    error_message: str = Field(min_length=1)

    def check(self, attrs: dict[str, Any]) -> bool | None:
        """Evaluate against *attrs*. ``None`` means the attribute is not known yet.

        Raises:
            ConditionEvaluationError: The operator does not apply to the values.
        """
        try:
            return self._evaluate(attrs)
        except (TypeError, re.error) as exc:
            raise ConditionEvaluationError(self.attribute, self.operator, exc) from exc

    def _evaluate(self, attrs: dict[str, Any]) -> bool | None:
        found, actual = lookup_path(attrs, self.attribute)
        if actual is UNKNOWN:
            return None
        if self.operator == "present":
            return found and actual is not None
        if not found:
            return False
        match self.operator:
            case "eq":
                return actual == self.value
            case "ne":
                return actual != self.value
            case "in":
                return actual in self.value
            case "not_in":
                return actual not in self.value
            case "contains":
                return isinstance(actual, str | list | dict) and self.value in actual
            case "matches":
                return isinstance(actual, str) and re.search(self.value, actual) is not None
            case "gt":
                return actual > self.value
            case "ge":
                return actual >= self.value
            case "lt":
                return actual < self.value
            case "le":
                return actual <= self.value
        return False


class Lifecycle(BaseModel):
    """Lifecycle options for a resource."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    prevent_destroy: bool = False
    create_before_destroy: bool = False
    ignore_changes: list[str] = Field(default_factory=list)
    preconditions: list[Condition] = Field(default_factory=list)
    postconditions: list[Condition] = Field(default_factory=list)


class ResourceConfig(BaseModel):
    """Desired state of one resource (or of a repeated resource template).

    Resources are pure data. Attribute values may hold ``Reference`` and
    ``Placeholder`` tags; the engine resolves them, providers never see them.
    """

    model_config = ConfigDict(extra="forbid")

    resource_type: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    name: str = Field(pattern=r"^[A-Za-z_][A-Za-z0-9_]*(-[A-Za-z0-9_]+)*$")
    index: IndexKey | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    sensitive: list[str] = Field(default_factory=list)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    # Meta-arguments
    depends_on: list[str] = Field(default_factory=list)
    count: int | list[Any] | None = None
    for_each: dict[str, Any] | list[str] | None = None

    @field_validator("attributes", mode="before")
    @classmethod
    def _capture_references(cls, v: Any) -> Any:
        return capture(v) if isinstance(v, dict) else v

    @field_validator("depends_on")
    @classmethod
    def _valid_addresses(cls, v: list[str]) -> list[str]:
        for address in v:
            ResourceAddress.parse(address)
        return v

    @field_serializer("attributes")
    def _encode_attributes(self, v: dict[str, Any]) -> dict[str, Any]:
        return encode(v)

    @model_validator(mode="after")
    def _check_meta_arguments(self) -> Self:
        if self.count is not None and self.for_each is not None:
            raise ValueError("count and for_each are mutually exclusive")
        if isinstance(self.count, int) and self.count < 0:
            raise ValueError("count must not be negative")
        if self.index is not None and self.is_repeated:
            raise ValueError("an expanded instance cannot carry count/for_each")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def address(self) -> str:
        """Unique address for this resource (e.g., 'group.prod' or 'vm.web[0]')."""
        return str(self.resource_address)

    @property
    def resource_address(self) -> ResourceAddress:
        return ResourceAddress(self.resource_type, self.name, self.index)

    @property
    def is_repeated(self) -> bool:
        return self.count is not None or self.for_each is not None

    def references(self) -> list[Reference]:
        """References to other resources found anywhere in the attributes."""
        return list(iter_references(self.attributes))

    def has_placeholders(self) -> bool:
        return contains_tag(self.attributes, Placeholder)
