"""Engine error types.

Configuration and state errors are raised before any external side effect.
Per-address errors (``ResourceError`` subclasses) are captured into the apply
report instead of aborting the whole run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from reconciler.engine.types import ApplyResult


class EngineError(Exception):
    """Base exception for engine errors."""


# ── Configuration errors ────────────────────────────────────────────


class ConfigurationError(EngineError):
    """The declared configuration cannot be planned."""


class InvalidAddressError(ConfigurationError):
    """Raised when a string cannot be parsed as a resource address or reference."""

    def __init__(self, value: str, reason: str) -> None:
        super().__init__(f"Invalid address '{value}': {reason}")
        self.value = value


class UnknownResourceTypeError(ConfigurationError):
    """Raised when a resource type has no registration/provider."""

    def __init__(self, resource_type: str) -> None:
        super().__init__(f"Unknown resource type: {resource_type}")
        self.resource_type = resource_type


class DuplicateAddressError(ConfigurationError):
    """Raised when multiple desired resources share the same address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Duplicate resource address: {address}")
        self.address = address


class DuplicateKeyError(ConfigurationError):
    """Raised when keyed repetition is given the same key twice."""

    def __init__(self, address: str, key: str) -> None:
        super().__init__(f"Duplicate for_each key '{key}' in {address}")
        self.address = address
        self.key = key


class DependencyCycleError(ConfigurationError):
    """Raised when dependencies contain a cycle."""

    def __init__(self, addresses: list[str]) -> None:
        msg = "Dependency cycle detected"
        if addresses:
            msg += f": {' -> '.join(addresses)}"
        super().__init__(msg)
        self.addresses = addresses


class UnresolvedReferenceError(ConfigurationError):
    """Raised when an attribute or depends_on entry targets an undeclared address."""

    def __init__(self, address: str, attribute: str | None, target: str) -> None:
        where = f"attribute '{attribute}'" if attribute else "depends_on"
        super().__init__(f"Resource '{address}' {where} references unknown address '{target}'")
        self.address = address
        self.attribute = attribute
        self.target = target


class DestructionForbiddenError(ConfigurationError):
    """Raised when a plan would destroy a resource with ``prevent_destroy``."""

    def __init__(self, address: str, action: str) -> None:
        super().__init__(
            f"Resource '{address}' has lifecycle.prevent_destroy set, "
            f"but the plan calls for it to be destroyed ({action})"
        )
        self.address = address
        self.action = action


class PreconditionError(ConfigurationError):
    """One or more preconditions failed during planning."""

    def __init__(self, failures: list[tuple[str, str]], blocked: list[str]) -> None:
        self.failures = failures
        self.blocked = blocked
        lines = [f"  - {address}: {message}" for address, message in failures]
        msg = "Precondition failed:\n" + "\n".join(lines)
        if blocked:
            msg += f"\n  Blocked dependents: {', '.join(blocked)}"
        super().__init__(msg)


class ConditionEvaluationError(ConfigurationError):
    """A condition cannot be evaluated against the value it checks."""

    def __init__(self, attribute: str, operator: str, cause: Exception) -> None:
        super().__init__(
            f"attribute '{attribute}': cannot evaluate '{operator}' "
            f"({type(cause).__name__}: {cause})"
        )
        self.attribute = attribute
        self.operator = operator
        self.cause = cause


class ValidationError(ConfigurationError):
    """One or more resources failed plan validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)


# ── State errors ────────────────────────────────────────────────────


class StateError(EngineError):
    """The state store blocks planning or applying; retry after fixing it."""


class StateUnavailableError(StateError):
    """Raised when the state backing medium cannot be read or written."""


class StateConflictError(StateError):
    """Raised when a write carries a stale generation counter."""

    def __init__(self, address: str, expected: int, actual: int) -> None:
        super().__init__(
            f"State conflict on {address}: write based on generation {expected}, "
            f"stored generation is {actual}"
        )
        self.address = address
        self.expected = expected
        self.actual = actual


class StateLockError(StateUnavailableError):
    """Raised when the state lock cannot be acquired or released."""


class StalePlanError(StateError):
    """Raised when applying a plan against a different state than planned."""


# ── Per-address apply errors ────────────────────────────────────────


class ResourceError(EngineError):
    """An error localized to one resource address."""

    def __init__(self, address: str, message: str) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address


class ApplyFailedError(ResourceError):
    """The provider call for an address failed."""

    def __init__(self, address: str, cause: BaseException) -> None:
        super().__init__(address, f"{type(cause).__name__}: {cause}")
        self.cause = cause


class ApplyTimeoutError(ResourceError):
    """The provider call did not finish within the operation timeout."""

    def __init__(self, address: str, timeout: float) -> None:
        super().__init__(address, f"provider call timed out after {timeout:g}s")
        self.timeout = timeout


class PostconditionError(ResourceError):
    """A postcondition failed after the provider call succeeded."""


class DeferredPreconditionError(ResourceError):
    """A precondition that could only be checked at apply time failed."""


class ExternalObjectNotFoundError(ResourceError):
    """Raised by import when the provider does not know the external id."""

    def __init__(self, address: str, external_id: str) -> None:
        super().__init__(address, f"external object '{external_id}' not found")
        self.external_id = external_id


class AddressAlreadyBoundError(ResourceError):
    """Raised by import when the address already has state."""

    def __init__(self, address: str) -> None:
        super().__init__(address, "address is already managed; import does not overwrite")


class ResourceNotTrackedError(ResourceError):
    """Raised when a state operation names an address with no state."""

    def __init__(self, address: str) -> None:
        super().__init__(address, "address is not tracked in state")


# ── Provider-facing ─────────────────────────────────────────────────


class PartialApplyError(Exception):
    """Raised by providers when an operation took partial effect.

    The engine records ``observed`` under ``external_id`` so the object is not
    lost, then reports the address as failed.
    """

    def __init__(self, external_id: str, observed: dict[str, Any], message: str) -> None:
        super().__init__(message)
        self.external_id = external_id
        self.observed = observed


# ── Run-level ───────────────────────────────────────────────────────


class ApplyError(EngineError):
    """Raised on request when an apply finished with failed addresses.

    Carries the full per-address report.
    """

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        failed = result.failed_addresses()
        super().__init__(f"Apply failed on {', '.join(failed)}")


class ApplyCanceled(EngineError):
    """Raised when an apply is interrupted (e.g., Ctrl-C) after draining in-flight calls."""

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        super().__init__("Apply canceled")
