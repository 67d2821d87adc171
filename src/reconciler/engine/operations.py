"""Apply operations.

Apply executes a graph of operations. Each operation knows how to apply
itself and lists the operations it waits for:

- ``deps``: must have *succeeded*; a failed or skipped dep skips this node
- ``soft_deps``: must have *finished*, whatever the outcome (ordering only)

A replacement is split into two nodes, a destroy phase and a create phase,
ordered according to the resource's ``create_before_destroy`` lifecycle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from reconciler.core.state import ResourceInstance
from reconciler.engine.diff import instance_value, resolve_attributes, values_differ
from reconciler.engine.types import Action
from reconciler.errors import (
    ApplyFailedError,
    ApplyTimeoutError,
    ConditionEvaluationError,
    DeferredPreconditionError,
    PartialApplyError,
    PostconditionError,
    ResourceError,
)
from reconciler.resources.base import ResourceConfig

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from reconciler.core.state import StateDocument, StateStore
    from reconciler.engine.registry import ResourceTypeRegistration, ResourceTypeRegistry
    from reconciler.engine.types import Plan, ResourceChange

logger = logging.getLogger(__name__)

BARRIER_KEY = "__engine__.apply_barrier"


def _call_with_timeout(fn: Callable[..., Any], args: tuple[Any, ...], timeout: float) -> Any:
    """Run ``fn(*args)`` in its own thread and wait at most *timeout* seconds.

    Raises ``TimeoutError`` when the call is still running; the call itself
    cannot be aborted and is left to finish in the background.
    """
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["value"] = fn(*args)
        except BaseException as exc:  # re-raised in the caller thread
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name=f"provider-{fn.__name__}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise TimeoutError
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


@dataclass
class ApplyContext:
    """Everything an operation needs; shared by all workers."""

    registry: ResourceTypeRegistry
    store: StateStore
    bindings: Mapping[str, list[str]]
    timeout: float | None = None

    def call(self, address: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Invoke a provider method, mapping failures to per-address errors."""
        try:
            if self.timeout is None:
                return fn(*args)
            return _call_with_timeout(fn, args, self.timeout)
        except TimeoutError as exc:
            raise ApplyTimeoutError(address, self.timeout or 0) from exc
        except (PartialApplyError, ResourceError):
            raise
        except Exception as exc:
            raise ApplyFailedError(address, exc) from exc

    def lookup(self, address: str, attribute: str) -> Any:
        inst = self.store.get(address)
        if inst is None:
            raise ResourceError(address, "referenced resource has no state")
        return instance_value(inst, attribute)

    def resolve(self, resource: ResourceConfig) -> dict[str, Any]:
        return resolve_attributes(resource.attributes, self.lookup, self.bindings)


class Operation(Protocol):
    key: str
    deps: list[str]
    soft_deps: list[str]
    change: ResourceChange | None

    def run(self, ctx: ApplyContext) -> None:
        """Execute this operation; raise on failure."""


@dataclass
class BarrierOperation:
    """A no-op node used to enforce ordering between operation phases."""

    key: str
    deps: list[str] = field(default_factory=list)
    soft_deps: list[str] = field(default_factory=list)
    change: ResourceChange | None = None

    def run(self, ctx: ApplyContext) -> None:
        _ = ctx


def _desired_object(change: ResourceChange) -> ResourceConfig:
    if change.desired is None:
        raise ValueError(f"Missing desired config for {change.action.value}: {change.address}")

    desired_obj = ResourceConfig.model_validate(change.desired)
    if desired_obj.address != change.address:
        raise ValueError(
            f"Desired address mismatch: {change.address} != {desired_obj.address}"
        )
    return desired_obj


def _check_preconditions(resource: ResourceConfig, attrs: dict[str, Any]) -> None:
    for cond in resource.lifecycle.preconditions:
        try:
            passed = cond.check(attrs)
        except ConditionEvaluationError as exc:
            raise DeferredPreconditionError(resource.address, str(exc)) from exc
        if passed is False:
            raise DeferredPreconditionError(resource.address, cond.error_message)


def _check_postconditions(resource: ResourceConfig, observed: dict[str, Any]) -> None:
    for cond in resource.lifecycle.postconditions:
        try:
            passed = cond.check(observed)
        except ConditionEvaluationError as exc:
            raise PostconditionError(resource.address, str(exc)) from exc
        if not passed:
            raise PostconditionError(resource.address, cond.error_message)


def _record_partial(
    ctx: ApplyContext,
    reg: ResourceTypeRegistration,
    exc: PartialApplyError,
    inst: ResourceInstance,
) -> None:
    """Keep a partially applied object in state when the type declares it can happen."""
    if not reg.schema.records_partial_state:
        return
    ctx.store.put(
        inst.model_copy(update={"external_id": exc.external_id, "attributes": exc.observed})
    )
    logger.warning("Recorded partial state for %s", inst.address)


@dataclass
class CreateOperation:
    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)
    soft_deps: list[str] = field(default_factory=list)

    def run(self, ctx: ApplyContext) -> None:
        assert self.change is not None
        change = self.change
        reg = ctx.registry.get(change.resource_type)
        resource = _desired_object(change)
        attrs = ctx.resolve(resource)
        _check_preconditions(resource, attrs)

        # Create-before-destroy overwrites the old record, whose object is
        # deleted afterwards by the deposed-destroy node.
        prior = ctx.store.get(change.address)
        inst = ResourceInstance(
            address=change.address,
            resource_type=change.resource_type,
            name=resource.name,
            index=resource.index,
            external_id="",
            sensitive=list(change.sensitive),
            dependencies=list(change.depends_on),
            prevent_destroy=resource.lifecycle.prevent_destroy,
            generation=prior.generation if prior is not None else 0,
        )

        try:
            external_id, observed = ctx.call(
                change.address, reg.provider.create, change.resource_type, attrs
            )
        except PartialApplyError as exc:
            _record_partial(ctx, reg, exc, inst.model_copy(update={"tainted": True}))
            raise ApplyFailedError(change.address, exc) from exc

        ctx.store.put(inst.model_copy(update={"external_id": external_id, "attributes": observed}))
        _check_postconditions(resource, observed)


@dataclass
class UpdateOperation:
    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)
    soft_deps: list[str] = field(default_factory=list)

    def run(self, ctx: ApplyContext) -> None:
        assert self.change is not None
        change = self.change
        reg = ctx.registry.get(change.resource_type)
        resource = _desired_object(change)
        attrs = ctx.resolve(resource)
        _check_preconditions(resource, attrs)

        prior = ctx.store.get(change.address)
        if prior is None:
            raise ResourceError(change.address, "no state to update")

        ignore = set(resource.lifecycle.ignore_changes)
        attribute_diff = {
            k: v
            for k, v in attrs.items()
            if k not in ignore
            and values_differ(v, prior.attributes.get(k), strategy=reg.schema.compare.get(k))
        }
        updated = prior.model_copy(
            update={
                "sensitive": list(change.sensitive),
                "dependencies": list(change.depends_on),
                "prevent_destroy": resource.lifecycle.prevent_destroy,
            }
        )

        if not attribute_diff:
            # Values that were unknown at plan time turned out unchanged.
            observed = prior.attributes
        else:
            try:
                observed = ctx.call(
                    change.address,
                    reg.provider.update,
                    change.resource_type,
                    prior.external_id,
                    attribute_diff,
                )
            except PartialApplyError as exc:
                _record_partial(ctx, reg, exc, updated)
                raise ApplyFailedError(change.address, exc) from exc

        ctx.store.put(updated.model_copy(update={"attributes": observed}))
        _check_postconditions(resource, observed)


@dataclass
class DeleteOperation:
    """Delete an object.

    ``deposed=True`` deletes the old object of a create-before-destroy
    replacement; its state record already describes the new object.
    """

    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)
    soft_deps: list[str] = field(default_factory=list)
    deposed: bool = False

    def run(self, ctx: ApplyContext) -> None:
        assert self.change is not None
        change = self.change
        reg = ctx.registry.get(change.resource_type)

        if self.deposed:
            if change.prior_external_id is None:
                raise ResourceError(change.address, "no deposed object recorded in plan")
            ctx.call(
                change.address, reg.provider.delete, change.resource_type, change.prior_external_id
            )
            return

        prior = ctx.store.get(change.address)
        if prior is None:
            logger.debug("Delete %s: no state, nothing to do", change.address)
            return
        ctx.call(change.address, reg.provider.delete, change.resource_type, prior.external_id)
        ctx.store.remove(change.address, generation=prior.generation)


def destroy_key(address: str) -> str:
    return f"{address}#destroy"


def deposed_key(address: str) -> str:
    return f"{address}#deposed"


def build_operations(plan: Plan, state: StateDocument) -> dict[str, Operation]:
    """Build the operation graph for *plan* against the current *state*."""
    ops: dict[str, Operation] = {}
    create_update: set[str] = set()
    destroy_nodes: dict[str, str] = {}  # address -> key of the node that deletes its record
    pure_deletes: set[str] = set()

    def _add(op: Operation) -> None:
        if op.key in ops:
            raise ValueError(f"Duplicate operation key in plan: {op.key}")
        ops[op.key] = op

    for c in plan.changes:
        match c.action:
            case Action.NOOP:
                continue
            case Action.CREATE:
                _add(CreateOperation(key=c.address, change=c))
                create_update.add(c.address)
            case Action.UPDATE:
                _add(UpdateOperation(key=c.address, change=c))
                create_update.add(c.address)
            case Action.DESTROY_THEN_CREATE:
                _add(DeleteOperation(key=destroy_key(c.address), change=c))
                _add(CreateOperation(key=c.address, change=c, deps=[destroy_key(c.address)]))
                create_update.add(c.address)
                destroy_nodes[c.address] = destroy_key(c.address)
            case Action.CREATE_BEFORE_DESTROY:
                _add(CreateOperation(key=c.address, change=c))
                _add(
                    DeleteOperation(
                        key=deposed_key(c.address), change=c, deps=[c.address], deposed=True
                    )
                )
                create_update.add(c.address)
            case Action.DELETE:
                _add(DeleteOperation(key=c.address, change=c))
                destroy_nodes[c.address] = c.address
                pure_deletes.add(c.address)
            case _:
                raise ValueError(f"Unknown action: {c.action}")

    # create/update: dependencies must run before dependents
    for addr in create_update:
        op = ops[addr]
        assert op.change is not None
        op.deps.extend(d for d in op.change.depends_on if d in create_update)

    # deletes: dependents must be deleted before dependencies (invert edges)
    for addr, key in destroy_nodes.items():
        inst = state.resources.get(addr)
        if inst is None:
            raise ValueError(f"Missing state for delete operation: {addr}")
        for dep in inst.dependencies:
            if dep in destroy_nodes:
                ops[destroy_nodes[dep]].deps.append(key)

    # create-before-destroy: the old object goes only after dependents moved to
    # the new one and after dependents being deleted are gone
    for c in plan.changes:
        if c.action is Action.CREATE_BEFORE_DESTROY:
            dependents = [
                a
                for a in create_update
                if c.address in ops[a].change.depends_on  # type: ignore[union-attr]
            ]
            deposed = ops[deposed_key(c.address)]
            deposed.soft_deps.extend(sorted(dependents))
            deposed.deps.extend(
                sorted(k for k in pure_deletes if c.address in state.resources[k].dependencies)
            )

    # Pure deletes run after creates/updates (Terraform-like default ordering),
    # except creates that must themselves wait for a delete.
    if create_update and pure_deletes:
        waits_on_delete = _reachable_from(ops, pure_deletes)
        if BARRIER_KEY in ops:
            raise ValueError(f"Barrier operation key conflicts with plan: {BARRIER_KEY}")
        ops[BARRIER_KEY] = BarrierOperation(
            key=BARRIER_KEY, soft_deps=sorted(create_update - waits_on_delete)
        )
        for addr in pure_deletes:
            ops[addr].deps.append(BARRIER_KEY)

    return ops


def _reachable_from(ops: Mapping[str, Operation], sources: set[str]) -> set[str]:
    """Keys of every operation that (transitively) waits for one of *sources*."""
    dependents: dict[str, set[str]] = {k: set() for k in ops}
    for key, op in ops.items():
        for dep in [*op.deps, *op.soft_deps]:
            dependents[dep].add(key)

    seen: set[str] = set()
    stack = list(sources)
    while stack:
        for child in dependents[stack.pop()]:
            if child not in seen:
                seen.add(child)
                stack.append(child)
    return seen
