"""Plan/apply engine."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import TYPE_CHECKING, Any

from reconciler import __version__
from reconciler.core.state import (
    LocalStateStore,
    ResourceInstance,
    StateDocument,
    compute_attributes_hash,
)
from reconciler.engine.diff import (
    compute_diff,
    inherited_sensitive,
    instance_value,
    resolve_attributes,
)
from reconciler.engine.executor import ApplyExecutor
from reconciler.engine.graph import DependencyGraph, build_dependency_graph
from reconciler.engine.operations import ApplyContext, build_operations
from reconciler.engine.types import (
    Action,
    ApplyResult,
    DriftEntry,
    Plan,
    PlanMetadata,
    ResourceChange,
)
from reconciler.errors import (
    AddressAlreadyBoundError,
    ApplyFailedError,
    ConditionEvaluationError,
    DestructionForbiddenError,
    ExternalObjectNotFoundError,
    PreconditionError,
    ResourceNotTrackedError,
    StalePlanError,
    StateConflictError,
    ValidationError,
)
from reconciler.resources.expansion import expand
from reconciler.resources.references import (
    UNKNOWN,
    ResourceAddress,
    contains_unknown,
    lookup_path,
)

if TYPE_CHECKING:
    from collections.abc import Collection, Sequence

    from reconciler.config.schema import Workspace
    from reconciler.core.state import StateStore
    from reconciler.engine.executor import ProgressCallback
    from reconciler.engine.registry import ResourceTypeRegistry
    from reconciler.resources.base import ResourceConfig
    from reconciler.resources.configuration import Configuration

logger = logging.getLogger(__name__)


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _sha256_hex(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _compute_config_digest(resources: Sequence[ResourceConfig]) -> str:
    items: list[dict[str, Any]] = []
    for r in resources:
        desired = r.model_dump(mode="json", exclude={"address"})
        items.append({"address": r.address, "desired": desired})
    items.sort(key=lambda x: x["address"])
    return _sha256_hex(_canonical_json(items))


def _known(value: Any) -> Any:
    """Copy of *value* with unknown leaves replaced by None (plan serialization)."""
    if value is UNKNOWN:
        return None
    if isinstance(value, dict):
        return {k: _known(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_known(v) for v in value]
    return value


class Engine:
    """Terraform-like plan/apply engine over pluggable providers.

    Every entry point works against the explicit *workspace* handle; nothing
    depends on the process working directory.
    """

    def __init__(
        self,
        *,
        workspace: Workspace,
        registry: ResourceTypeRegistry,
        store: StateStore | None = None,
    ) -> None:
        self._workspace = workspace
        self._registry = registry
        self._store = store if store is not None else LocalStateStore(workspace.state_path)

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    @property
    def store(self) -> StateStore:
        return self._store

    # -- refresh / drift -----------------------------------------------

    def _read_live(self, inst: ResourceInstance) -> dict[str, Any] | None:
        provider = self._registry.get(inst.resource_type).provider
        try:
            return provider.read(inst.resource_type, inst.external_id)
        except Exception as exc:
            raise ApplyFailedError(inst.address, exc) from exc

    def _refresh_document(self, doc: StateDocument) -> StateDocument:
        refreshed = doc.model_copy(deep=True)
        for address, inst in doc.resources.items():
            attrs = self._read_live(inst)
            if attrs is None:
                del refreshed.resources[address]
                continue
            new_hash = compute_attributes_hash(attrs)
            if attrs != inst.attributes or new_hash != inst.attributes_hash:
                refreshed.resources[address].attributes = attrs
                refreshed.resources[address].attributes_hash = new_hash
        return refreshed

    def refresh(self, *, persist: bool = False) -> tuple[StateDocument, StateDocument]:
        """Re-read every tracked object. Returns (pre_refresh, post_refresh)."""
        logger.debug("Refreshing state from providers")
        before = self._store.snapshot()
        after = self._refresh_document(before)
        if not persist:
            return before, after

        changed = 0
        for address, inst in before.resources.items():
            if address not in after.resources:
                logger.info("Refresh: %s no longer exists", address)
                self._store.remove(address, generation=inst.generation)
                changed += 1
            elif after.resources[address].attributes_hash != inst.attributes_hash:
                self._store.put(after.resources[address])
                changed += 1
        logger.debug("State refreshed, %d changed", changed)
        return before, self._store.snapshot()

    def drift(self) -> list[DriftEntry]:
        """List tracked objects whose live attributes differ from state."""
        before, after = self.refresh(persist=False)
        entries: list[DriftEntry] = []
        for address, inst in sorted(before.resources.items()):
            if address not in after.resources:
                entries.append(
                    DriftEntry(address=address, resource_type=inst.resource_type, kind="vanished")
                )
                continue
            live = after.resources[address].attributes
            keys = sorted(set(live) | set(inst.attributes))
            diff = {
                k: {"from": inst.attributes.get(k), "to": live.get(k)}
                for k in keys
                if inst.attributes.get(k) != live.get(k)
            }
            if diff:
                entries.append(
                    DriftEntry(
                        address=address,
                        resource_type=inst.resource_type,
                        kind="changed",
                        diff=diff,
                        sensitive=list(inst.sensitive),
                    )
                )
        return entries

    # -- plan ----------------------------------------------------------

    def _classify_change(
        self,
        resource: ResourceConfig,
        resolved: dict[str, Any],
        prior_inst: ResourceInstance | None,
        deps: list[str],
        replace: Collection[str],
        sensitive: list[str],
    ) -> ResourceChange:
        """Classify a single resource as CREATE, UPDATE, replace or NOOP."""
        addr = resource.address
        schema = self._registry.get(resource.resource_type).schema
        common: dict[str, Any] = {
            "address": addr,
            "resource_type": resource.resource_type,
            "desired": resource.model_dump(mode="json", exclude={"address"}),
            "planned": _known(resolved),
            "unknown": sorted(k for k, v in resolved.items() if contains_unknown(v)),
            "depends_on": deps,
            "sensitive": sensitive,
        }

        if prior_inst is None:
            logger.debug("Classified %s as create", addr)
            return ResourceChange(action=Action.CREATE, **common)

        diff = compute_diff(
            resolved,
            prior_inst.attributes,
            strategies=schema.compare,
            ignore=resource.lifecycle.ignore_changes,
        )
        reasons = sorted(k for k in diff if k in schema.force_new)
        if prior_inst.tainted:
            reasons.append("tainted")
        if addr in replace:
            reasons.append("requested")

        if reasons:
            action = (
                Action.CREATE_BEFORE_DESTROY
                if resource.lifecycle.create_before_destroy
                else Action.DESTROY_THEN_CREATE
            )
        elif diff:
            action = Action.UPDATE
        else:
            action = Action.NOOP

        logger.debug("Classified %s as %s", addr, action.value)
        return ResourceChange(
            action=action,
            prior=dict(prior_inst.attributes),
            prior_external_id=prior_inst.external_id,
            diff=diff or None,
            replace_reasons=reasons,
            **common,
        )

    def _plan_deletes(self, state: StateDocument, addrs: set[str]) -> list[ResourceChange]:
        """Plan delete changes for the given addresses in reverse dependency order."""
        changes: list[ResourceChange] = []
        for addr in self._delete_order(state, addrs):
            inst = state.resources[addr]
            self._registry.get(inst.resource_type)  # fail early if unknown
            changes.append(
                ResourceChange(
                    address=addr,
                    resource_type=inst.resource_type,
                    action=Action.DELETE,
                    prior=dict(inst.attributes),
                    prior_external_id=inst.external_id,
                    depends_on=list(inst.dependencies),
                    sensitive=list(inst.sensitive),
                )
            )
        return changes

    @staticmethod
    def _delete_order(state: StateDocument, delete_set: set[str]) -> list[str]:
        dep_map = {
            addr: [d for d in state.resources[addr].dependencies if d in delete_set]
            for addr in delete_set
        }
        return DependencyGraph(delete_set, dep_map).reverse_topological_order()

    @staticmethod
    def _check_prevent_destroy(
        changes: list[ResourceChange],
        instances: dict[str, ResourceConfig],
        state: StateDocument,
    ) -> None:
        for c in changes:
            if not c.action.destroys:
                continue
            if c.address in instances:
                guarded = instances[c.address].lifecycle.prevent_destroy
            else:
                guarded = state.resources[c.address].prevent_destroy
            if guarded:
                raise DestructionForbiddenError(c.address, c.action.value)

    def plan(
        self,
        configuration: Configuration,
        *,
        destroy: bool = False,
        refresh: bool | None = None,
        replace: Collection[str] = (),
    ) -> Plan:
        """Compute the changes that reconcile state with *configuration*.

        Planning has no external side effect other than persisting a refresh.
        """
        if refresh is None:
            refresh = self._workspace.settings.refresh
        logger.info(
            "Planning %d resources (destroy=%s, refresh=%s)", len(configuration), destroy, refresh
        )

        expansion = expand(configuration.resources)
        graph, dep_map = build_dependency_graph(expansion)
        instances = expansion.instances
        for r in instances.values():
            self._registry.get(r.resource_type)

        if refresh:
            _, state = self.refresh(persist=True)
        else:
            state = self._store.snapshot()
        logger.debug("State loaded: serial=%d, %d resources", state.serial, len(state.resources))

        unknown_targets = sorted(set(replace) - set(instances))
        if unknown_targets:
            raise ValidationError(
                [f"Cannot replace '{a}': address is not declared" for a in unknown_targets]
            )

        bindings = {t: expansion.instance_addresses(t) for t in expansion.bindings}
        state_addrs = set(state.resources)

        if destroy:
            changes = self._plan_deletes(state, state_addrs)
        else:
            changes = self._plan_desired(graph, dep_map, instances, state, bindings, replace)
            changes.extend(self._plan_deletes(state, state_addrs - set(instances)))

        self._check_prevent_destroy(changes, instances, state)

        metadata = PlanMetadata(
            workspace=str(self._workspace.root),
            destroy=destroy,
            refresh=refresh,
            state_lineage=state.lineage,
            state_serial=state.serial,
            generations={
                c.address: state.generation_of(c.address)
                for c in changes
                if c.action is not Action.NOOP
            },
            config_digest=_compute_config_digest([] if destroy else list(instances.values())),
            engine_version=__version__,
        )
        plan = Plan(metadata=metadata, changes=changes, bindings={} if destroy else bindings)
        logger.info("Plan: %s", ", ".join(f"{k}={v}" for k, v in plan.summary().items() if v))
        return plan

    def _plan_desired(
        self,
        graph: DependencyGraph,
        dep_map: dict[str, list[str]],
        instances: dict[str, ResourceConfig],
        state: StateDocument,
        bindings: dict[str, list[str]],
        replace: Collection[str],
    ) -> list[ResourceChange]:
        by_addr: dict[str, ResourceChange] = {}
        resolved_by_addr: dict[str, dict[str, Any]] = {}

        def _lookup(address: str, attribute: str) -> Any:
            change = by_addr[address]
            inst = state.resources.get(address)
            if change.action is Action.NOOP and inst is not None:
                return instance_value(inst, attribute)
            found, value = lookup_path(resolved_by_addr[address], attribute)
            if found:
                return value
            if change.action is Action.UPDATE and inst is not None:
                return instance_value(inst, attribute)
            # Computed by the provider on create.
            return UNKNOWN

        def _sensitive_of(address: str) -> list[str]:
            if address in by_addr:
                return by_addr[address].sensitive
            inst = state.resources.get(address)
            return inst.sensitive if inst is not None else []

        failures: list[tuple[str, str]] = []
        for addr in graph.topological_order():
            resource = instances[addr]
            resolved = resolve_attributes(resource.attributes, _lookup, bindings)
            resolved_by_addr[addr] = resolved
            inherited = inherited_sensitive(resource.attributes, _sensitive_of, bindings)
            by_addr[addr] = self._classify_change(
                resource,
                resolved,
                state.resources.get(addr),
                dep_map[addr],
                replace,
                sorted({*resource.sensitive, *inherited}),
            )
            for cond in resource.lifecycle.preconditions:
                try:
                    passed = cond.check(resolved)
                except ConditionEvaluationError as exc:
                    failures.append((addr, str(exc)))
                    continue
                if passed is False:
                    failures.append((addr, cond.error_message))

        if failures:
            failed = {a for a, _ in failures}
            blocked = sorted(
                {d for a in failed for d in graph.transitive_dependents(a)} - failed
            )
            raise PreconditionError(failures, blocked)

        return list(by_addr.values())

    # -- apply ---------------------------------------------------------

    def _check_plan_current(self, plan: Plan) -> StateDocument:
        state = self._store.snapshot()
        if state.serial == 0 and not state.resources:
            # Saved plan for a fresh workspace: adopt its lineage.
            self._store.adopt_lineage(plan.metadata.state_lineage)
            state = self._store.snapshot()

        if state.lineage != plan.metadata.state_lineage:
            raise StalePlanError("State lineage changed; re-run plan")
        for address, generation in sorted(plan.metadata.generations.items()):
            current = state.generation_of(address)
            if current != generation:
                raise StalePlanError(
                    f"State of {address} changed since plan "
                    f"(generation {generation} -> {current}); re-run plan"
                )
        return state

    def apply(
        self,
        plan: Plan,
        *,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
        parallelism: int | None = None,
    ) -> ApplyResult:
        """Execute *plan*. Per-address failures are reported, not raised.

        ``timeout`` and ``parallelism`` default to the workspace settings.
        """
        settings = self._workspace.settings
        state = self._check_plan_current(plan)

        ops = build_operations(plan, state)
        for op in ops.values():
            if op.change is not None:
                self._registry.get(op.change.resource_type)

        ctx = ApplyContext(
            registry=self._registry,
            store=self._store,
            bindings=plan.bindings,
            timeout=timeout if timeout is not None else settings.operation_timeout,
        )
        executor = ApplyExecutor(
            ops,
            ctx,
            parallelism=parallelism or settings.parallelism,
            cancel=cancel,
            progress=progress,
        )
        result = executor.run(plan.changes)
        logger.info(
            "Apply finished: %s",
            ", ".join(f"{k}={v}" for k, v in result.status_counts().items() if v),
        )
        return result

    # -- state operations ------------------------------------------------

    def import_resource(self, address: str, external_id: str) -> ResourceInstance:
        """Bind an existing external object to *address* without provisioning it."""
        parsed = ResourceAddress.parse(address)
        addr = str(parsed)
        reg = self._registry.get(parsed.resource_type)
        if self._store.get(addr) is not None:
            raise AddressAlreadyBoundError(addr)

        try:
            observed = reg.provider.read(parsed.resource_type, external_id)
        except Exception as exc:
            raise ApplyFailedError(addr, exc) from exc
        if observed is None:
            raise ExternalObjectNotFoundError(addr, external_id)

        inst = ResourceInstance(
            address=addr,
            resource_type=parsed.resource_type,
            name=parsed.name,
            index=parsed.index,
            external_id=external_id,
            attributes=observed,
        )
        try:
            stored = self._store.put(inst)
        except StateConflictError as exc:
            raise AddressAlreadyBoundError(addr) from exc
        logger.info("Imported %s (external id %s)", addr, external_id)
        return stored

    def _tracked(self, address: str) -> ResourceInstance:
        addr = str(ResourceAddress.parse(address))
        inst = self._store.get(addr)
        if inst is None:
            raise ResourceNotTrackedError(addr)
        return inst

    def forget(self, address: str) -> ResourceInstance:
        """Stop managing *address*; the external object is left untouched."""
        inst = self._tracked(address)
        self._store.remove(inst.address, generation=inst.generation)
        logger.info("Removed %s from state", inst.address)
        return inst

    def _set_tainted(self, address: str, tainted: bool) -> ResourceInstance:
        inst = self._tracked(address)
        if inst.tainted == tainted:
            return inst
        return self._store.put(inst.model_copy(update={"tainted": tainted}))

    def taint(self, address: str) -> ResourceInstance:
        """Mark *address* for replacement on the next plan."""
        return self._set_tainted(address, True)

    def untaint(self, address: str) -> ResourceInstance:
        return self._set_tainted(address, False)

