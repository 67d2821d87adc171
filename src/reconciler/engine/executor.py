"""Concurrent apply executor.

Runs an operation graph on a thread pool. A node is dispatched once every
hard dependency succeeded and every soft dependency finished; at most
``parallelism`` provider calls are in flight. A failed node skips all of its
hard dependents while unrelated branches keep running.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import TYPE_CHECKING, Literal

from reconciler.engine.graph import DependencyGraph
from reconciler.engine.types import (
    Action,
    ApplyResult,
    ResourceChange,
    ResourceOutcome,
    ResourceStatus,
)
from reconciler.errors import ApplyCanceled

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from reconciler.engine.operations import ApplyContext, Operation

    ProgressCallback = Callable[[ResourceChange, ProgressEvent], None]

logger = logging.getLogger(__name__)

ProgressEvent = Literal["start", "done", "failed"]


class _NodeState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


_FINISHED = (_NodeState.SUCCEEDED, _NodeState.FAILED, _NodeState.SKIPPED)


class ApplyExecutor:
    """Execute an operation graph with bounded parallelism."""

    def __init__(
        self,
        ops: Mapping[str, Operation],
        ctx: ApplyContext,
        *,
        parallelism: int = 10,
        cancel: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        if parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {parallelism}")
        self._ops = ops
        self._ctx = ctx
        self._parallelism = parallelism
        self._cancel = cancel or threading.Event()
        self._progress = progress

        graph = DependencyGraph(
            ops.keys(), {k: [*op.deps, *op.soft_deps] for k, op in ops.items()}
        )
        self._rank = {k: i for i, k in enumerate(graph.topological_order())}
        self._dependents: dict[str, list[str]] = {k: [] for k in ops}
        for key, op in ops.items():
            for dep in op.deps:
                self._dependents[dep].append(key)

        self._state: dict[str, _NodeState] = dict.fromkeys(ops, _NodeState.PENDING)
        self._errors: dict[str, BaseException] = {}
        self._skip_reason: dict[str, str] = {}
        # Operations left per address; an address is done when all its nodes are.
        self._remaining: dict[str, int] = {}
        for op in ops.values():
            if op.change is not None:
                self._remaining[op.change.address] = self._remaining.get(op.change.address, 0) + 1
        self._started: set[str] = set()
        self._completed: list[str] = []
        self._inflight: dict[Future[None], str] = {}

    def _ready(self) -> list[str]:
        ready = []
        for key, st in self._state.items():
            if st is not _NodeState.PENDING:
                continue
            op = self._ops[key]
            if all(self._state[d] is _NodeState.SUCCEEDED for d in op.deps) and all(
                self._state[d] in _FINISHED for d in op.soft_deps
            ):
                ready.append(key)
        ready.sort(key=self._rank.__getitem__)
        return ready

    def _notify(self, change: ResourceChange, event: ProgressEvent) -> None:
        if self._progress is not None:
            self._progress(change, event)

    def _start(self, key: str) -> None:
        change = self._ops[key].change
        if change is not None and change.address not in self._started:
            self._started.add(change.address)
            logger.debug("Applying %s: %s", change.address, change.action.value)
            self._notify(change, "start")
        self._state[key] = _NodeState.RUNNING

    def _finish(self, key: str, error: BaseException | None) -> None:
        op = self._ops[key]
        if error is None:
            self._state[key] = _NodeState.SUCCEEDED
        else:
            self._state[key] = _NodeState.FAILED
            self._errors[key] = error
            logger.error("Apply failed for %s: %s", key, error)
            self._skip_dependents(key, f"dependency {key} failed")

        if op.change is None:
            return
        address = op.change.address
        if error is not None:
            self._notify(op.change, "failed")
        self._remaining[address] -= 1
        done = self._remaining[address] == 0
        if done and self._address_status(address) is ResourceStatus.APPLIED:
            self._completed.append(address)
            self._notify(op.change, "done")

    def _skip_dependents(self, key: str, reason: str) -> None:
        stack = list(self._dependents[key])
        while stack:
            child = stack.pop()
            if self._state[child] is not _NodeState.PENDING:
                continue
            self._state[child] = _NodeState.SKIPPED
            self._skip_reason[child] = reason
            change = self._ops[child].change
            if change is not None:
                self._remaining[change.address] -= 1
                logger.warning("Skipping %s: %s", change.address, reason)
            stack.extend(self._dependents[child])

    def _skip_pending(self, reason: str) -> None:
        for key, st in self._state.items():
            if st is _NodeState.PENDING:
                self._state[key] = _NodeState.SKIPPED
                self._skip_reason[key] = reason

    def _address_status(self, address: str) -> ResourceStatus:
        states = [
            self._state[k]
            for k, op in self._ops.items()
            if op.change is not None and op.change.address == address
        ]
        if _NodeState.FAILED in states:
            return ResourceStatus.FAILED
        if any(s is not _NodeState.SUCCEEDED for s in states):
            return ResourceStatus.SKIPPED
        return ResourceStatus.APPLIED

    def _run_loop(self, pool: ThreadPoolExecutor) -> None:
        inflight = self._inflight
        while True:
            if not self._cancel.is_set():
                for key in self._ready()[: self._parallelism - len(inflight)]:
                    self._start(key)
                    inflight[pool.submit(self._ops[key].run, self._ctx)] = key

            if not inflight:
                return

            done, _ = wait(inflight, return_when=FIRST_COMPLETED)
            for fut in done:
                key = inflight.pop(fut)
                self._finish(key, fut.exception())

    def _drain(self, pool: ThreadPoolExecutor) -> None:
        # Calls already running cannot be aborted; wait for them and record outcomes.
        self._cancel.set()
        self._run_loop(pool)

    def run(self, changes: list[ResourceChange]) -> ApplyResult:
        """Apply every node; return the per-address report for *changes*."""
        logger.info("Applying %d operations (parallelism=%d)", len(self._ops), self._parallelism)
        interrupted: KeyboardInterrupt | None = None
        with ThreadPoolExecutor(
            max_workers=self._parallelism, thread_name_prefix="apply"
        ) as pool:
            try:
                self._run_loop(pool)
            except KeyboardInterrupt as exc:
                interrupted = exc
                self._drain(pool)

        canceled = self._cancel.is_set()
        if canceled:
            self._skip_pending("apply canceled")

        result = self._result(changes, canceled=canceled)
        if interrupted is not None:
            raise ApplyCanceled(result) from interrupted
        return result

    def _result(self, changes: list[ResourceChange], *, canceled: bool) -> ApplyResult:
        outcomes: dict[str, ResourceOutcome] = {}
        by_address = {c.address: c for c in changes}
        for change in changes:
            if change.action is Action.NOOP:
                outcomes[change.address] = ResourceOutcome(
                    address=change.address, action=change.action, status=ResourceStatus.NOOP
                )
                continue

            status = self._address_status(change.address)
            error_type = error = None
            keys = [
                k
                for k, op in self._ops.items()
                if op.change is not None and op.change.address == change.address
            ]
            for key in keys:
                if key in self._errors:
                    exc = self._errors[key]
                    error_type, error = type(exc).__name__, str(exc)
                    break
            else:
                for key in keys:
                    if key in self._skip_reason:
                        error_type, error = "Skipped", self._skip_reason[key]
                        break
            outcomes[change.address] = ResourceOutcome(
                address=change.address,
                action=change.action,
                status=status,
                error_type=error_type,
                error=error,
            )

        applied = [by_address[a] for a in self._completed]
        return ApplyResult(outcomes=outcomes, applied=applied, canceled=canceled)
