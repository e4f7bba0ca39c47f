"""
Plan execution.

The coordinating thread owns the snapshot: it resolves each operation's
attributes against live state right before dispatch, hands the API calls to
a worker pool, and records results (and persists state) as operations
finish. Independent branches of the graph run concurrently; an operation is
only dispatched once everything it requires has completed.
"""
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from stackplan.errors import (
    OperationTimeoutError,
    ProtectedResourceError,
    ProvisionError,
    StackplanError,
)
from stackplan.expressions import resolve
from stackplan.models.plan import Action, ApplyResult, Operation, Plan
from stackplan.models.state import ResourceState, StateSnapshot, utc_now
from stackplan.planner import Stack, compute_spec_hash, evaluate_outputs, live_lookup
from stackplan.providers.base import ResourceCapability
from stackplan.store import Lease, StateStore

logger = logging.getLogger(__name__)

EventHook = Callable[[str, Operation], None]


class _CreatedButNotReady(Exception):
    """The create call succeeded but waiting for readiness did not."""

    def __init__(self, live: Dict[str, Any], cause: BaseException) -> None:
        super().__init__(str(cause))
        self.live = live
        self.cause = cause


class Executor:
    def __init__(
        self,
        registry,
        store: StateStore,
        lease: Lease,
        parallelism: int = 4,
        operation_timeout: float = 1800.0,
        on_event: Optional[EventHook] = None,
        settle_timeout: float = 60.0,
    ) -> None:
        self.registry = registry
        self.store = store
        self.lease = lease
        self.parallelism = max(1, parallelism)
        self.operation_timeout = operation_timeout
        self.on_event = on_event or (lambda kind, op: None)
        # how long to wait for a timed-out create to report what it created
        self.settle_timeout = settle_timeout

    # ------------------------------------------------------------------ public
    def execute(self, plan: Plan, stack: Stack, snapshot: StateSnapshot) -> ApplyResult:
        """
        Apply ``plan`` in order, persisting state after every success.

        Fail-fast: the first failure stops dispatching, lets in-flight
        operations finish, then raises. Nothing is rolled back; running
        Diff + Execute again picks up where this run stopped.

        The lease is renewed while operations are in flight, so a run that
        outlasts ``lease_ttl`` still holds the state.
        """
        for op in plan.operations:
            if op.action == Action.DELETE and op.protected:
                raise ProtectedResourceError(op.address)

        result = ApplyResult()
        pending: List[Operation] = list(plan.operations)
        done: Set[str] = set()
        changed: Set[str] = set()
        in_flight: Dict[Future, Tuple[Operation, Optional[Dict[str, Any]], float]] = {}
        abandoned: Dict[Future, Tuple[Operation, Optional[Dict[str, Any]]]] = {}
        failure: Optional[StackplanError] = None
        dirty = False
        renew_every = self.store.renew_interval
        next_renewal = time.monotonic() + renew_every

        pool = ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="stackplan")
        try:
            while True:
                if failure is None:
                    try:
                        dirty |= self._dispatch(
                            pending, done, changed, in_flight, pool, stack, snapshot, result
                        )
                    except StackplanError as exc:
                        failure = exc

                if not in_flight:
                    break

                now = time.monotonic()
                if now >= next_renewal:
                    self.store.renew(self.lease)
                    next_renewal = now + renew_every
                earliest = min(deadline for _, _, deadline in in_flight.values())
                finished, _ = wait(
                    list(in_flight),
                    timeout=max(0.0, min(earliest, next_renewal) - now),
                    return_when=FIRST_COMPLETED,
                )
                for future in finished:
                    op, attrs, _ = in_flight.pop(future)
                    try:
                        live = future.result()
                    except _CreatedButNotReady as exc:
                        # the resource exists; record it without a hash so the next run updates it
                        self._record(op, attrs, exc.live, stack, snapshot, tainted=True)
                        failure = failure or self._wrap(op, exc.cause)
                        self.on_event("fail", op)
                        continue
                    except Exception as exc:
                        failure = failure or self._wrap(op, exc)
                        self.on_event("fail", op)
                        continue
                    self._record(op, attrs, live, stack, snapshot)
                    done.add(op.address)
                    changed.add(op.address)
                    result.applied.append(op)
                    self.on_event("done", op)

                now = time.monotonic()
                for future, (op, attrs, deadline) in list(in_flight.items()):
                    if now >= deadline:
                        logger.error("%s exceeded %gs; abandoning it", op.address, self.operation_timeout)
                        del in_flight[future]
                        if op.action == Action.CREATE:
                            abandoned[future] = (op, attrs)
                        failure = failure or OperationTimeoutError(op.address, self.operation_timeout)
                        self.on_event("fail", op)

            if abandoned:
                self._settle_abandoned(abandoned, stack, snapshot)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if failure is not None:
            untouched = [op.address for op in pending]
            if untouched:
                logger.info("not attempted after failure: %s", ", ".join(untouched))
            raise failure
        if pending:
            raise StackplanError(
                "could not schedule " + ", ".join(op.address for op in pending)
                + ": their requirements are not part of the plan"
            )

        outputs = {} if plan.destroy else evaluate_outputs(stack, snapshot)
        if result.applied or dirty or outputs != snapshot.outputs:
            snapshot.outputs = outputs
            self.store.write(snapshot, self.lease)
        result.outputs = outputs
        return result

    # ------------------------------------------------------------------ scheduling
    def _dispatch(self, pending, done, changed, in_flight, pool, stack, snapshot, result) -> bool:
        """Submit every ready operation. Returns True if state fields changed without API calls."""
        dirty = False
        progressed = True
        while progressed:
            progressed = False
            for op in list(pending):
                if len(in_flight) >= self.parallelism:
                    return dirty
                if any(dep not in done for dep in op.requires):
                    continue
                prepared = self._prepare(op, stack, snapshot, changed)
                pending.remove(op)
                if prepared is None:
                    done.add(op.address)
                    dirty |= self._settle(op, stack, snapshot)
                    if op.action == Action.UPDATE:
                        result.skipped.append(op.address)
                        self.on_event("skip", op)
                    progressed = True
                    continue
                cap, attrs = prepared
                self.on_event("start", op)
                logger.info("%s: %s", op.address, op.action.value)
                deadline = time.monotonic() + self.operation_timeout
                future = pool.submit(self._run, op, cap, attrs, deadline)
                in_flight[future] = (op, attrs, deadline)
        return dirty

    def _prepare(
        self, op: Operation, stack: Stack, snapshot: StateSnapshot, changed: Set[str]
    ) -> Optional[Tuple[ResourceCapability, Optional[Dict[str, Any]]]]:
        """
        Resolve the operation against live state.

        Returns None when re-resolution shows there is nothing to do: an
        update whose inputs came out identical, or a no-op none of whose
        dependencies changed in this run.
        """
        if op.action == Action.DELETE:
            prior = op.prior
            return self.registry.capability(prior.provider, prior.resource_type), None

        spec = stack.resources[op.address]
        if op.action == Action.NOOP and not any(dep in changed for dep in op.requires):
            return None

        attrs = resolve(spec.attributes, live_lookup(snapshot, op.address))
        if op.action != Action.CREATE:
            prior = snapshot.get(op.address)
            new_hash = compute_spec_hash(spec.resource_type, spec.provider, attrs)
            if prior is not None and new_hash == prior.spec_hash:
                return None
            if op.action == Action.NOOP:
                logger.info("%s: inputs changed upstream, updating", op.address)
                op.action = Action.UPDATE
                op.reason = "upstream value changed"
        return self.registry.capability(spec.provider, spec.resource_type), attrs

    # ------------------------------------------------------------------ worker side
    def _run(
        self, op: Operation, cap: ResourceCapability, attrs: Optional[Dict[str, Any]], deadline: float
    ) -> Optional[Dict[str, Any]]:
        # same deadline the coordinator enforces, so a create that never becomes
        # ready reports back before it is abandoned
        def remaining() -> float:
            return max(0.0, deadline - time.monotonic())

        if op.action == Action.DELETE:
            cap.delete(op.prior.resource_id)
            return None
        if op.action == Action.CREATE:
            created = cap.create(attrs)
            try:
                return cap.wait_until_ready(op.address, created["id"], remaining())
            except Exception as exc:
                raise _CreatedButNotReady(created, exc) from exc
        prior = op.prior
        cap.update(prior.resource_id, attrs, prior.attributes)
        return cap.wait_until_ready(op.address, prior.resource_id, remaining())

    # ------------------------------------------------------------------ state
    def _record(self, op, attrs, live, stack, snapshot, tainted: bool = False) -> None:
        if op.action == Action.DELETE:
            snapshot.resources.pop(op.address, None)
        else:
            spec = stack.resources[op.address]
            prior = snapshot.get(op.address)
            now = utc_now()
            snapshot.resources[op.address] = ResourceState(
                address=op.address,
                resource_type=spec.resource_type,
                resource_id=str(live["id"]),
                provider=spec.provider,
                attributes=live,
                inputs=attrs,
                spec_hash="" if tainted else compute_spec_hash(spec.resource_type, spec.provider, attrs),
                dependencies=stack.graph.dependencies(op.address),
                protected=spec.protected,
                created_at=prior.created_at if prior else now,
                updated_at=now,
            )
        self.store.write(snapshot, self.lease)

    def _settle_abandoned(self, abandoned, stack: Stack, snapshot: StateSnapshot) -> None:
        """
        Record creates that reported back after their deadline.

        A create can succeed and then run out of budget waiting for the
        resource to become ready. It still exists in the cloud, so it goes
        into state (tainted, unless it did become ready) and the next run
        updates it instead of creating a second one.
        """
        finished, unfinished = wait(list(abandoned), timeout=self.settle_timeout)
        for future in finished:
            op, attrs = abandoned[future]
            try:
                live = future.result()
            except _CreatedButNotReady as exc:
                logger.warning("%s was created but is not ready; recording it as tainted", op.address)
                self._record(op, attrs, exc.live, stack, snapshot, tainted=True)
                continue
            except Exception as exc:
                logger.info("%s: create failed after it was abandoned: %s", op.address, exc)
                continue
            self._record(op, attrs, live, stack, snapshot)
        for future in unfinished:
            op, _ = abandoned[future]
            logger.error(
                "%s: create call still running after %gs; it may exist without being recorded",
                op.address, self.operation_timeout + self.settle_timeout,
            )

    def _settle(self, op: Operation, stack: Stack, snapshot: StateSnapshot) -> bool:
        """Sync bookkeeping fields of an unchanged resource. No API call."""
        st = snapshot.get(op.address)
        spec = stack.resources.get(op.address)
        if st is None or spec is None:
            return False
        deps = stack.graph.dependencies(op.address)
        if st.protected == spec.protected and st.dependencies == deps:
            return False
        st.protected = spec.protected
        st.dependencies = deps
        return True

    def _wrap(self, op: Operation, exc: BaseException) -> StackplanError:
        if isinstance(exc, OperationTimeoutError):
            # readiness waits only see what was left of the budget
            err = OperationTimeoutError(op.address, self.operation_timeout)
            err.__cause__ = exc
            return err
        if isinstance(exc, StackplanError):
            return exc
        err = ProvisionError(op.address, exc)
        err.__cause__ = exc
        return err
