"""
Convergence Applier

Walks a plan on a bounded thread pool. A resource is launched only after all
of its producers have been applied; a failure skips everything downstream
while unrelated subtrees keep going. Every platform call runs on a separate
call pool so a per-call timeout can be enforced, and transient errors are
retried with bounded exponential backoff. State is committed by the
scheduler thread after each resource finishes.
"""

import hashlib
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future
from concurrent.futures import ThreadPoolExecutor as StdThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from concurrent.futures import wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import StackforgeConfig, get_config
from ..errors import ActionTimeoutError, ApplyError, DriftError, TransientPlatformError
from ..expressions import digest, evaluate, is_known, normalize, reveal
from ..graph.builder import BuiltGraph
from ..graph.resolver import DependencyResolver
from ..logging import get_logger, redact_text, trace_operation
from ..platform.base import ObservedResource, Platform
from ..state import ResourceRecord, StackState, StateStore
from ..types import (
    Action,
    ApplyResult,
    Plan,
    PlannedChange,
    Resource,
    ResourceEvent,
    ResourceResult,
    ResourceStatus,
)
from ..utils.timers import time_operation
from .differ import diff_resource

logger = get_logger(__name__)


def deposed_key(address: str, physical_id: Optional[str]) -> str:
    """Task key for deleting one deposed object of *address*."""
    return f"{address} (deposed {physical_id})"


SUCCEEDED = frozenset({ResourceStatus.APPLIED, ResourceStatus.DESTROYED})
FINISHED = frozenset(
    {
        ResourceStatus.APPLIED,
        ResourceStatus.DESTROYED,
        ResourceStatus.FAILED,
        ResourceStatus.SKIPPED,
    }
)


@dataclass
class _Task:
    """One unit of scheduling: converge a resource or delete an object."""

    key: str
    address: str
    change: PlannedChange
    kind: str  # "converge", "delete" or "deposed"
    # Object a "deposed" task deletes
    physical_id: Optional[str] = None
    # Tasks that must succeed first
    requires: Set[str] = field(default_factory=set)
    # Tasks that must merely have finished first
    after: Set[str] = field(default_factory=set)


@dataclass
class _Outcome:
    action: Action
    record: Optional[ResourceRecord] = None
    previous: Optional[ResourceRecord] = None  # old object kept for deferred deletion
    removed: bool = False  # the recorded object no longer exists
    desired: Optional[Dict[str, Any]] = None
    attempts: int = 0
    duration_seconds: float = 0.0
    error: Optional[Exception] = None


class ConvergenceApplier:
    """
    Applies plans against a platform.

    Features:
    - Respects ``max_parallelism`` for resources in flight
    - Per-call timeout and bounded retries for transient platform errors
    - Idempotency tokens so a retried create never duplicates a resource
    - Create-before-destroy replacements with deferred deletion
    - Cooperative cancellation: in-flight work finishes, nothing new starts
    """

    def __init__(
        self,
        built: BuiltGraph,
        platform: Platform,
        store: StateStore,
        state: StackState,
        config: Optional[StackforgeConfig] = None,
        cancel_event: Optional[threading.Event] = None,
        on_event: Optional[Callable[[ResourceEvent], None]] = None,
    ):
        self.built = built
        self.platform = platform
        self.store = store
        self.state = state
        self.config = config or get_config()
        self.cancel_event = cancel_event or threading.Event()
        self.on_event = on_event
        self.resolver = DependencyResolver(built)

        self.max_workers = self.config.execution.max_parallelism

        # Statistics
        self.active: Set[str] = set()
        self.peak_concurrent = 0
        self.lock = threading.RLock()

        self._result: Optional[ApplyResult] = None
        self._records: Dict[str, ResourceRecord] = {}
        self._values: Dict[str, Any] = {}
        self._calls: Optional[StdThreadPoolExecutor] = None

    def cancel(self):
        """Stop launching new resources; in-flight ones finish."""
        logger.warning("Cancellation requested")
        self.cancel_event.set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    @trace_operation("apply")
    def apply(
        self, plan: Plan, refreshed: Optional[Dict[str, ResourceRecord]] = None
    ) -> ApplyResult:
        """
        Converge the resources in *plan*.

        Args:
            plan: Plan from ``Planner.plan``
            refreshed: Refreshed records from the same planner; recorded state
                is used when omitted
        """
        if refreshed is None:
            refreshed = {a: r.model_copy(deep=True) for a, r in self.state.resources.items()}
        return self._execute(plan, refreshed, "apply")

    @trace_operation("destroy")
    def destroy(self, plan: Plan) -> ApplyResult:
        """Delete the resources in a destroy plan."""
        return self._execute(plan, {}, "destroy")

    def _execute(
        self, plan: Plan, refreshed: Dict[str, ResourceRecord], operation: str
    ) -> ApplyResult:
        result = ApplyResult(operation=operation)
        self._result = result
        self._records = refreshed
        self._values = {a: r.attributes() for a, r in self.state.resources.items()}

        tasks = self._build_tasks(plan)
        logger.info(
            "Convergence started",
            run_id=result.run_id,
            operation=operation,
            tasks=len(tasks),
            max_parallelism=self.max_workers,
        )

        with time_operation(f"{operation}_{result.run_id}", {"tasks": len(tasks)}):
            self._run(tasks, result)

        result.finished_at = datetime.now(timezone.utc)
        result.cancelled = self.cancel_event.is_set()

        logger.info(
            "Convergence finished",
            run_id=result.run_id,
            succeeded=result.succeeded,
            cancelled=result.cancelled,
            **{k: len(v) for k, v in result.summary().items()},
        )
        return result

    # ------------------------------------------------------------------
    # Task graph
    # ------------------------------------------------------------------

    def _build_tasks(self, plan: Plan) -> Dict[str, _Task]:
        tasks: Dict[str, _Task] = {}

        for change in plan.changes:
            if change.action == Action.DELETE and change.deposed:
                kind, key = "deposed", deposed_key(change.address, change.physical_id)
            elif change.action == Action.DELETE:
                kind, key = "delete", change.address
            else:
                kind, key = "converge", change.address
            tasks[key] = _Task(
                key=key,
                address=change.address,
                change=change,
                kind=kind,
                physical_id=change.physical_id if change.deposed else None,
            )

        converging = {t.address for t in tasks.values() if t.kind == "converge"}
        deleting = {t.address for t in tasks.values() if t.kind == "delete"}

        # Replacements that keep the old object until the new one is ready
        for task in list(tasks.values()):
            base = self._records.get(task.address)
            if (
                task.kind == "converge"
                and task.change.action == Action.REPLACE
                and task.change.create_before_destroy
                and base is not None
            ):
                key = deposed_key(task.address, base.physical_id)
                tasks.setdefault(
                    key,
                    _Task(
                        key=key,
                        address=task.address,
                        change=task.change,
                        kind="deposed",
                        physical_id=base.physical_id,
                    ),
                )

        for task in tasks.values():
            address = task.address
            if task.kind == "converge":
                task.requires = set(self.resolver.resource_dependencies(address)) & converging

            elif task.kind == "deposed":
                downstream = set(self.state.dependents_closure(address))
                if address in self.built.stack.resources:
                    downstream |= self.resolver.dependents_closure(address)
                task.after = downstream & converging
                # Old objects go only once their replacement is applied
                if address in converging:
                    task.requires = {address}

            else:
                dependents = set(self.state.dependents_of(address))
                task.requires = dependents & deleting
                task.after = dependents & converging

        return tasks

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _run(self, tasks: Dict[str, _Task], result: ApplyResult):
        status = {key: ResourceStatus.PLANNED for key in tasks}
        pending: List[str] = list(tasks)
        running: Dict[Future, _Task] = {}

        self._calls = StdThreadPoolExecutor(
            max_workers=self.max_workers * 2, thread_name_prefix="stackforge-call"
        )
        try:
            with StdThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="stackforge-apply"
            ) as pool:
                while True:
                    self._skip_blocked(tasks, pending, status)

                    launched = False
                    if not self.cancel_event.is_set():
                        for key in list(pending):
                            if len(running) >= self.max_workers:
                                break
                            task = tasks[key]
                            if not self._is_ready(task, status):
                                continue
                            pending.remove(key)
                            launched = True
                            future = self._launch(pool, task, status)
                            if future is not None:
                                running[future] = task

                    if not running:
                        # Tasks finished without a call may have unblocked others
                        if launched:
                            continue
                        break

                    done, _ = wait(running, return_when=FIRST_COMPLETED)
                    for future in done:
                        task = running.pop(future)
                        self._commit(task, future.result(), status)
        finally:
            self._calls.shutdown(wait=True)

        result.not_started = pending
        if pending:
            logger.warning("Resources not started", count=len(pending), addresses=pending)

    @staticmethod
    def _is_ready(task: _Task, status: Dict[str, ResourceStatus]) -> bool:
        return all(status[k] in SUCCEEDED for k in task.requires) and all(
            status[k] in FINISHED for k in task.after
        )

    def _skip_blocked(
        self, tasks: Dict[str, _Task], pending: List[str], status: Dict[str, ResourceStatus]
    ):
        changed = True
        while changed:
            changed = False
            for key in list(pending):
                task = tasks[key]
                blocked = [
                    k
                    for k in sorted(task.requires)
                    if status[k] in (ResourceStatus.FAILED, ResourceStatus.SKIPPED)
                ]
                if not blocked:
                    continue

                pending.remove(key)
                status[key] = ResourceStatus.SKIPPED
                note = f"dependency {blocked[0]} did not converge"
                self._emit(key, ResourceStatus.SKIPPED, note=note)
                self._result.add_result(
                    ResourceResult(
                        address=key,
                        action=task.change.action,
                        status=ResourceStatus.SKIPPED,
                        error_message=note,
                    )
                )
                logger.warning("Resource skipped", address=key, blocked_by=blocked[0])
                changed = True

    def _launch(
        self, pool: StdThreadPoolExecutor, task: _Task, status: Dict[str, ResourceStatus]
    ) -> Optional[Future]:
        if task.kind == "converge":
            resource = self.built.stack.resources[task.address]
            desired = evaluate(resource.attributes, self.built.scope(self._values))
            base = self._records.get(task.address)
            status[task.key] = ResourceStatus.APPLYING
            self._emit(task.key, ResourceStatus.APPLYING)
            return pool.submit(self._converge, task, resource, desired, base)

        if task.kind == "deposed":
            record = self.state.find_deposed(task.address, task.physical_id)
        else:
            record = self.state.get(task.address)

        if record is None:
            # The replacement did not defer a deletion; nothing to do
            status[task.key] = ResourceStatus.DESTROYED
            return None

        status[task.key] = ResourceStatus.DESTROYING
        self._emit(task.key, ResourceStatus.DESTROYING, physical_id=record.physical_id)
        return pool.submit(self._delete, task, record)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _track(self, key: str, active: bool):
        with self.lock:
            if active:
                self.active.add(key)
                self.peak_concurrent = max(self.peak_concurrent, len(self.active))
            else:
                self.active.discard(key)

    def _converge(
        self,
        task: _Task,
        resource: Resource,
        desired: Dict[str, Any],
        base: Optional[ResourceRecord],
    ) -> _Outcome:
        outcome = _Outcome(action=task.change.action, desired=desired)
        self._track(task.key, True)
        start = time.monotonic()

        try:
            if not is_known(desired):
                unresolved = sorted(k for k, v in desired.items() if not is_known(v))
                raise ApplyError(task.address, f"unresolved attributes: {', '.join(unresolved)}")

            if task.change.drifted_attributes and not self.config.execution.overwrite_drift:
                raise DriftError(task.address, task.change.drifted_attributes)

            change = diff_resource(resource, desired, base)
            outcome.action = change.action

            if change.action == Action.NOOP:
                outcome.record = base
            elif change.action == Action.UPDATE:
                self._update(resource, desired, base, outcome)
            elif change.action == Action.CREATE:
                self._create(resource, desired, outcome)
            elif change.create_before_destroy:
                outcome.previous = base
                self._create(resource, desired, outcome)
            else:
                self._emit(task.key, ResourceStatus.DESTROYING, physical_id=base.physical_id)
                self._call_with_retry(
                    f"delete {task.address}",
                    outcome,
                    self.platform.delete,
                    base.type,
                    base.physical_id,
                    base.inputs,
                )
                outcome.removed = True
                self._emit(task.key, ResourceStatus.DESTROYED, physical_id=base.physical_id)
                self._create(resource, desired, outcome)

            logger.info(
                "Resource converged",
                address=task.address,
                action=outcome.action.value,
                attempts=outcome.attempts,
            )

        except Exception as e:
            outcome.error = e
            logger.error(
                "Resource failed",
                address=task.address,
                action=outcome.action.value,
                error=redact_text(str(e)),
            )

        finally:
            outcome.duration_seconds = time.monotonic() - start
            self._track(task.key, False)

        return outcome

    def _delete(self, task: _Task, record: ResourceRecord) -> _Outcome:
        outcome = _Outcome(action=Action.DELETE)
        self._track(task.key, True)
        start = time.monotonic()

        try:
            self._call_with_retry(
                f"delete {task.key}",
                outcome,
                self.platform.delete,
                record.type,
                record.physical_id,
                record.inputs,
            )
            outcome.removed = True
            logger.info("Resource deleted", address=task.key, attempts=outcome.attempts)

        except Exception as e:
            outcome.error = e
            logger.error("Delete failed", address=task.key, error=redact_text(str(e)))

        finally:
            outcome.duration_seconds = time.monotonic() - start
            self._track(task.key, False)

        return outcome

    def _token(self, address: str, desired: Dict[str, Any]) -> str:
        seed = f"{self.state.lineage}:{address}:{digest(desired)}"
        return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]

    def _new_record(
        self,
        resource: Resource,
        desired: Dict[str, Any],
        observed: ObservedResource,
        token: Optional[str],
        outputs: Optional[Dict[str, Any]] = None,
    ) -> ResourceRecord:
        return ResourceRecord(
            address=resource.address,
            type=resource.type,
            physical_id=observed.physical_id,
            inputs=normalize(desired),
            outputs={**(outputs or {}), **observed.outputs},
            dependencies=self.resolver.resource_dependencies(resource.address),
            sensitive=sorted(resource.sensitive),
            create_before_destroy=resource.lifecycle.create_before_destroy,
            prevent_destroy=resource.lifecycle.prevent_destroy,
            token=token,
        )

    def _create(self, resource: Resource, desired: Dict[str, Any], outcome: _Outcome):
        address = resource.address
        inputs = reveal(desired)
        token = self._token(address, desired)

        observed = None
        for attempt in self._retrying(f"create {address}"):
            with attempt:
                outcome.attempts = attempt.retry_state.attempt_number
                if outcome.attempts > 1:
                    # An earlier attempt may have succeeded after its timeout
                    observed = self._call(
                        f"find {address}", self.platform.find, resource.type, inputs, token
                    )
                    if observed is not None:
                        logger.info("Reusing resource from earlier attempt", address=address)
                if observed is None:
                    observed = self._call(
                        f"create {address}", self.platform.create, resource.type, inputs, token
                    )

        outcome.record = self._new_record(resource, desired, observed, token)

        try:
            timeout = self.config.execution.ready_timeout_seconds
            self._call(
                f"wait {address}",
                self.platform.wait_until_ready,
                resource.type,
                observed,
                timeout,
                timeout=timeout,
            )
        except Exception:
            outcome.record.tainted = True
            raise

    def _update(
        self,
        resource: Resource,
        desired: Dict[str, Any],
        base: ResourceRecord,
        outcome: _Outcome,
    ):
        observed = self._call_with_retry(
            f"update {resource.address}",
            outcome,
            self.platform.update,
            resource.type,
            base.physical_id,
            base.inputs,
            reveal(desired),
        )
        outcome.record = self._new_record(resource, desired, observed, base.token, base.outputs)

    # ------------------------------------------------------------------
    # Platform calls
    # ------------------------------------------------------------------

    def _retrying(self, operation: str) -> Retrying:
        retry = self.config.retry

        def log_retry(retry_state):
            logger.warning(
                "Retrying platform call",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=redact_text(str(retry_state.outcome.exception())),
            )

        return Retrying(
            stop=stop_after_attempt(retry.max_attempts),
            wait=wait_exponential(
                multiplier=retry.backoff_multiplier, min=retry.backoff_min, max=retry.backoff_max
            ),
            retry=retry_if_exception_type(TransientPlatformError),
            before_sleep=log_retry,
            reraise=True,
        )

    def _call(self, operation: str, fn: Callable, *args, timeout: Optional[float] = None) -> Any:
        """Run one platform call on the call pool with a timeout.

        The timeout starts when the call starts running: calls that outlived
        their own timeout still hold pool threads, and time spent queued
        behind them is not charged to the next call.
        """
        timeout = timeout or self.config.execution.action_timeout_seconds
        started = threading.Event()

        def run():
            started.set()
            return fn(*args)

        future = self._calls.submit(run)
        started.wait()
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            raise ActionTimeoutError(operation, timeout)

    def _call_with_retry(self, operation: str, outcome: _Outcome, fn: Callable, *args) -> Any:
        for attempt in self._retrying(operation):
            with attempt:
                outcome.attempts = attempt.retry_state.attempt_number
                return self._call(operation, fn, *args)

    # ------------------------------------------------------------------
    # Commit (scheduler thread only)
    # ------------------------------------------------------------------

    def _commit(self, task: _Task, outcome: _Outcome, status: Dict[str, ResourceStatus]):
        changed = False

        if task.kind == "converge":
            if outcome.removed:
                self.state.remove(task.address)
                changed = True
            if outcome.previous is not None and outcome.record is not None:
                self.state.depose(outcome.previous)
                changed = True
            if outcome.record is not None and outcome.record != self.state.get(task.address):
                self.state.put(outcome.record)
                changed = True
        elif outcome.removed:
            if task.kind == "deposed":
                self.state.remove_deposed(task.address, task.physical_id)
            else:
                self.state.remove(task.address)
            changed = True

        if changed:
            self.state.stack = self.built.stack.name
            self.store.save(self.state)

        physical_id = outcome.record.physical_id if outcome.record is not None else None
        if outcome.error is not None:
            final = ResourceStatus.FAILED
            message = redact_text(str(outcome.error))
        else:
            final = ResourceStatus.DESTROYED if task.kind != "converge" else ResourceStatus.APPLIED
            message = None
            if task.kind == "converge":
                self._values[task.address] = {**outcome.desired, **outcome.record.outputs}
            elif task.kind == "delete":
                self._values.pop(task.address, None)

        status[task.key] = final
        self._emit(task.key, final, physical_id=physical_id, note=outcome.action.value)
        self._result.add_result(
            ResourceResult(
                address=task.key,
                action=outcome.action,
                status=final,
                physical_id=physical_id,
                attempts=outcome.attempts,
                duration_seconds=outcome.duration_seconds,
                error_message=message,
                error=outcome.error,
            )
        )

    def _emit(
        self,
        address: str,
        status: ResourceStatus,
        physical_id: Optional[str] = None,
        note: str = "",
    ):
        event = ResourceEvent(address=address, status=status, physical_id=physical_id, note=note)
        with self.lock:
            self._result.events.append(event)
        logger.debug("Resource event", address=address, status=status.name, note=note)
        if self.on_event is not None:
            self.on_event(event)

    def get_stats(self) -> Dict[str, Any]:
        """Get applier statistics."""
        with self.lock:
            return {
                "max_workers": self.max_workers,
                "active": len(self.active),
                "peak_concurrent": self.peak_concurrent,
                "cancelled": self.cancel_event.is_set(),
            }
