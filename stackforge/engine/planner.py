"""
Planner

Refreshes last-known state against the platform and produces the ordered
plan for an apply or a destroy. The planner never writes to the platform or
to the state file; it works on copies of the recorded state.
"""

from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import SecretStr

from ..config import get_config
from ..errors import ConfigurationError
from ..expressions import evaluate, is_known, normalize
from ..graph.builder import BuiltGraph
from ..graph.resolver import DependencyResolver
from ..logging import get_logger, trace_operation
from ..platform.base import ObservedResource, Platform
from ..state import ResourceRecord, StackState
from ..types import Action, Plan, PlannedChange, Resource
from .differ import diff_deletion, diff_resource

logger = get_logger(__name__)

# Computed attributes that survive an in-place update
STABLE_OUTPUTS = ("id", "arn")


def observed_inputs(resource: Resource, inputs: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize attributes read back from the platform for comparison."""
    normalized = {}
    for name, value in inputs.items():
        if name in resource.sensitive and isinstance(value, str):
            value = SecretStr(value)
        normalized[name] = normalize(value)
    return normalized


def exposed_values(
    change: PlannedChange, desired: Dict[str, Any], record: Optional[ResourceRecord]
) -> Dict[str, Any]:
    """What downstream references see for a resource after *change*."""
    if change.action == Action.NOOP and record is not None:
        return {**desired, **record.outputs}
    if change.action == Action.UPDATE and record is not None:
        stable = {k: v for k, v in record.outputs.items() if k in STABLE_OUTPUTS}
        return {**desired, **stable}
    return dict(desired)


class Planner:
    """Builds plans from a built graph, the platform and last-known state."""

    def __init__(
        self,
        built: BuiltGraph,
        platform: Platform,
        state: StackState,
        overwrite_drift: Optional[bool] = None,
    ):
        self.built = built
        self.platform = platform
        self.state = state
        self.resolver = DependencyResolver(built)
        if overwrite_drift is None:
            overwrite_drift = get_config().execution.overwrite_drift
        self.overwrite_drift = overwrite_drift

        # Refreshed copies of the recorded resources, handed to the applier
        self.refreshed: Dict[str, ResourceRecord] = {}

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _read(self, record: ResourceRecord) -> Optional[ObservedResource]:
        return self.platform.read(record.type, record.physical_id, record.inputs)

    def refresh(
        self, resource: Resource, desired: Dict[str, Any], record: ResourceRecord
    ) -> Optional[List[str]]:
        """
        Reconcile one record with what the platform reports.

        Returns ``None`` when the resource is gone, otherwise the drifted
        attributes. Observed values equal to the desired ones are adopted;
        other differences are drift and are adopted only when overwriting.
        """
        observed = self._read(record)
        if observed is None:
            logger.warning("Resource deleted outside stackforge", address=record.address)
            return None

        record.outputs.update(observed.outputs)
        if observed.inputs is None:
            return []

        ignored = set(resource.lifecycle.ignore_changes)
        current = observed_inputs(
            resource, {k: v for k, v in observed.inputs.items() if k in record.inputs}
        )
        drifted: List[str] = []

        for name, value in sorted(current.items()):
            if name in ignored or value == record.inputs.get(name):
                continue

            wanted = desired.get(name)
            if is_known(wanted) and normalize(wanted) == value:
                record.inputs[name] = value
                continue

            drifted.append(name)
            if self.overwrite_drift:
                record.inputs[name] = value

        if drifted:
            logger.warning("Drift detected", address=record.address, attributes=drifted)
        return drifted

    # ------------------------------------------------------------------
    # Apply plans
    # ------------------------------------------------------------------

    @trace_operation("plan")
    def plan(self, targets: Optional[Iterable[str]] = None, refresh: bool = True) -> Plan:
        """
        Plan an apply.

        Args:
            targets: Restrict the plan to these resource addresses; their
                dependencies must already be recorded in state
            refresh: Read every recorded resource back from the platform

        Raises:
            ConfigurationError: Invalid target, or a dependency outside the
                targets has no recorded state
            ApplyError: A prevent_destroy resource would be replaced
        """
        stack = self.built.stack
        targets = list(targets) if targets is not None else None
        order = self.resolver.apply_order(targets)

        values: Dict[str, Any] = {}
        if targets is not None:
            for dependency in self.resolver.external_dependencies(targets):
                record = self.state.get(dependency)
                if record is None:
                    raise ConfigurationError(
                        dependency, None, "recorded state for a dependency outside the targets"
                    )
                values[dependency] = record.attributes()

        plan = Plan()
        self.refreshed = {}

        for address in order:
            resource = stack.resources[address]
            desired = evaluate(resource.attributes, self.built.scope(values))

            stored = self.state.get(address)
            record = stored.model_copy(deep=True) if stored is not None else None
            drifted: List[str] = []
            missing = False

            if record is not None and refresh:
                result = self.refresh(resource, desired, record)
                if result is None:
                    record, missing = None, True
                else:
                    drifted = result

            if record is not None:
                self.refreshed[address] = record

            change = diff_resource(resource, desired, record)
            if missing:
                change.reason = "deleted outside stackforge"
            if drifted:
                plan.drifted.append(address)
                if self.overwrite_drift:
                    change.reason = f"overwriting drift on {', '.join(drifted)}"
                else:
                    change.drifted_attributes = drifted
                    change.reason = f"drift on {', '.join(drifted)}"

            plan.changes.append(change)
            values[address] = exposed_values(change, desired, record)

        if targets is None:
            plan.changes.extend(self._cleanup_changes())

        logger.info("Plan ready", plan_id=plan.plan_id, drifted=len(plan.drifted), **plan.counts())
        return plan

    def _cleanup_changes(self) -> List[PlannedChange]:
        """Deletions for orphaned records and leftover deposed objects."""
        declared = set(self.built.stack.resources)
        orphans = [a for a in self.state.addresses() if a not in declared]
        changes = [
            diff_deletion(self.state.resources[a], "no longer declared")
            for a in self.state.destroy_order(orphans)
        ]
        changes.extend(
            diff_deletion(record, "deposed by an earlier replacement", deposed=True)
            for record in self.state.deposed_records()
        )
        return changes

    # ------------------------------------------------------------------
    # Destroy plans
    # ------------------------------------------------------------------

    @trace_operation("plan_destroy")
    def plan_destroy(self, targets: Optional[Iterable[str]] = None) -> Plan:
        """Plan the deletion of *targets* and everything recorded that depends on them."""
        if targets is None:
            selected: Set[str] = set(self.state.resources)
        else:
            selected = set()
            for target in targets:
                if self.state.get(target) is None:
                    raise ConfigurationError("targets", target, "addresses recorded in state")
                selected.add(target)
                selected |= self.state.dependents_closure(target)

        plan = Plan()
        plan.changes = [
            diff_deletion(self.state.resources[a], "destroy requested")
            for a in self.state.destroy_order(selected)
        ]
        if targets is None:
            plan.changes.extend(
                diff_deletion(record, "deposed by an earlier replacement", deposed=True)
                for record in self.state.deposed_records()
            )

        logger.info("Destroy plan ready", plan_id=plan.plan_id, **plan.counts())
        return plan
