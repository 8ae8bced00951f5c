"""
Stack Runner

Entry point that wires the graph builder, planner, applier and output
projector together for one stack, one platform and one state file.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from ..config import StackforgeConfig, get_config
from ..graph.builder import BuiltGraph, GraphBuilder
from ..logging import get_logger, with_correlation_id
from ..platform import get_platform
from ..platform.base import Platform
from ..stack import Stack
from ..state import ResourceRecord, StackState, StateStore
from ..types import ApplyResult, OutputValue, Plan, ResourceEvent
from .applier import ConvergenceApplier
from .outputs import OutputProjector
from .planner import Planner

logger = get_logger(__name__)


@dataclass
class RunPlan:
    """A plan together with everything needed to apply it."""

    built: BuiltGraph
    plan: Plan
    state: StackState
    destroy: bool = False
    refreshed: Dict[str, ResourceRecord] = field(default_factory=dict)


class StackRunner:
    """Validate, plan, apply and destroy one stack."""

    def __init__(
        self,
        stack: Stack,
        platform: Optional[Platform] = None,
        state_file: Optional[str] = None,
        config: Optional[StackforgeConfig] = None,
        on_event: Optional[Callable[[ResourceEvent], None]] = None,
    ):
        self.stack = stack
        self.on_event = on_event
        self.config = config or get_config()
        self.platform = platform or get_platform()
        self.store = StateStore(
            state_file or self.config.state.state_file, backup=self.config.state.backup
        )
        self.builder = GraphBuilder(self.platform)
        self.cancel_event = threading.Event()

    def cancel(self):
        self.cancel_event.set()

    def validate(self, variables: Optional[Mapping[str, Any]] = None) -> BuiltGraph:
        """Build the graph without contacting the platform."""
        return self.builder.build(self.stack, variables, resolve_lookups=False)

    def build(self, variables: Optional[Mapping[str, Any]] = None) -> BuiltGraph:
        return self.builder.build(self.stack, variables)

    def load_state(self) -> StackState:
        return self.store.load()

    def plan(
        self,
        variables: Optional[Mapping[str, Any]] = None,
        targets: Optional[Iterable[str]] = None,
        refresh: bool = True,
    ) -> RunPlan:
        built = self.build(variables)
        state = self.load_state()
        planner = Planner(built, self.platform, state, self.config.execution.overwrite_drift)
        plan = planner.plan(targets, refresh=refresh)
        return RunPlan(built=built, plan=plan, state=state, refreshed=planner.refreshed)

    def plan_destroy(
        self,
        variables: Optional[Mapping[str, Any]] = None,
        targets: Optional[Iterable[str]] = None,
    ) -> RunPlan:
        built = self.validate(variables)
        state = self.load_state()
        planner = Planner(built, self.platform, state, self.config.execution.overwrite_drift)
        return RunPlan(
            built=built, plan=planner.plan_destroy(targets), state=state, destroy=True
        )

    def _applier(self, run_plan: RunPlan) -> ConvergenceApplier:
        return ConvergenceApplier(
            run_plan.built,
            self.platform,
            self.store,
            run_plan.state,
            config=self.config,
            cancel_event=self.cancel_event,
            on_event=self.on_event,
        )

    @with_correlation_id()
    def apply(
        self,
        variables: Optional[Mapping[str, Any]] = None,
        targets: Optional[Iterable[str]] = None,
        run_plan: Optional[RunPlan] = None,
    ) -> ApplyResult:
        """Plan (unless a plan is given), converge, and project outputs."""
        run_plan = run_plan or self.plan(variables, targets)
        result = self._applier(run_plan).apply(run_plan.plan, run_plan.refreshed)
        result.outputs = OutputProjector(run_plan.built).project(run_plan.state, result)
        return result

    @with_correlation_id()
    def destroy(
        self,
        variables: Optional[Mapping[str, Any]] = None,
        targets: Optional[Iterable[str]] = None,
        run_plan: Optional[RunPlan] = None,
    ) -> ApplyResult:
        run_plan = run_plan or self.plan_destroy(variables, targets)
        return self._applier(run_plan).destroy(run_plan.plan)

    def outputs(self, variables: Optional[Mapping[str, Any]] = None) -> Dict[str, OutputValue]:
        """Outputs from last-known state; no platform calls are made."""
        built = self.validate(variables)
        return OutputProjector(built).project(self.load_state())
