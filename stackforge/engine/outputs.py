"""
Output Projector

Computes declared outputs from the final attributes of converged resources.
An output whose producers did not converge is reported as unavailable with
the reason, never with a stale value.
"""

from typing import Dict, List, Optional, Set

from ..expressions import collect_references, evaluate, is_known, is_sensitive
from ..graph.builder import BuiltGraph
from ..logging import get_logger
from ..state import StackState
from ..types import ApplyResult, NodeKind, OutputValue, ResourceStatus

logger = get_logger(__name__)


class OutputProjector:
    """Projects stack outputs from state and an optional run result."""

    def __init__(self, built: BuiltGraph):
        self.built = built

    def producers(self, name: str) -> List[str]:
        """Resources an output depends on, directly or through locals and lookups."""
        graph = self.built.graph
        found: Set[str] = set()
        for ref in collect_references(self.built.stack.outputs[name].value):
            if ref.address not in graph:
                continue
            candidates = {ref.address} | graph.ancestors(ref.address)
            found |= {a for a in candidates if graph.nodes[a].kind == NodeKind.RESOURCE}
        return sorted(found, key=lambda a: graph.nodes[a].index)

    def _unavailable_reason(
        self, producers: List[str], state: StackState, result: Optional[ApplyResult]
    ) -> Optional[str]:
        for address in producers:
            if result is not None:
                if address in result.not_started:
                    return f"{address} was not started"
                outcome = result.results.get(address)
                if outcome is not None and outcome.status in (
                    ResourceStatus.FAILED,
                    ResourceStatus.SKIPPED,
                ):
                    return f"{address} {outcome.status.name.lower()}"
            record = state.get(address)
            if record is None:
                return f"{address} is not in state"
            if record.tainted:
                # Created but never confirmed ready
                return f"{address} failed"
        return None

    def project(
        self, state: StackState, result: Optional[ApplyResult] = None
    ) -> Dict[str, OutputValue]:
        values = {a: r.attributes() for a, r in state.resources.items()}
        scope = self.built.scope(values)
        projected: Dict[str, OutputValue] = {}

        for name, output in self.built.stack.outputs.items():
            reason = self._unavailable_reason(self.producers(name), state, result)
            if reason is not None:
                projected[name] = OutputValue(
                    name=name, available=False, sensitive=output.sensitive, reason=reason
                )
                continue

            value = evaluate(output.value, scope)
            if not is_known(value):
                projected[name] = OutputValue(
                    name=name,
                    available=False,
                    sensitive=output.sensitive,
                    reason="value known after apply",
                )
                continue

            sensitive = output.sensitive or is_sensitive(value)
            projected[name] = OutputValue(
                name=name, value=None if sensitive else value, sensitive=sensitive
            )

        logger.debug(
            "Outputs projected",
            available=sum(1 for o in projected.values() if o.available),
            total=len(projected),
        )
        return projected
