"""
Planning and convergence.
"""

from .applier import ConvergenceApplier, deposed_key
from .differ import attribute_changes, diff_deletion, diff_resource
from .outputs import OutputProjector
from .planner import Planner
from .runner import RunPlan, StackRunner

__all__ = [
    "ConvergenceApplier",
    "OutputProjector",
    "Planner",
    "RunPlan",
    "StackRunner",
    "attribute_changes",
    "deposed_key",
    "diff_deletion",
    "diff_resource",
]
