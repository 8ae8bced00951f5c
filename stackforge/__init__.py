"""
Stackforge - Declarative resource-graph convergence.

A stack declares variables, read-only data lookups, locals, resources and
outputs. Stackforge builds a dependency graph from the declarations, plans
the minimal actions that converge the platform to them, applies the actions
in dependency order with bounded parallelism and retries, and projects the
declared outputs from the converged state.
"""

from .config import StackforgeConfig
from .engine import ConvergenceApplier, OutputProjector, Planner, StackRunner
from .errors import (
    ApplyError,
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    DataLookupError,
    DriftError,
    MissingVariableError,
    SensitiveValueError,
    StackforgeError,
)
from .expressions import Call, Format, Join, JsonEncode, Ref, Var
from .graph import DependencyResolver, GraphBuilder
from .stack import Stack
from .types import Action, ApplyResult, Lifecycle, Plan, ResourceStatus

__version__ = "0.1.0"

__all__ = [
    "StackforgeConfig",
    "Stack",
    "Lifecycle",
    "Ref",
    "Var",
    "Format",
    "Join",
    "JsonEncode",
    "Call",
    "GraphBuilder",
    "DependencyResolver",
    "Planner",
    "ConvergenceApplier",
    "OutputProjector",
    "StackRunner",
    "Action",
    "Plan",
    "ApplyResult",
    "ResourceStatus",
    "StackforgeError",
    "ConfigurationError",
    "MissingVariableError",
    "DanglingReferenceError",
    "CycleError",
    "SensitiveValueError",
    "DataLookupError",
    "ApplyError",
    "DriftError",
]
