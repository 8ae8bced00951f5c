"""
Core Type Definitions for Stackforge

This module defines the fundamental data types used throughout stackforge:
the declarations that make up a stack (variables, data lookups, locals,
resources, outputs), the plan produced by diffing, and the results of an
apply or destroy run.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import SecretStr

from .expressions import SENSITIVE_PLACEHOLDER

_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]*$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceStatus(Enum):
    """Status of a resource during a convergence run."""

    PLANNED = auto()  # Declared, not yet scheduled
    APPLYING = auto()  # Platform calls in flight
    APPLIED = auto()  # Converged
    FAILED = auto()  # Gave up after retries, or rejected
    SKIPPED = auto()  # Never scheduled because a producer failed
    DESTROYING = auto()  # Delete in flight
    DESTROYED = auto()  # Deleted


class Action(Enum):
    """Minimal action that converges one resource."""

    NOOP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


class NodeKind(Enum):
    """Kinds of node in the resource graph."""

    RESOURCE = auto()
    DATA = auto()
    LOCAL = auto()


class _Required:
    def __repr__(self) -> str:
        return "REQUIRED"


REQUIRED: Any = _Required()


def _check_name(kind: str, name: str):
    if not _NAME_RE.match(name):
        raise ValueError(f"Invalid {kind} name: {name!r}")


@dataclass(frozen=True)
class Lifecycle:
    """Lifecycle policy for a resource."""

    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: Tuple[str, ...] = ()


@dataclass
class Variable:
    """An externally supplied input."""

    name: str
    type: type = str
    default: Any = REQUIRED
    sensitive: bool = False
    description: str = ""

    def __post_init__(self):
        _check_name("variable", self.name)

        if self.sensitive and self.type is not str:
            raise ValueError("Only string variables can be sensitive")

    @property
    def required(self) -> bool:
        return self.default is REQUIRED

    def coerce(self, value: Any) -> Any:
        """Convert a raw binding (often a CLI string) to the declared type."""
        if value is None:
            if self.required or self.default is not None:
                raise TypeError(f"{self.name} cannot be null")
            return None

        if isinstance(value, SecretStr):
            value = value.get_secret_value()

        if self.type is bool and isinstance(value, str):
            value = value.lower() in ("true", "1", "yes", "on")
        elif self.type in (int, float) and isinstance(value, str):
            value = self.type(value)
        elif self.type is list and isinstance(value, str):
            value = [v.strip() for v in value.split(",") if v.strip()]

        if not isinstance(value, self.type):
            raise TypeError(f"{self.name} expects {self.type.__name__}")

        return SecretStr(value) if self.sensitive else value


@dataclass
class DataLookup:
    """A read-only query against existing external state."""

    kind: str
    name: str
    filters: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()

    def __post_init__(self):
        _check_name("data lookup", self.name)

    @property
    def address(self) -> str:
        return f"data.{self.kind}.{self.name}"


@dataclass
class Local:
    """A named value computed from variables, lookups and other locals."""

    name: str
    value: Any

    def __post_init__(self):
        _check_name("local", self.name)

    @property
    def address(self) -> str:
        return f"local.{self.name}"


@dataclass
class Resource:
    """A declared unit of external infrastructure."""

    type: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    # Attributes allowed to receive sensitive values
    sensitive: FrozenSet[str] = frozenset()
    description: str = ""

    def __post_init__(self):
        _check_name("resource", self.name)
        self.depends_on = tuple(self.depends_on)
        self.sensitive = frozenset(self.sensitive)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


@dataclass
class Output:
    """A named, user-facing value computed after apply."""

    name: str
    value: Any
    description: str = ""
    sensitive: bool = False

    def __post_init__(self):
        _check_name("output", self.name)


@dataclass
class AttributeChange:
    """One attribute difference; values are already display-safe."""

    name: str
    before: Any
    after: Any
    forces_replacement: bool = False
    sensitive: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "before": self.before,
            "after": self.after,
            "forces_replacement": self.forces_replacement,
            "sensitive": self.sensitive,
        }


@dataclass
class PlannedChange:
    """The action chosen for one resource and why."""

    address: str
    resource_type: str
    action: Action
    changes: List[AttributeChange] = field(default_factory=list)
    reason: str = ""
    create_before_destroy: bool = False
    # Attributes changed outside stackforge that differ from the declaration
    drifted_attributes: List[str] = field(default_factory=list)
    # Deletes the leftover old object of an interrupted replacement
    deposed: bool = False
    # Object a deletion targets, which tells deposed objects of one address apart
    physical_id: Optional[str] = None

    @property
    def is_write(self) -> bool:
        return self.action != Action.NOOP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "action": self.action.value,
            "changes": [c.to_dict() for c in self.changes],
            "reason": self.reason,
            "create_before_destroy": self.create_before_destroy,
            "drifted_attributes": self.drifted_attributes,
            "deposed": self.deposed,
            "physical_id": self.physical_id,
        }


@dataclass
class Plan:
    """Ordered set of planned changes for a stack."""

    changes: List[PlannedChange] = field(default_factory=list)
    plan_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    created_at: datetime = field(default_factory=_utcnow)
    drifted: List[str] = field(default_factory=list)

    def get(self, address: str) -> Optional[PlannedChange]:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    @property
    def has_changes(self) -> bool:
        return any(c.is_write or c.drifted_attributes for c in self.changes)

    def counts(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "created_at": self.created_at.isoformat(),
            "counts": self.counts(),
            "drifted": self.drifted,
            "changes": [c.to_dict() for c in self.changes],
        }


@dataclass
class ResourceEvent:
    """A state transition observed during a run."""

    address: str
    status: ResourceStatus
    physical_id: Optional[str] = None
    note: str = ""
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class ResourceResult:
    """Outcome of converging one resource."""

    address: str
    action: Action
    status: ResourceStatus
    physical_id: Optional[str] = None
    attempts: int = 0
    duration_seconds: float = 0.0
    error_message: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (ResourceStatus.APPLIED, ResourceStatus.DESTROYED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "action": self.action.value,
            "status": self.status.name,
            "physical_id": self.physical_id,
            "attempts": self.attempts,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
        }


@dataclass
class OutputValue:
    """A projected output; unavailable when its producers did not converge."""

    name: str
    value: Any = None
    available: bool = True
    sensitive: bool = False
    reason: str = ""

    def display(self) -> str:
        if not self.available:
            return f"(unavailable: {self.reason})"
        if self.sensitive:
            return SENSITIVE_PLACEHOLDER
        return str(self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": SENSITIVE_PLACEHOLDER if self.sensitive and self.available else self.value,
            "available": self.available,
            "sensitive": self.sensitive,
            "reason": self.reason,
        }


@dataclass
class ApplyResult:
    """Partial-success summary of an apply or destroy run."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    operation: str = "apply"
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    results: Dict[str, ResourceResult] = field(default_factory=dict)
    not_started: List[str] = field(default_factory=list)
    events: List[ResourceEvent] = field(default_factory=list)
    outputs: Dict[str, OutputValue] = field(default_factory=dict)
    cancelled: bool = False

    def add_result(self, result: ResourceResult):
        self.results[result.address] = result

    def _with_status(self, *statuses: ResourceStatus) -> List[str]:
        return [a for a, r in self.results.items() if r.status in statuses]

    @property
    def applied(self) -> List[str]:
        return [
            a
            for a, r in self.results.items()
            if r.status == ResourceStatus.APPLIED and r.action != Action.NOOP
        ]

    @property
    def unchanged(self) -> List[str]:
        return [a for a, r in self.results.items() if r.action == Action.NOOP]

    @property
    def failed(self) -> List[str]:
        return self._with_status(ResourceStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with_status(ResourceStatus.SKIPPED)

    @property
    def destroyed(self) -> List[str]:
        return self._with_status(ResourceStatus.DESTROYED)

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.skipped and not self.not_started

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def summary(self) -> Dict[str, List[str]]:
        return {
            "applied": self.applied,
            "destroyed": self.destroyed,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
            "not_started": list(self.not_started),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "cancelled": self.cancelled,
            "succeeded": self.succeeded,
            "summary": self.summary(),
            "resources": {a: r.to_dict() for a, r in self.results.items()},
            "outputs": {n: o.to_dict() for n, o in self.outputs.items()},
        }


# Type aliases for convenience
Address = str
PhysicalID = str
