"""Abstract base class for target platforms."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import DataLookupError


@dataclass
class ObservedResource:
    """What the platform reports about one managed resource.

    ``outputs`` holds computed attributes (id, arn, dns_name, ...).
    ``inputs`` holds whichever declared attributes the platform can read
    back; it is used for drift detection and may be partial or ``None``.
    """

    physical_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    inputs: Optional[Dict[str, Any]] = None


class Platform(ABC):
    """The external control plane the engine converges against.

    Lookups and ``read`` are read-only. ``create``, ``update`` and ``delete``
    are the only calls with side effects. All inputs handed to write calls
    are already evaluated and revealed (secrets unwrapped); implementations
    must never log them.
    """

    name: str = "abstract"

    @abstractmethod
    def lookup(self, kind: str, filters: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve a read-only data lookup.

        Raises ``DataLookupError`` when the query matches nothing or is
        ambiguous.
        """
        ...

    @abstractmethod
    def read(
        self, resource_type: str, physical_id: str, inputs: Dict[str, Any]
    ) -> Optional[ObservedResource]:
        """Return the current state of a resource, or ``None`` if it is gone."""
        ...

    @abstractmethod
    def create(
        self, resource_type: str, inputs: Dict[str, Any], token: str
    ) -> ObservedResource:
        """Create a resource. ``token`` identifies this create for deduplication."""
        ...

    @abstractmethod
    def update(
        self,
        resource_type: str,
        physical_id: str,
        old_inputs: Dict[str, Any],
        new_inputs: Dict[str, Any],
    ) -> ObservedResource:
        """Update mutable attributes in place."""
        ...

    @abstractmethod
    def delete(self, resource_type: str, physical_id: str, inputs: Dict[str, Any]) -> None:
        """Delete a resource; deleting something already gone is not an error."""
        ...

    def find(
        self, resource_type: str, inputs: Dict[str, Any], token: str
    ) -> Optional[ObservedResource]:
        """Return a resource created earlier with *token*, if the platform can tell."""
        return None

    def wait_until_ready(
        self, resource_type: str, observed: ObservedResource, timeout: float
    ) -> None:
        """Block until a freshly created resource is healthy."""
        return None

    @staticmethod
    def _single(kind: str, filters: Dict[str, Any], matches: list, what: str) -> Any:
        if not matches:
            raise DataLookupError(kind, filters, f"no {what} matched")
        if len(matches) > 1:
            raise DataLookupError(kind, filters, f"{len(matches)} {what} matched, expected 1")
        return matches[0]
