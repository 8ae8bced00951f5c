"""Persisted last-known state for stackforge."""

import json
import os
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from .errors import StateError
from .logging import get_logger

logger = get_logger(__name__)

STATE_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResourceRecord(BaseModel):
    """Last-known state of one managed resource.

    ``inputs`` are normalized: secrets are stored only as SHA-256 digests.
    """

    address: str
    type: str
    physical_id: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    sensitive: List[str] = Field(default_factory=list)
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    # Created but never confirmed ready; replaced on the next apply
    tainted: bool = False
    token: Optional[str] = None
    updated_at: str = Field(default_factory=_now)

    def attributes(self) -> Dict[str, Any]:
        """Inputs overlaid with computed outputs, as seen by references."""
        return {**self.inputs, **self.outputs}


class StackState(BaseModel):
    """Everything stackforge remembers about one deployed stack."""

    version: int = STATE_VERSION
    stack: Optional[str] = None
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    updated_at: str = Field(default_factory=_now)
    resources: Dict[str, ResourceRecord] = Field(default_factory=dict)
    # Old objects of create-before-destroy replacements not yet deleted, oldest first
    deposed: Dict[str, List[ResourceRecord]] = Field(default_factory=dict)

    def get(self, address: str) -> Optional[ResourceRecord]:
        return self.resources.get(address)

    def put(self, record: ResourceRecord) -> None:
        self.resources[record.address] = record

    def remove(self, address: str) -> Optional[ResourceRecord]:
        return self.resources.pop(address, None)

    def addresses(self) -> List[str]:
        return sorted(self.resources)

    def depose(self, record: ResourceRecord) -> None:
        self.deposed.setdefault(record.address, []).append(record)

    def find_deposed(self, address: str, physical_id: str) -> Optional[ResourceRecord]:
        for record in self.deposed.get(address, []):
            if record.physical_id == physical_id:
                return record
        return None

    def remove_deposed(self, address: str, physical_id: str) -> None:
        remaining = [r for r in self.deposed.get(address, []) if r.physical_id != physical_id]
        if remaining:
            self.deposed[address] = remaining
        else:
            self.deposed.pop(address, None)

    def deposed_records(self) -> List[ResourceRecord]:
        """Every deposed object, by address and then age."""
        return [r for address in sorted(self.deposed) for r in self.deposed[address]]

    def dependents_of(self, address: str) -> List[str]:
        """Recorded resources that depend on *address*."""
        return sorted(a for a, r in self.resources.items() if address in r.dependencies)

    def dependents_closure(self, address: str) -> Set[str]:
        closure: Set[str] = set()
        pending = self.dependents_of(address)
        while pending:
            current = pending.pop()
            if current not in closure:
                closure.add(current)
                pending.extend(self.dependents_of(current))
        return closure

    def destroy_order(self, addresses: Optional[Iterable[str]] = None) -> List[str]:
        """Recorded resources ordered so dependents are deleted before producers.

        Ties are broken by address, so the order is stable across runs.
        """
        members = set(self.resources if addresses is None else addresses)
        remaining_dependents = {
            a: {d for d in self.dependents_of(a) if d in members} for a in members
        }
        ready = sorted(a for a, deps in remaining_dependents.items() if not deps)
        order: List[str] = []

        while ready:
            address = ready.pop(0)
            order.append(address)
            for producer in self.resources[address].dependencies:
                if producer in remaining_dependents and address in remaining_dependents[producer]:
                    remaining_dependents[producer].discard(address)
                    if not remaining_dependents[producer]:
                        ready.append(producer)
                        ready.sort()

        if len(order) != len(members):
            raise StateError("state", "order", "recorded dependencies contain a cycle")
        return order


class StateStore:
    """JSON state file with atomic replacement and an optional backup."""

    def __init__(self, path: str, backup: bool = True):
        self.path = Path(path)
        self.backup = backup
        self._lock = threading.Lock()

    @property
    def backup_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + ".backup")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> StackState:
        """Load state from the JSON file, or start empty if it is missing."""
        if not self.path.exists():
            return StackState()

        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise StateError(str(self.path), "read", str(e))

        if data.get("version", STATE_VERSION) > STATE_VERSION:
            raise StateError(
                str(self.path), "read", f"state version {data['version']} is newer than supported"
            )

        try:
            return StackState(**data)
        except ValidationError as e:
            raise StateError(str(self.path), "read", f"invalid state: {e.error_count()} errors")

    def save(self, state: StackState) -> None:
        """Bump the serial and atomically replace the state file."""
        with self._lock:
            state.serial += 1
            state.updated_at = _now()

            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                if self.backup and self.path.exists():
                    shutil.copyfile(self.path, self.backup_path)
                tmp.write_text(state.model_dump_json(indent=2))
                os.replace(tmp, self.path)
            except OSError as e:
                raise StateError(str(self.path), "write", str(e))

        logger.debug("State saved", path=str(self.path), serial=state.serial)
