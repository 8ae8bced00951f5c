"""
Resource Differ

Chooses the minimal action that converges one resource by comparing its
desired attributes with the last-known record. Desired values are compared
in normalized form, so secrets are compared by digest and never appear in a
diff.
"""

from typing import Any, Dict, List, Optional

from ..errors import ApplyError
from ..expressions import SENSITIVE_PLACEHOLDER, is_known, is_sensitive, normalize, redact
from ..platform.schema import get_schema
from ..state import ResourceRecord
from ..types import Action, AttributeChange, PlannedChange, Resource

_MISSING = object()


def _display(resource: Resource, attribute: str, value: Any) -> Any:
    if value is _MISSING:
        return None
    if attribute in resource.sensitive or is_sensitive(value):
        return SENSITIVE_PLACEHOLDER
    return redact(value)


def _display_recorded(resource: Resource, attribute: str, value: Any) -> Any:
    if value is _MISSING:
        return None
    if attribute in resource.sensitive:
        return SENSITIVE_PLACEHOLDER
    return value


def attribute_changes(
    resource: Resource, desired: Dict[str, Any], recorded: Dict[str, Any]
) -> List[AttributeChange]:
    """Attributes whose desired value differs from the recorded one."""
    schema = get_schema(resource.type)
    ignored = set(resource.lifecycle.ignore_changes)
    changes: List[AttributeChange] = []

    for attribute in sorted(set(desired) | set(recorded)):
        if attribute in ignored:
            continue

        after = desired.get(attribute, _MISSING)
        before = recorded.get(attribute, _MISSING)

        if after is not _MISSING and is_known(after):
            if before is not _MISSING and normalize(after) == before:
                continue
        elif after is _MISSING and before is _MISSING:
            continue

        changes.append(
            AttributeChange(
                name=attribute,
                before=_display_recorded(resource, attribute, before),
                after=_display(resource, attribute, after),
                forces_replacement=schema.forces_replacement(attribute),
                sensitive=attribute in resource.sensitive,
            )
        )

    return changes


def diff_resource(
    resource: Resource, desired: Dict[str, Any], record: Optional[ResourceRecord]
) -> PlannedChange:
    """
    Plan one resource.

    Args:
        resource: The declaration
        desired: Evaluated attributes; may contain ``UNKNOWN`` and secrets
        record: Last-known state, ``None`` if the resource does not exist

    Raises:
        ApplyError: A replacement is needed but ``prevent_destroy`` is set
    """
    lifecycle = resource.lifecycle
    change = PlannedChange(
        address=resource.address,
        resource_type=resource.type,
        action=Action.NOOP,
        create_before_destroy=lifecycle.create_before_destroy,
    )

    if record is None:
        change.action = Action.CREATE
        change.reason = "not in state"
        change.changes = [
            AttributeChange(
                name=name,
                before=None,
                after=_display(resource, name, value),
                sensitive=name in resource.sensitive,
            )
            for name, value in sorted(desired.items())
        ]
        return change

    change.changes = attribute_changes(resource, desired, record.inputs)

    if record.tainted:
        change.action = Action.REPLACE
        change.reason = "tainted: previous create never became ready"
    elif any(c.forces_replacement for c in change.changes):
        change.action = Action.REPLACE
        forcing = [c.name for c in change.changes if c.forces_replacement]
        change.reason = f"forces replacement: {', '.join(forcing)}"
    elif change.changes:
        change.action = Action.UPDATE
        change.reason = f"update in place: {', '.join(c.name for c in change.changes)}"

    if change.action == Action.REPLACE and lifecycle.prevent_destroy:
        raise ApplyError(resource.address, "prevent_destroy is set but a replacement is required")

    return change


def diff_deletion(record: ResourceRecord, reason: str, deposed: bool = False) -> PlannedChange:
    """Plan the deletion of a recorded resource."""
    if record.prevent_destroy and not deposed:
        raise ApplyError(record.address, "prevent_destroy is set but deletion was requested")

    return PlannedChange(
        address=record.address,
        resource_type=record.type,
        action=Action.DELETE,
        changes=[
            AttributeChange(
                name=name,
                before=SENSITIVE_PLACEHOLDER if name in record.sensitive else value,
                after=None,
                sensitive=name in record.sensitive,
            )
            for name, value in sorted(record.inputs.items())
        ],
        reason=reason,
        create_before_destroy=record.create_before_destroy,
        deposed=deposed,
        physical_id=record.physical_id,
    )
