"""Tests for per-resource diffing."""

import pytest
from pydantic import SecretStr

from stackforge.engine.differ import attribute_changes, diff_deletion, diff_resource
from stackforge.errors import ApplyError
from stackforge.expressions import SENSITIVE_PLACEHOLDER, UNKNOWN, UNKNOWN_PLACEHOLDER, normalize
from stackforge.state import ResourceRecord
from stackforge.types import Action, Lifecycle, Resource


def _log_group(lifecycle=None, **attributes):
    return Resource(
        type="aws_cloudwatch_log_group",
        name="app",
        attributes=attributes,
        lifecycle=lifecycle or Lifecycle(),
    )


def _record(inputs, **kwargs):
    return ResourceRecord(
        address="aws_cloudwatch_log_group.app",
        type="aws_cloudwatch_log_group",
        physical_id="/app",
        inputs=normalize(inputs),
        **kwargs,
    )


class TestDiffResource:
    def test_create_when_not_in_state(self):
        change = diff_resource(_log_group(), {"name": "/app", "retention_in_days": 7}, None)
        assert change.action == Action.CREATE
        assert [c.name for c in change.changes] == ["name", "retention_in_days"]

    def test_noop_when_converged(self):
        desired = {"name": "/app", "retention_in_days": 7}
        change = diff_resource(_log_group(), desired, _record(desired))
        assert change.action == Action.NOOP
        assert change.changes == []

    def test_update_in_place(self):
        change = diff_resource(
            _log_group(), {"name": "/app", "retention_in_days": 30}, _record({"name": "/app", "retention_in_days": 7})
        )
        assert change.action == Action.UPDATE
        assert change.changes[0].before == 7
        assert change.changes[0].after == 30

    def test_force_new_replaces(self):
        change = diff_resource(_log_group(), {"name": "/new"}, _record({"name": "/app"}))
        assert change.action == Action.REPLACE
        assert "name" in change.reason

    def test_create_before_destroy_carried(self):
        lifecycle = Lifecycle(create_before_destroy=True)
        change = diff_resource(_log_group(lifecycle), {"name": "/new"}, _record({"name": "/app"}))
        assert change.create_before_destroy

    def test_ignore_changes(self):
        lifecycle = Lifecycle(ignore_changes=("retention_in_days",))
        change = diff_resource(
            _log_group(lifecycle),
            {"name": "/app", "retention_in_days": 30},
            _record({"name": "/app", "retention_in_days": 7}),
        )
        assert change.action == Action.NOOP

    def test_tainted_replaced(self):
        desired = {"name": "/app"}
        change = diff_resource(_log_group(), desired, _record(desired, tainted=True))
        assert change.action == Action.REPLACE
        assert change.reason.startswith("tainted")

    def test_prevent_destroy_blocks_replacement(self):
        lifecycle = Lifecycle(prevent_destroy=True)
        with pytest.raises(ApplyError):
            diff_resource(_log_group(lifecycle), {"name": "/new"}, _record({"name": "/app"}))

    def test_unknown_value_is_a_change(self):
        changes = attribute_changes(_log_group(), {"kms_key_id": UNKNOWN}, {"kms_key_id": "k"})
        assert changes[0].after == UNKNOWN_PLACEHOLDER


class TestSecretsInDiffs:
    def _resource(self):
        return Resource(
            type="aws_ecs_task_definition",
            name="webui",
            attributes={},
            sensitive=frozenset({"container_definitions"}),
        )

    def test_secret_compared_by_digest(self):
        desired = {"family": "webui", "container_definitions": SecretStr("[{\"key\": \"a\"}]")}
        record = ResourceRecord(
            address="aws_ecs_task_definition.webui",
            type="aws_ecs_task_definition",
            physical_id="arn:td",
            inputs=normalize(desired),
            sensitive=["container_definitions"],
        )
        assert diff_resource(self._resource(), desired, record).action == Action.NOOP

    def test_changed_secret_shown_as_placeholder(self):
        old = {"family": "webui", "container_definitions": SecretStr("old-key")}
        new = {"family": "webui", "container_definitions": SecretStr("new-key")}
        record = ResourceRecord(
            address="aws_ecs_task_definition.webui",
            type="aws_ecs_task_definition",
            physical_id="arn:td",
            inputs=normalize(old),
            sensitive=["container_definitions"],
        )
        change = diff_resource(self._resource(), new, record)
        assert change.action == Action.REPLACE
        rendered = str(change.to_dict())
        assert "old-key" not in rendered
        assert "new-key" not in rendered
        assert change.changes[0].before == SENSITIVE_PLACEHOLDER
        assert change.changes[0].after == SENSITIVE_PLACEHOLDER


class TestDiffDeletion:
    def test_delete(self):
        change = diff_deletion(_record({"name": "/app"}), "no longer declared")
        assert change.action == Action.DELETE
        assert change.reason == "no longer declared"

    def test_prevent_destroy(self):
        with pytest.raises(ApplyError):
            diff_deletion(_record({"name": "/app"}, prevent_destroy=True), "no longer declared")

    def test_deposed_ignores_prevent_destroy(self):
        change = diff_deletion(_record({"name": "/app"}, prevent_destroy=True), "deposed", deposed=True)
        assert change.deposed
