"""Tests for core type definitions."""

import pytest
from pydantic import SecretStr

from stackforge.expressions import SENSITIVE_PLACEHOLDER
from stackforge.types import (
    Action,
    ApplyResult,
    DataLookup,
    Local,
    OutputValue,
    Plan,
    PlannedChange,
    Resource,
    ResourceResult,
    ResourceStatus,
    Variable,
)


class TestVariable:
    def test_required_without_default(self):
        assert Variable(name="vpc_id").required
        assert not Variable(name="region", default="us-east-1").required

    def test_coerce_from_strings(self):
        assert Variable(name="count", type=int, default=1).coerce("3") == 3
        assert Variable(name="flag", type=bool, default=False).coerce("yes") is True
        assert Variable(name="zones", type=list, default=[]).coerce("a, b,") == ["a", "b"]

    def test_coerce_wrong_type(self):
        with pytest.raises(TypeError, match="expects int"):
            Variable(name="count", type=int, default=1).coerce([1])

    def test_null_only_when_default_is_null(self):
        assert Variable(name="ssh_key_name", default=None).coerce(None) is None
        with pytest.raises(TypeError):
            Variable(name="vpc_id").coerce(None)

    def test_sensitive_values_wrapped(self):
        value = Variable(name="key", sensitive=True).coerce("hunter2")
        assert isinstance(value, SecretStr)
        assert "hunter2" not in repr(value)

    def test_sensitive_must_be_string(self):
        with pytest.raises(ValueError):
            Variable(name="count", type=int, sensitive=True)

    def test_invalid_name(self):
        with pytest.raises(ValueError, match="Invalid variable name"):
            Variable(name="9lives")


class TestDeclarations:
    def test_addresses(self):
        assert Resource(type="aws_lb", name="shared").address == "aws_lb.shared"
        assert DataLookup(kind="aws_vpc", name="main").address == "data.aws_vpc.main"
        assert Local(name="gpu_subnet_ids", value=[]).address == "local.gpu_subnet_ids"

    def test_resource_normalizes_collections(self):
        resource = Resource(type="aws_lb", name="shared", depends_on=["aws_iam_role.app"])
        assert resource.depends_on == ("aws_iam_role.app",)
        assert resource.sensitive == frozenset()


class TestPlan:
    def _plan(self):
        return Plan(
            changes=[
                PlannedChange("aws_iam_role.app", "aws_iam_role", Action.CREATE),
                PlannedChange("aws_lb.shared", "aws_lb", Action.NOOP),
                PlannedChange("aws_ecs_service.webui", "aws_ecs_service", Action.REPLACE),
            ]
        )

    def test_counts(self):
        counts = self._plan().counts()
        assert counts == {"no-op": 1, "create": 1, "update": 0, "replace": 1, "delete": 0}

    def test_lookup_by_address(self):
        assert self._plan().get("aws_lb.shared").action == Action.NOOP
        assert self._plan().get("aws_lb.other") is None

    def test_noop_only_plan_has_no_changes(self):
        plan = Plan(changes=[PlannedChange("aws_lb.shared", "aws_lb", Action.NOOP)])
        assert not plan.has_changes

    def test_drift_counts_as_change(self):
        change = PlannedChange(
            "aws_lb.shared", "aws_lb", Action.NOOP, drifted_attributes=["idle_timeout"]
        )
        assert Plan(changes=[change]).has_changes


class TestApplyResult:
    def _result(self):
        result = ApplyResult()
        result.add_result(
            ResourceResult("aws_iam_role.app", Action.CREATE, ResourceStatus.APPLIED)
        )
        result.add_result(ResourceResult("aws_lb.shared", Action.NOOP, ResourceStatus.APPLIED))
        return result

    def test_succeeded(self):
        result = self._result()
        assert result.succeeded
        assert result.applied == ["aws_iam_role.app"]
        assert result.unchanged == ["aws_lb.shared"]

    def test_partial_success(self):
        result = self._result()
        result.add_result(
            ResourceResult("aws_ecs_cluster.main", Action.CREATE, ResourceStatus.FAILED)
        )
        result.add_result(
            ResourceResult("aws_ecs_service.webui", Action.CREATE, ResourceStatus.SKIPPED)
        )
        assert not result.succeeded
        summary = result.summary()
        assert summary["failed"] == ["aws_ecs_cluster.main"]
        assert summary["skipped"] == ["aws_ecs_service.webui"]
        assert summary["applied"] == ["aws_iam_role.app"]

    def test_not_started_is_not_success(self):
        result = ApplyResult(not_started=["aws_lb.shared"], cancelled=True)
        assert not result.succeeded
        assert result.to_dict()["cancelled"] is True


class TestOutputValue:
    def test_display(self):
        assert OutputValue("url", "http://lb").display() == "http://lb"

    def test_sensitive_display(self):
        output = OutputValue("key", None, sensitive=True)
        assert output.display() == SENSITIVE_PLACEHOLDER
        assert output.to_dict()["value"] == SENSITIVE_PLACEHOLDER

    def test_unavailable(self):
        output = OutputValue("url", available=False, reason="aws_lb.shared failed")
        assert output.display() == "(unavailable: aws_lb.shared failed)"
