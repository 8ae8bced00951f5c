"""Tests for error hierarchy."""

import pytest

from stackforge.errors import (
    ActionTimeoutError,
    ApplyError,
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    DataLookupError,
    DriftError,
    MissingVariableError,
    PlatformError,
    SensitiveValueError,
    StackforgeError,
    StateError,
    TransientPlatformError,
    raise_apply_error,
    raise_configuration_error,
)


class TestStackforgeError:
    def test_basic_error(self):
        err = StackforgeError("something broke")
        assert "something broke" in str(err)

    def test_error_with_details(self):
        err = StackforgeError("oops", details={"key": "val"})
        assert err.details == {"key": "val"}
        assert "key=val" in str(err)


class TestConfigurationErrors:
    def test_field_info(self):
        err = ConfigurationError("max_parallelism", 0, "positive integer")
        assert err.field == "max_parallelism"
        assert "0" in str(err)

    def test_missing_variable_names_it(self):
        err = MissingVariableError("vpc_id")
        assert err.name == "vpc_id"
        assert isinstance(err, ConfigurationError)
        assert "vpc_id" in str(err)

    def test_dangling_reference(self):
        err = DanglingReferenceError("aws_lb.main", "var.missing")
        assert err.consumer == "aws_lb.main"
        assert "var.missing" in str(err)

    def test_cycle_lists_every_member(self):
        err = CycleError([["b.y", "a.x"], ["c.z"]])
        assert err.members == ["a.x", "b.y", "c.z"]
        assert err.cycles[0] == ["a.x", "b.y"]
        for member in ("a.x", "b.y", "c.z"):
            assert member in str(err)

    def test_sensitive_value(self):
        err = SensitiveValueError("webui_secret_key", "output.url")
        assert err.variable == "webui_secret_key"
        assert "output.url" in str(err)


class TestPlatformErrors:
    def test_transient_is_platform_error(self):
        err = TransientPlatformError("create aws_lb", "Rate exceeded", code="Throttling")
        assert isinstance(err, PlatformError)
        assert err.code == "Throttling"

    def test_timeout_is_transient(self):
        err = ActionTimeoutError("create aws_lb", 30)
        assert isinstance(err, TransientPlatformError)
        assert err.timeout_seconds == 30
        assert "30" in str(err)

    def test_lookup_error(self):
        err = DataLookupError("aws_vpc", {"id": "vpc-1"}, "no VPCs matched")
        assert err.kind == "aws_vpc"
        assert "no VPCs matched" in str(err)


class TestApplyAndDriftErrors:
    def test_apply_error(self):
        err = ApplyError("aws_lb.main", "quota exceeded")
        assert err.address == "aws_lb.main"
        assert "quota exceeded" in str(err)

    def test_drift_error(self):
        err = DriftError("aws_lb.main", ["idle_timeout"])
        assert err.attributes == ["idle_timeout"]
        assert "overwrite_drift" in str(err)

    def test_state_error(self):
        err = StateError("state.json", "read", "bad json")
        assert err.operation == "read"
        assert "state.json" in str(err)


class TestConvenienceFunctions:
    def test_raise_configuration_error_adds_suggestion(self):
        with pytest.raises(ConfigurationError) as exc_info:
            raise_configuration_error("max_parallelism", 0, "positive integer")
        assert "suggestion" in exc_info.value.details

    def test_raise_apply_error_suggests_quota(self):
        with pytest.raises(ApplyError) as exc_info:
            raise_apply_error("aws_autoscaling_group.gpu", "vCPU limit reached")
        assert "quota" in exc_info.value.details["suggestion"]

    def test_raise_apply_error_without_hint(self):
        with pytest.raises(ApplyError) as exc_info:
            raise_apply_error("aws_lb.main", "boom")
        assert "suggestion" not in exc_info.value.details
