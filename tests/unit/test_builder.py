"""Tests for graph building and validation."""

from unittest.mock import Mock

import pytest

from stackforge.errors import (
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    DataLookupError,
    MissingVariableError,
    SensitiveValueError,
)
from stackforge.expressions import Format, Ref, Var
from stackforge.graph import GraphBuilder
from stackforge.graph import builder as builder_module
from stackforge.logging import redact_text
from stackforge.stack import Stack
from stackforge.types import NodeKind


def _cyclic_stack() -> Stack:
    stack = Stack("cyclic")
    stack.data("aws_vpc", "main", {"id": "vpc-123"})
    stack.resource("aws_security_group", "a", {"name": "a", "peer": Ref("aws_security_group.b", "id")})
    stack.resource("aws_security_group", "b", {"name": "b", "peer": Ref("aws_security_group.a", "id")})
    stack.resource("aws_iam_role", "x", {"name": "x", "trust": Ref("aws_iam_role.y", "arn")})
    stack.resource("aws_iam_role", "y", {"name": "y", "trust": Ref("aws_iam_role.x", "arn")})
    return stack


class TestVariableBinding:
    def test_missing_required_variable_named(self, ollama_stack, platform):
        with pytest.raises(MissingVariableError) as exc_info:
            GraphBuilder(platform).build(ollama_stack, {"webui_secret_key": "k"})
        assert exc_info.value.name == "vpc_id"
        assert "vpc_id" in str(exc_info.value)
        assert platform.calls == []

    def test_undeclared_variable_rejected(self, ollama_stack, variables):
        with pytest.raises(ConfigurationError) as exc_info:
            GraphBuilder().build(ollama_stack, {**variables, "colour": "blue"}, resolve_lookups=False)
        assert "colour" in str(exc_info.value)

    def test_defaults_applied(self, ollama_stack, variables):
        built = GraphBuilder().build(ollama_stack, variables, resolve_lookups=False)
        assert built.variables["region"] == "us-east-1"
        assert built.variables["ssh_key_name"] is None
        assert built.variables["instance_type"] == "g4dn.xlarge"

    def test_string_coercion(self):
        stack = Stack("typed")
        stack.variable("count", type=int, default=1)
        stack.variable("enabled", type=bool, default=False)
        built = GraphBuilder().build(stack, {"count": "3", "enabled": "yes"}, resolve_lookups=False)
        assert built.variables == {"count": 3, "enabled": True}

    def test_bad_sensitive_value_not_echoed(self):
        stack = Stack("typed")
        stack.variable("token", sensitive=True)
        with pytest.raises(ConfigurationError) as exc_info:
            GraphBuilder().build(stack, {"token": 12345}, resolve_lookups=False)
        assert "12345" not in str(exc_info.value)

    def test_secret_registered_for_log_redaction(self, ollama_stack, variables, secret):
        GraphBuilder().build(ollama_stack, variables, resolve_lookups=False)
        assert secret not in redact_text(f"value={secret}")


class TestReferences:
    def test_undeclared_variable_reference(self):
        stack = Stack("bad")
        stack.resource("aws_cloudwatch_log_group", "app", {"name": Var("missing")})
        with pytest.raises(DanglingReferenceError) as exc_info:
            GraphBuilder().build(stack, {}, resolve_lookups=False)
        assert exc_info.value.target == "var.missing"

    def test_undeclared_resource_reference(self):
        stack = Stack("bad")
        stack.resource("aws_iam_instance_profile", "app", {"name": "p", "role": Ref("aws_iam_role.gone", "id")})
        with pytest.raises(DanglingReferenceError):
            GraphBuilder().build(stack, {}, resolve_lookups=False)

    def test_unknown_attribute_reference(self):
        stack = Stack("bad")
        role = stack.resource("aws_iam_role", "app", {"name": "r"})
        stack.resource("aws_iam_instance_profile", "app", {"name": "p", "role": role["colour"]})
        with pytest.raises(DanglingReferenceError) as exc_info:
            GraphBuilder().build(stack, {}, resolve_lookups=False)
        assert exc_info.value.target == "aws_iam_role.app.colour"

    def test_output_reference_checked(self):
        stack = Stack("bad")
        stack.output("url", Format("http://{}", Ref("aws_lb.gone", "dns_name")))
        with pytest.raises(DanglingReferenceError):
            GraphBuilder().build(stack, {}, resolve_lookups=False)

    def test_edges_from_references(self, make_chain):
        built = GraphBuilder().build(make_chain(), {}, resolve_lookups=False)
        profile = built.graph.nodes["aws_iam_instance_profile.app"]
        assert profile.dependencies == {"aws_iam_role.app"}

    def test_lookup_cannot_depend_on_resource(self):
        stack = Stack("bad")
        role = stack.resource("aws_iam_role", "app", {"name": "r"})
        stack.data("aws_vpc", "main", {"id": role.id})
        with pytest.raises(ConfigurationError) as exc_info:
            GraphBuilder().build(stack, {}, resolve_lookups=False)
        assert exc_info.value.field == "data.aws_vpc.main"


class TestCycles:
    def test_every_member_named_before_any_call(self, platform):
        with pytest.raises(CycleError) as exc_info:
            GraphBuilder(platform).build(_cyclic_stack(), {})

        assert exc_info.value.members == [
            "aws_iam_role.x",
            "aws_iam_role.y",
            "aws_security_group.a",
            "aws_security_group.b",
        ]
        assert len(exc_info.value.cycles) == 2
        assert platform.calls == []

    def test_depends_on_cycle(self):
        stack = Stack("cyclic")
        stack.resource("aws_cloudwatch_log_group", "a", {"name": "/a"}, depends_on=["aws_cloudwatch_log_group.b"])
        stack.resource("aws_cloudwatch_log_group", "b", {"name": "/b"}, depends_on=["aws_cloudwatch_log_group.a"])
        with pytest.raises(CycleError):
            GraphBuilder().build(stack, {}, resolve_lookups=False)


class TestSensitiveValues:
    def test_secret_in_undeclared_attribute(self):
        stack = Stack("leaky")
        key = stack.variable("key", sensitive=True)
        stack.resource("aws_cloudwatch_log_group", "app", {"name": Format("/app/{}", key)})
        with pytest.raises(SensitiveValueError) as exc_info:
            GraphBuilder().build(stack, {"key": "hunter2"}, resolve_lookups=False)
        assert exc_info.value.variable == "key"
        assert "aws_cloudwatch_log_group.app.name" in str(exc_info.value)

    def test_secret_through_local(self):
        stack = Stack("leaky")
        key = stack.variable("key", sensitive=True)
        header = stack.local("header", Format("Bearer {}", key))
        stack.resource("aws_cloudwatch_log_group", "app", {"name": header})
        with pytest.raises(SensitiveValueError):
            GraphBuilder().build(stack, {"key": "hunter2"}, resolve_lookups=False)

    def test_secret_in_plain_output(self):
        stack = Stack("leaky")
        key = stack.variable("key", sensitive=True)
        stack.output("key", key)
        with pytest.raises(SensitiveValueError) as exc_info:
            GraphBuilder().build(stack, {"key": "hunter2"}, resolve_lookups=False)
        assert "output.key" in str(exc_info.value)

    def test_sensitive_output_allowed(self):
        stack = Stack("ok")
        key = stack.variable("key", sensitive=True)
        stack.output("key", key, sensitive=True)
        GraphBuilder().build(stack, {"key": "hunter2"}, resolve_lookups=False)

    def test_declared_consumers(self, ollama_stack, variables):
        built = GraphBuilder().build(ollama_stack, variables, resolve_lookups=False)
        assert built.sensitive_consumers["webui_secret_key"] == [
            "aws_ecs_task_definition.webui.container_definitions"
        ]


class TestLookups:
    def test_gpu_subnets_resolved(self, ollama_stack, platform, variables):
        built = GraphBuilder(platform).build(ollama_stack, variables)
        assert built.lookups_resolved
        assert built.values["data.aws_vpc.selected"]["id"] == "vpc-123"
        assert built.values["local.gpu_subnet_ids"] == ["subnet-priv0", "subnet-priv2"]
        assert platform.write_calls == []

    def test_lookups_skipped(self, ollama_stack, platform, variables):
        built = GraphBuilder(platform).build(ollama_stack, variables, resolve_lookups=False)
        assert not built.lookups_resolved
        assert platform.calls == []

    def test_unknown_vpc(self, ollama_stack, platform, variables):
        with pytest.raises(DataLookupError) as exc_info:
            GraphBuilder(platform).build(ollama_stack, {**variables, "vpc_id": "vpc-nope"})
        assert exc_info.value.kind == "aws_vpc"

    def test_lookups_need_a_platform(self, ollama_stack, variables):
        with pytest.raises(ConfigurationError):
            GraphBuilder().build(ollama_stack, variables)

    def test_node_kinds(self, ollama_stack, variables):
        built = GraphBuilder().build(ollama_stack, variables, resolve_lookups=False)
        assert built.graph.nodes["local.gpu_subnet_ids"].kind == NodeKind.LOCAL
        assert len(built.graph.nodes_of_kind(NodeKind.DATA)) == 4


class TestLogging:
    def test_stack_name_not_logged_as_stack_trace(self, make_chain, monkeypatch):
        # ConsoleRenderer prints a "stack" key as a stack trace
        logger = Mock()
        monkeypatch.setattr(builder_module, "logger", logger)
        GraphBuilder().build(make_chain(), {}, resolve_lookups=False)

        (message,), fields = logger.info.call_args
        assert message == "Graph built"
        assert fields["stack_name"] == "chain"
        assert "stack" not in fields
