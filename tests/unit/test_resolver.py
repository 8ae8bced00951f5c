"""Tests for resource-level ordering."""

import pytest

from stackforge.errors import ConfigurationError
from stackforge.graph import DependencyResolver, GraphBuilder


@pytest.fixture
def resolver(ollama_stack, variables):
    built = GraphBuilder().build(ollama_stack, variables, resolve_lookups=False)
    return DependencyResolver(built)


@pytest.fixture
def chain_resolver(make_chain):
    return DependencyResolver(GraphBuilder().build(make_chain(), {}, resolve_lookups=False))


class TestApplyOrder:
    def test_only_resources(self, resolver):
        order = resolver.apply_order()
        assert not any(a.startswith(("data.", "local.")) for a in order)

    def test_deterministic(self, ollama_stack, variables):
        orders = {
            tuple(
                DependencyResolver(
                    GraphBuilder().build(ollama_stack, variables, resolve_lookups=False)
                ).apply_order()
            )
            for _ in range(3)
        }
        assert len(orders) == 1

    def test_producers_before_consumers(self, resolver):
        order = resolver.apply_order()
        for address in order:
            for producer in resolver.resource_dependencies(address):
                assert order.index(producer) < order.index(address)

    def test_services_wait_for_their_producers(self, resolver):
        order = resolver.apply_order()
        assert order.index("aws_ecs_service.ollama") < order.index("aws_ecs_service.webui")
        assert order.index("aws_lb_listener.http") < order.index("aws_ecs_service.webui")
        assert order.index("aws_autoscaling_group.gpu") < order.index("aws_ecs_capacity_provider.gpu")

    def test_targets(self, chain_resolver):
        assert chain_resolver.apply_order(["aws_iam_instance_profile.app"]) == [
            "aws_iam_instance_profile.app"
        ]

    def test_unknown_target(self, chain_resolver):
        with pytest.raises(ConfigurationError) as exc_info:
            chain_resolver.apply_order(["aws_lb.nope"])
        assert "aws_lb.nope" in str(exc_info.value)


class TestDestroyOrder:
    def test_reverse_of_apply(self, resolver):
        assert resolver.destroy_order() == list(reversed(resolver.apply_order()))

    def test_target_takes_dependents(self, chain_resolver):
        assert chain_resolver.destroy_order(["aws_iam_role.app"]) == [
            "aws_iam_instance_profile.app",
            "aws_iam_role.app",
        ]


class TestCollapsing:
    def test_dependency_through_lookup_free_local(self, resolver):
        # The ASG reads the GPU subnet local, which only depends on lookups
        deps = resolver.resource_dependencies("aws_autoscaling_group.gpu")
        assert "aws_launch_template.gpu" in deps
        assert not any(d.startswith(("data.", "local.")) for d in deps)

    def test_levels(self, chain_resolver):
        assert chain_resolver.levels() == [
            ["aws_iam_role.app", "aws_cloudwatch_log_group.app"],
            ["aws_iam_instance_profile.app"],
        ]

    def test_direct_dependents(self, chain_resolver):
        assert chain_resolver.resource_dependents("aws_iam_role.app") == [
            "aws_iam_instance_profile.app"
        ]
        assert chain_resolver.resource_dependents("aws_cloudwatch_log_group.app") == []

    def test_dependents_closure(self, resolver):
        closure = resolver.dependents_closure("aws_iam_role.task_execution")
        assert "aws_ecs_task_definition.webui" in closure
        assert "aws_ecs_service.webui" in closure

    def test_external_dependencies(self, chain_resolver):
        assert chain_resolver.external_dependencies(["aws_iam_instance_profile.app"]) == [
            "aws_iam_role.app"
        ]

    def test_no_cycles(self, resolver):
        assert resolver.cycles() == []
