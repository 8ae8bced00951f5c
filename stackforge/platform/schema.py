"""
Resource Type Schemas

For each supported resource type the schema names the attributes that cannot
be changed in place (a change forces replacement) and the attributes the
platform computes at creation time. Computed attributes are unknown until the
resource has been applied.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional


@dataclass(frozen=True)
class ResourceSchema:
    """Static description of one resource type."""

    type: str
    service: str
    force_new: FrozenSet[str] = frozenset()
    computed: FrozenSet[str] = frozenset({"id"})
    # Attribute used to build physical names and ARNs
    name_attribute: Optional[str] = "name"

    def forces_replacement(self, attribute: str) -> bool:
        return attribute in self.force_new

    def is_computed(self, attribute: str) -> bool:
        return attribute in self.computed


def _schema(
    type: str,
    service: str,
    force_new: Iterable[str] = (),
    computed: Iterable[str] = ("id", "arn"),
    name_attribute: Optional[str] = "name",
) -> ResourceSchema:
    return ResourceSchema(
        type=type,
        service=service,
        force_new=frozenset(force_new),
        computed=frozenset(computed),
        name_attribute=name_attribute,
    )


_SCHEMAS: List[ResourceSchema] = [
    _schema("aws_iam_role", "iam", force_new=("name", "path"), computed=("id", "arn", "unique_id")),
    _schema(
        "aws_iam_role_policy_attachment",
        "iam",
        force_new=("role", "policy_arn"),
        computed=("id",),
        name_attribute=None,
    ),
    _schema("aws_iam_instance_profile", "iam", force_new=("name",)),
    _schema(
        "aws_security_group",
        "ec2",
        force_new=("name", "vpc_id", "description"),
        computed=("id", "arn", "owner_id"),
    ),
    _schema(
        "aws_launch_template",
        "ec2",
        force_new=("name",),
        computed=("id", "arn", "latest_version"),
    ),
    _schema(
        "aws_autoscaling_group",
        "autoscaling",
        force_new=("name",),
    ),
    _schema(
        "aws_ecs_capacity_provider",
        "ecs",
        force_new=("name", "auto_scaling_group_arn"),
    ),
    _schema("aws_ecs_cluster", "ecs", force_new=("name",)),
    _schema(
        "aws_ecs_cluster_capacity_providers",
        "ecs",
        force_new=("cluster_name",),
        computed=("id",),
        name_attribute="cluster_name",
    ),
    _schema("aws_service_discovery_http_namespace", "servicediscovery", force_new=("name",)),
    _schema(
        "aws_cloudwatch_log_group",
        "logs",
        force_new=("name",),
    ),
    _schema(
        "aws_lb",
        "elasticloadbalancing",
        force_new=("name", "internal", "load_balancer_type"),
        computed=("id", "arn", "dns_name", "zone_id"),
    ),
    _schema(
        "aws_lb_target_group",
        "elasticloadbalancing",
        force_new=("name", "port", "protocol", "vpc_id", "target_type"),
    ),
    _schema(
        "aws_lb_listener",
        "elasticloadbalancing",
        force_new=("load_balancer_arn",),
        name_attribute=None,
    ),
    _schema(
        "aws_lb_listener_rule",
        "elasticloadbalancing",
        force_new=("listener_arn",),
        name_attribute=None,
    ),
    _schema(
        "aws_ecs_task_definition",
        "ecs",
        force_new=(
            "family",
            "container_definitions",
            "network_mode",
            "requires_compatibilities",
            "cpu",
            "memory",
            "execution_role_arn",
            "task_role_arn",
        ),
        computed=("id", "arn", "revision"),
        name_attribute="family",
    ),
    _schema(
        "aws_ecs_service",
        "ecs",
        force_new=("name", "cluster", "load_balancer", "launch_type"),
    ),
]

SCHEMAS: Dict[str, ResourceSchema] = {s.type: s for s in _SCHEMAS}


def get_schema(resource_type: str) -> ResourceSchema:
    """Schema for *resource_type*; unknown types get a permissive default."""
    schema = SCHEMAS.get(resource_type)
    if schema is None:
        service = resource_type.split("_")[1] if resource_type.count("_") >= 1 else "generic"
        return _schema(resource_type, service)
    return schema


# Data lookup kinds understood by the platforms
LOOKUP_KINDS = frozenset(
    {
        "aws_vpc",
        "aws_subnets",
        "aws_availability_zones",
        "aws_ec2_instance_type_offerings",
    }
)
