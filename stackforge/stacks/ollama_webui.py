"""
Ollama + Open WebUI on an ECS GPU cluster.

One EC2 Auto Scaling Group of GPU instances backs an ECS capacity provider.
Ollama serves models on port 11434 and Open WebUI on port 8080; both sit
behind one shared Application Load Balancer. The WebUI talks to Ollama
through ECS Service Connect in the cluster's HTTP namespace, and the model
API paths used from outside are routed straight to Ollama.

Instances are placed only in private subnets whose availability zone offers
the GPU instance type; the selection is recomputed on every graph build.
"""

import base64
from typing import Any, Dict, List

from ..errors import DataLookupError
from ..expressions import Call, Format, JsonEncode, Ref
from ..stack import Stack
from ..types import Lifecycle

# ECS GPU-optimized Amazon Linux 2 image in us-east-1
DEFAULT_AMI_ID = "ami-0b7d3b7b0e0c7b5a1"
DEFAULT_MODEL = "deepseek-r1:7b"

OLLAMA_PORT = 11434
WEBUI_PORT = 8080
OLLAMA_API_PATHS = ["/api/pull", "/api/generate", "/api/tags"]

_ANYWHERE = ["0.0.0.0/0"]
_ALL_EGRESS = [{"from_port": 0, "to_port": 0, "protocol": "-1", "cidr_blocks": _ANYWHERE}]


def select_gpu_subnets(subnets: Dict[str, Any], gpu_zones: List[str]) -> List[str]:
    """Subnets whose availability zone offers the GPU instance type."""
    zones = set(gpu_zones)
    selected = [s for s in subnets["ids"] if subnets["availability_zones"].get(s) in zones]
    if not selected:
        raise DataLookupError(
            "aws_subnets",
            {"availability_zones": sorted(zones)},
            "no private subnet is in an availability zone offering the GPU instance type",
        )
    return selected


def ecs_user_data(cluster_name: str) -> str:
    script = "\n".join(
        [
            "#!/bin/bash",
            f"echo ECS_CLUSTER={cluster_name} >> /etc/ecs/ecs.config",
            "echo ECS_ENABLE_GPU_SUPPORT=true >> /etc/ecs/ecs.config",
            "",
        ]
    )
    return base64.b64encode(script.encode("utf-8")).decode("ascii")


def _trust_policy(service: str) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": service},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def _log_configuration(group: Ref, region: Any, prefix: str) -> Dict[str, Any]:
    return {
        "logDriver": "awslogs",
        "options": {
            "awslogs-group": group,
            "awslogs-region": region,
            "awslogs-stream-prefix": prefix,
        },
    }


def build_stack() -> Stack:
    stack = Stack("ollama-webui", "Ollama and Open WebUI on an ECS GPU cluster")

    # Variables
    region = stack.variable("region", default="us-east-1", description="AWS region")
    vpc_id = stack.variable("vpc_id", description="Existing VPC to deploy into")
    webui_secret_key = stack.variable(
        "webui_secret_key", sensitive=True, description="Open WebUI session signing key"
    )
    ami_id = stack.variable("ami_id", default=DEFAULT_AMI_ID, description="ECS GPU-optimized AMI")
    ssh_key_name = stack.variable("ssh_key_name", default=None, description="Optional EC2 key pair")
    instance_type = stack.variable("instance_type", default="g4dn.xlarge")
    project = stack.variable("project_name", default="ollama")

    tags = {"Project": project, "ManagedBy": "stackforge"}

    # Network lookups
    vpc = stack.data("aws_vpc", "selected", {"id": vpc_id})
    private = stack.data(
        "aws_subnets", "private", {"vpc_id": vpc.id, "tags": {"Tier": "private"}}
    )
    public = stack.data("aws_subnets", "public", {"vpc_id": vpc.id, "tags": {"Tier": "public"}})
    gpu_offerings = stack.data(
        "aws_ec2_instance_type_offerings", "gpu", {"instance_type": instance_type}
    )
    gpu_subnets = stack.local(
        "gpu_subnet_ids",
        Call(select_gpu_subnets, private.ref(), gpu_offerings["locations"], name="select_gpu_subnets"),
    )

    # IAM
    instance_role = stack.resource(
        "aws_iam_role",
        "ecs_instance",
        {
            "name": Format("{}-ecs-instance-role", project),
            "assume_role_policy": JsonEncode(_trust_policy("ec2.amazonaws.com")),
            "tags": tags,
        },
    )
    stack.resource(
        "aws_iam_role_policy_attachment",
        "ecs_instance",
        {
            "role": instance_role.id,
            "policy_arn": "arn:aws:iam::aws:policy/service-role/AmazonEC2ContainerServiceforEC2Role",
        },
    )
    stack.resource(
        "aws_iam_role_policy_attachment",
        "ssm",
        {
            "role": instance_role.id,
            "policy_arn": "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore",
        },
    )
    instance_profile = stack.resource(
        "aws_iam_instance_profile",
        "ecs_instance",
        {"name": Format("{}-ecs-instance-profile", project), "role": instance_role.id},
    )
    execution_role = stack.resource(
        "aws_iam_role",
        "task_execution",
        {
            "name": Format("{}-task-execution-role", project),
            "assume_role_policy": JsonEncode(_trust_policy("ecs-tasks.amazonaws.com")),
            "tags": tags,
        },
    )
    execution_policy = stack.resource(
        "aws_iam_role_policy_attachment",
        "task_execution",
        {
            "role": execution_role.id,
            "policy_arn": "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy",
        },
    )

    # Security groups
    lb_sg = stack.resource(
        "aws_security_group",
        "lb",
        {
            "name": Format("{}-lb-sg", project),
            "description": "Shared load balancer",
            "vpc_id": vpc.id,
            "ingress": [
                {"from_port": 80, "to_port": 80, "protocol": "tcp", "cidr_blocks": _ANYWHERE}
            ],
            "egress": _ALL_EGRESS,
            "tags": tags,
        },
    )
    instance_sg = stack.resource(
        "aws_security_group",
        "instances",
        {
            "name": Format("{}-instances-sg", project),
            "description": "GPU container instances",
            "vpc_id": vpc.id,
            "ingress": [
                {
                    "from_port": 0,
                    "to_port": 65535,
                    "protocol": "tcp",
                    "security_groups": [lb_sg.id],
                    "description": "Load balancer to containers",
                },
                {
                    "from_port": 22,
                    "to_port": 22,
                    "protocol": "tcp",
                    "cidr_blocks": _ANYWHERE,
                    "description": "SSH",
                },
            ],
            "egress": _ALL_EGRESS,
            "tags": tags,
        },
    )

    # ECS cluster and capacity
    cluster = stack.resource(
        "aws_ecs_cluster",
        "main",
        {
            "name": Format("{}-cluster", project),
            "settings": [{"name": "containerInsights", "value": "enabled"}],
            "tags": tags,
        },
    )
    namespace = stack.resource(
        "aws_service_discovery_http_namespace",
        "main",
        {"name": Format("{}.local", project), "description": "Service Connect namespace"},
    )
    launch_template = stack.resource(
        "aws_launch_template",
        "gpu",
        {
            "name": Format("{}-gpu-", project),
            "image_id": ami_id,
            "instance_type": instance_type,
            "key_name": ssh_key_name,
            "iam_instance_profile": {"arn": instance_profile.arn},
            "vpc_security_group_ids": [instance_sg.id],
            "user_data": Call(ecs_user_data, cluster["name"]),
            "block_device_mappings": [
                {"device_name": "/dev/xvda", "ebs": {"volume_size": 100, "volume_type": "gp3"}}
            ],
            "tags": tags,
        },
    )
    asg = stack.resource(
        "aws_autoscaling_group",
        "gpu",
        {
            "name": Format("{}-gpu-asg", project),
            "min_size": 1,
            "max_size": 2,
            "desired_capacity": 1,
            "vpc_zone_identifier": gpu_subnets,
            "launch_template": {
                "id": launch_template.id,
                "version": launch_template["latest_version"],
            },
            "protect_from_scale_in": True,
            "health_check_grace_period": 300,
            "tags": {**tags, "AmazonECSManaged": "true"},
        },
        lifecycle=Lifecycle(create_before_destroy=True, ignore_changes=("desired_capacity",)),
    )
    capacity_provider = stack.resource(
        "aws_ecs_capacity_provider",
        "gpu",
        {
            "name": Format("{}-gpu-capacity", project),
            "auto_scaling_group_arn": asg.arn,
            "managed_scaling": {
                "status": "ENABLED",
                "target_capacity": 100,
                "minimum_scaling_step_size": 1,
                "maximum_scaling_step_size": 1,
            },
            "managed_termination_protection": "ENABLED",
            "tags": tags,
        },
    )
    cluster_capacity = stack.resource(
        "aws_ecs_cluster_capacity_providers",
        "main",
        {
            "cluster_name": cluster["name"],
            "capacity_providers": [capacity_provider["name"]],
            "default_capacity_provider_strategy": [
                {"capacity_provider": capacity_provider["name"], "weight": 1, "base": 1}
            ],
        },
    )
    strategy = [{"capacity_provider": capacity_provider["name"], "weight": 1, "base": 1}]

    # Logs
    ollama_logs = stack.resource(
        "aws_cloudwatch_log_group",
        "ollama",
        {"name": Format("/ecs/{}/ollama", project), "retention_in_days": 7, "tags": tags},
    )
    webui_logs = stack.resource(
        "aws_cloudwatch_log_group",
        "webui",
        {"name": Format("/ecs/{}/webui", project), "retention_in_days": 7, "tags": tags},
    )

    # Load balancing
    lb = stack.resource(
        "aws_lb",
        "shared",
        {
            "name": Format("{}-shared-lb", project),
            "internal": False,
            "load_balancer_type": "application",
            "security_groups": [lb_sg.id],
            "subnets": public["ids"],
            # Long model pulls and generations keep connections open
            "idle_timeout": 300,
            "tags": tags,
        },
    )
    webui_tg = stack.resource(
        "aws_lb_target_group",
        "webui",
        {
            "name": Format("{}-webui-tg", project),
            "port": WEBUI_PORT,
            "protocol": "HTTP",
            "vpc_id": vpc.id,
            "target_type": "instance",
            "health_check": {
                "path": "/health",
                "matcher": "200",
                "interval": 30,
                "timeout": 10,
                "healthy_threshold": 2,
                "unhealthy_threshold": 5,
            },
            "tags": tags,
        },
    )
    ollama_tg = stack.resource(
        "aws_lb_target_group",
        "ollama",
        {
            "name": Format("{}-api-tg", project),
            "port": OLLAMA_PORT,
            "protocol": "HTTP",
            "vpc_id": vpc.id,
            "target_type": "instance",
            "health_check": {
                "path": "/",
                "matcher": "200",
                "interval": 30,
                "timeout": 10,
                "healthy_threshold": 2,
                "unhealthy_threshold": 5,
            },
            "tags": tags,
        },
    )
    listener = stack.resource(
        "aws_lb_listener",
        "http",
        {
            "load_balancer_arn": lb.arn,
            "port": 80,
            "protocol": "HTTP",
            "default_action": {"type": "forward", "target_group_arn": webui_tg.arn},
        },
    )
    ollama_rule = stack.resource(
        "aws_lb_listener_rule",
        "ollama_api",
        {
            "listener_arn": listener.arn,
            "priority": 10,
            "path_patterns": OLLAMA_API_PATHS,
            "action": {"type": "forward", "target_group_arn": ollama_tg.arn},
        },
    )

    # Tasks
    ollama_task = stack.resource(
        "aws_ecs_task_definition",
        "ollama",
        {
            "family": Format("{}-ollama", project),
            "network_mode": "bridge",
            "requires_compatibilities": ["EC2"],
            "execution_role_arn": execution_role.arn,
            "container_definitions": JsonEncode(
                [
                    {
                        "name": "ollama",
                        "image": "ollama/ollama:latest",
                        "essential": True,
                        "memory": 12288,
                        "portMappings": [
                            {
                                "name": "ollama",
                                "containerPort": OLLAMA_PORT,
                                "hostPort": OLLAMA_PORT,
                                "protocol": "tcp",
                            }
                        ],
                        "resourceRequirements": [{"type": "GPU", "value": "1"}],
                        "environment": [{"name": "OLLAMA_HOST", "value": "0.0.0.0"}],
                        "logConfiguration": _log_configuration(
                            ollama_logs["name"], region, "ollama"
                        ),
                    }
                ]
            ),
            "tags": tags,
        },
        depends_on=[execution_policy],
    )
    webui_task = stack.resource(
        "aws_ecs_task_definition",
        "webui",
        {
            "family": Format("{}-webui", project),
            "network_mode": "bridge",
            "requires_compatibilities": ["EC2"],
            "execution_role_arn": execution_role.arn,
            "container_definitions": JsonEncode(
                [
                    {
                        "name": "open-webui",
                        "image": "ghcr.io/open-webui/open-webui:main",
                        "essential": True,
                        "memory": 2048,
                        "portMappings": [
                            {
                                "name": "webui",
                                "containerPort": WEBUI_PORT,
                                "hostPort": WEBUI_PORT,
                                "protocol": "tcp",
                            }
                        ],
                        "environment": [
                            {"name": "OLLAMA_BASE_URL", "value": f"http://ollama:{OLLAMA_PORT}"},
                            {"name": "WEBUI_SECRET_KEY", "value": webui_secret_key},
                        ],
                        "logConfiguration": _log_configuration(
                            webui_logs["name"], region, "webui"
                        ),
                    }
                ]
            ),
            "tags": tags,
        },
        depends_on=[execution_policy],
        sensitive=("container_definitions",),
    )

    # Services
    ollama_service = stack.resource(
        "aws_ecs_service",
        "ollama",
        {
            "name": "ollama",
            "cluster": cluster.arn,
            "task_definition": ollama_task.arn,
            "desired_count": 1,
            "capacity_provider_strategy": strategy,
            "load_balancer": {
                "target_group_arn": ollama_tg.arn,
                "container_name": "ollama",
                "container_port": OLLAMA_PORT,
            },
            "health_check_grace_period_seconds": 300,
            # One GPU per instance: stop the old task before starting the new one
            "deployment_minimum_healthy_percent": 0,
            "deployment_maximum_percent": 100,
            "service_connect": {
                "namespace": namespace.arn,
                "services": [
                    {
                        "port_name": "ollama",
                        "discovery_name": "ollama",
                        "client_alias": {"port": OLLAMA_PORT, "dns_name": "ollama"},
                    }
                ],
            },
            "tags": tags,
        },
        depends_on=[ollama_rule, cluster_capacity],
    )
    stack.resource(
        "aws_ecs_service",
        "webui",
        {
            "name": "open-webui",
            "cluster": cluster.arn,
            "task_definition": webui_task.arn,
            "desired_count": 1,
            "capacity_provider_strategy": strategy,
            "load_balancer": {
                "target_group_arn": webui_tg.arn,
                "container_name": "open-webui",
                "container_port": WEBUI_PORT,
            },
            "health_check_grace_period_seconds": 120,
            "deployment_minimum_healthy_percent": 100,
            "deployment_maximum_percent": 200,
            "service_connect": {"namespace": namespace.arn, "services": []},
            "tags": tags,
        },
        depends_on=[ollama_service, listener],
    )

    # Outputs
    stack.output("shared_lb_dns", lb["dns_name"], description="Shared load balancer DNS name")
    stack.output(
        "webui_url", Format("http://{}", lb["dns_name"]), description="Open WebUI address"
    )
    stack.output(
        "model_pull_command",
        Format("curl -X POST http://{}/api/pull -d '{{\"name\": \"{}\"}}'", lb["dns_name"], DEFAULT_MODEL),
        description="Pull the default model through the load balancer",
    )

    return stack
