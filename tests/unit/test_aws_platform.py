"""Tests for the boto3-backed platform against moto's fake AWS."""

import json

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from stackforge.errors import DataLookupError, PlatformError, TransientPlatformError
from stackforge.platform.aws import AwsPlatform
from stackforge.platform.aws.base import is_transient, platform_call

REGION = "us-east-1"

ASSUME_ROLE = json.dumps(
    {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": "ec2.amazonaws.com"},
                "Action": "sts:AssumeRole",
            }
        ],
    }
)


@pytest.fixture(autouse=True)
def mock_aws_env(monkeypatch):
    """Activate moto's mock_aws context for every test in this module."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)

    with mock_aws():
        yield


@pytest.fixture
def aws_session():
    return boto3.Session(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        aws_session_token="testing",
        region_name=REGION,
    )


@pytest.fixture
def aws(aws_session):
    return AwsPlatform(region=REGION, session=aws_session)


@pytest.fixture
def network(aws_session):
    """A VPC with private subnets in 1a and 1b and one public subnet."""
    ec2 = aws_session.client("ec2", region_name=REGION)
    vpc_id = ec2.create_vpc(CidrBlock="10.0.0.0/16")["Vpc"]["VpcId"]

    subnets = {}
    for cidr, zone, tier in (
        ("10.0.1.0/24", "us-east-1a", "private"),
        ("10.0.2.0/24", "us-east-1b", "private"),
        ("10.0.3.0/24", "us-east-1a", "public"),
    ):
        subnet_id = ec2.create_subnet(VpcId=vpc_id, CidrBlock=cidr, AvailabilityZone=zone)[
            "Subnet"
        ]["SubnetId"]
        ec2.create_tags(Resources=[subnet_id], Tags=[{"Key": "Tier", "Value": tier}])
        subnets[subnet_id] = (zone, tier)

    return {"vpc_id": vpc_id, "subnets": subnets}


class TestLookups:
    def test_vpc_by_id(self, aws, network):
        vpc = aws.lookup("aws_vpc", {"id": network["vpc_id"]})
        assert vpc["id"] == network["vpc_id"]
        assert vpc["cidr_block"] == "10.0.0.0/16"

    def test_unknown_vpc(self, aws):
        with pytest.raises(DataLookupError) as exc_info:
            aws.lookup("aws_vpc", {"id": "vpc-00000000"})
        assert exc_info.value.kind == "aws_vpc"

    def test_private_subnets_with_zones(self, aws, network):
        result = aws.lookup(
            "aws_subnets", {"vpc_id": network["vpc_id"], "tags": {"Tier": "private"}}
        )
        expected = sorted(
            sid for sid, (_, tier) in network["subnets"].items() if tier == "private"
        )
        assert result["ids"] == expected
        assert sorted(result["availability_zones"].values()) == ["us-east-1a", "us-east-1b"]

    def test_no_subnets_matched(self, aws, network):
        with pytest.raises(DataLookupError):
            aws.lookup("aws_subnets", {"vpc_id": network["vpc_id"], "tags": {"Tier": "gpu"}})

    def test_availability_zones(self, aws):
        result = aws.lookup("aws_availability_zones", {})
        assert "us-east-1a" in result["names"]
        assert result["names"] == sorted(result["names"])

    def test_instance_type_not_offered(self, aws):
        with pytest.raises(DataLookupError) as exc_info:
            aws.lookup("aws_ec2_instance_type_offerings", {"instance_type": "zz9.bogus"})
        assert exc_info.value.kind == "aws_ec2_instance_type_offerings"

    def test_unsupported_kind(self, aws):
        with pytest.raises(DataLookupError):
            aws.lookup("aws_route53_zone", {})


class TestIam:
    def test_role_lifecycle(self, aws):
        created = aws.create("aws_iam_role", {"name": "ollama-role", "assume_role_policy": ASSUME_ROLE}, "t")
        assert created.physical_id == "ollama-role"
        assert created.outputs["arn"].endswith(":role/ollama-role")

        observed = aws.read("aws_iam_role", "ollama-role", {})
        assert observed.inputs["assume_role_policy"] == json.dumps(
            json.loads(ASSUME_ROLE), sort_keys=True
        )

        aws.delete("aws_iam_role", "ollama-role", {})
        assert aws.read("aws_iam_role", "ollama-role", {}) is None

    def test_find_existing_role(self, aws):
        inputs = {"name": "ollama-role", "assume_role_policy": ASSUME_ROLE}
        assert aws.find("aws_iam_role", inputs, "t") is None
        aws.create("aws_iam_role", inputs, "t")
        assert aws.find("aws_iam_role", inputs, "t").physical_id == "ollama-role"

    def test_delete_missing_role_is_quiet(self, aws):
        aws.delete("aws_iam_role", "never-created", {})

    def test_instance_profile_holds_role(self, aws):
        aws.create("aws_iam_role", {"name": "ollama-role", "assume_role_policy": ASSUME_ROLE}, "t")
        profile = aws.create(
            "aws_iam_instance_profile", {"name": "ollama-profile", "role": "ollama-role"}, "t"
        )
        assert profile.inputs["role"] == "ollama-role"

        aws.delete("aws_iam_instance_profile", "ollama-profile", {})
        assert aws.read("aws_iam_instance_profile", "ollama-profile", {}) is None


class TestLogGroups:
    def test_create_update_delete(self, aws):
        created = aws.create(
            "aws_cloudwatch_log_group", {"name": "/ecs/ollama", "retention_in_days": 7}, "t"
        )
        assert created.physical_id == "/ecs/ollama"
        assert created.inputs["retention_in_days"] == 7
        assert created.outputs["arn"].endswith("log-group:/ecs/ollama")

        updated = aws.update(
            "aws_cloudwatch_log_group",
            "/ecs/ollama",
            {"name": "/ecs/ollama", "retention_in_days": 7},
            {"name": "/ecs/ollama", "retention_in_days": 30},
        )
        assert updated.inputs["retention_in_days"] == 30

        aws.delete("aws_cloudwatch_log_group", "/ecs/ollama", {})
        assert aws.read("aws_cloudwatch_log_group", "/ecs/ollama", {}) is None

    def test_read_ignores_prefix_matches(self, aws):
        aws.create("aws_cloudwatch_log_group", {"name": "/ecs/ollama-extra"}, "t")
        assert aws.read("aws_cloudwatch_log_group", "/ecs/ollama", {}) is None


class TestSecurityGroups:
    def test_create_and_read(self, aws, network):
        inputs = {
            "name": "ollama-lb",
            "description": "shared load balancer",
            "vpc_id": network["vpc_id"],
            "ingress": [
                {"from_port": 80, "to_port": 80, "protocol": "tcp", "cidr_blocks": ["0.0.0.0/0"]}
            ],
        }
        created = aws.create("aws_security_group", inputs, "t")
        assert created.physical_id.startswith("sg-")

        observed = aws.read("aws_security_group", created.physical_id, inputs)
        assert observed.inputs["name"] == "ollama-lb"
        assert observed.inputs["vpc_id"] == network["vpc_id"]

    def test_deleted_group_reads_as_absent(self, aws, network):
        inputs = {"name": "ollama-lb", "vpc_id": network["vpc_id"]}
        created = aws.create("aws_security_group", inputs, "t")
        aws.delete("aws_security_group", created.physical_id, inputs)
        assert aws.read("aws_security_group", created.physical_id, inputs) is None


class TestPolicyAttachments:
    @pytest.fixture
    def policy_arn(self, aws, aws_session):
        aws.create("aws_iam_role", {"name": "ollama-role", "assume_role_policy": ASSUME_ROLE}, "t")
        document = json.dumps(
            {
                "Version": "2012-10-17",
                "Statement": [{"Effect": "Allow", "Action": "logs:*", "Resource": "*"}],
            }
        )
        iam = aws_session.client("iam", region_name=REGION)
        return iam.create_policy(PolicyName="ollama-logs", PolicyDocument=document)["Policy"]["Arn"]

    def test_attach_find_detach(self, aws, policy_arn):
        inputs = {"role": "ollama-role", "policy_arn": policy_arn}
        assert aws.find("aws_iam_role_policy_attachment", inputs, "t") is None

        created = aws.create("aws_iam_role_policy_attachment", inputs, "t")
        assert created.physical_id == f"ollama-role/{policy_arn}"
        found = aws.find("aws_iam_role_policy_attachment", inputs, "t")
        assert found.inputs == inputs

        aws.delete("aws_iam_role_policy_attachment", created.physical_id, inputs)
        assert aws.read("aws_iam_role_policy_attachment", created.physical_id, inputs) is None

    def test_missing_role_reads_as_absent(self, aws, policy_arn):
        assert aws.read("aws_iam_role_policy_attachment", f"nobody/{policy_arn}", {}) is None


def _template_inputs(**overrides):
    inputs = {
        "name": "ollama-gpu",
        "image_id": "ami-12c6146b",
        "instance_type": "g4dn.xlarge",
        "block_device_mappings": [{"device_name": "/dev/xvda", "ebs": {"volume_size": 100}}],
        "tags": {"Stack": "ollama"},
    }
    inputs.update(overrides)
    return inputs


class TestLaunchTemplates:
    def test_create_find_delete(self, aws):
        created = aws.create("aws_launch_template", _template_inputs(), "token-1")
        assert created.physical_id.startswith("lt-")
        assert created.outputs["latest_version"] == 1
        assert created.outputs["arn"].endswith(f":launch-template/{created.physical_id}")

        found = aws.find("aws_launch_template", _template_inputs(), "token-2")
        assert found.physical_id == created.physical_id

        aws.delete("aws_launch_template", created.physical_id, {})
        assert aws.read("aws_launch_template", created.physical_id, {}) is None

    def test_unknown_name_not_found(self, aws):
        assert aws.find("aws_launch_template", _template_inputs(name="nope"), "t") is None

    def test_update_adds_version(self, aws):
        created = aws.create("aws_launch_template", _template_inputs(), "t")
        updated = aws.update(
            "aws_launch_template",
            created.physical_id,
            _template_inputs(),
            _template_inputs(instance_type="g5.xlarge"),
        )
        assert updated.physical_id == created.physical_id
        assert updated.outputs["latest_version"] == 2


class TestAutoScalingGroups:
    @pytest.fixture
    def group_inputs(self, aws, network):
        template = aws.create("aws_launch_template", _template_inputs(), "t")
        private = sorted(s for s, (_, tier) in network["subnets"].items() if tier == "private")
        return {
            "name": "ollama-gpu",
            "min_size": 0,
            "max_size": 2,
            "desired_capacity": 1,
            "vpc_zone_identifier": private,
            "launch_template": {"id": template.physical_id, "version": "$Latest"},
            "tags": {"Stack": "ollama"},
        }

    def test_create_wait_delete(self, aws, group_inputs):
        created = aws.create("aws_autoscaling_group", group_inputs, "t")
        assert created.physical_id == "ollama-gpu"
        assert created.inputs["max_size"] == 2

        aws.wait_until_ready("aws_autoscaling_group", created, 1)
        assert aws.find("aws_autoscaling_group", group_inputs, "t").physical_id == "ollama-gpu"

        aws.delete("aws_autoscaling_group", "ollama-gpu", group_inputs)
        assert aws.read("aws_autoscaling_group", "ollama-gpu", group_inputs) is None

    def test_update_sizes(self, aws, group_inputs):
        aws.create("aws_autoscaling_group", group_inputs, "t")
        updated = aws.update(
            "aws_autoscaling_group", "ollama-gpu", group_inputs, {**group_inputs, "max_size": 4}
        )
        assert updated.inputs["max_size"] == 4

    def test_delete_missing_group_is_quiet(self, aws):
        aws.delete("aws_autoscaling_group", "never-created", {})


class TestLoadBalancing:
    @pytest.fixture
    def lb(self, aws, network):
        private = sorted(s for s, (_, tier) in network["subnets"].items() if tier == "private")
        inputs = {"name": "ollama-shared", "subnets": private, "idle_timeout": 300}
        return aws.create("aws_lb", inputs, "t")

    @pytest.fixture
    def target_group(self, aws, network):
        inputs = {
            "name": "webui",
            "port": 8080,
            "vpc_id": network["vpc_id"],
            "health_check": {"path": "/health", "matcher": "200", "interval": 30},
            "tags": {"Stack": "ollama"},
        }
        return aws.create("aws_lb_target_group", inputs, "t")

    def test_load_balancer_lifecycle(self, aws, lb):
        assert lb.physical_id.startswith("arn:aws:elasticloadbalancing:")
        assert lb.outputs["dns_name"]
        assert lb.inputs["internal"] is False

        assert aws.find("aws_lb", {"name": "ollama-shared"}, "t").physical_id == lb.physical_id
        assert aws.find("aws_lb", {"name": "other"}, "t") is None

        aws.delete("aws_lb", lb.physical_id, {})
        assert aws.read("aws_lb", lb.physical_id, {}) is None

    def test_target_group_lifecycle(self, aws, target_group, network):
        assert target_group.inputs["port"] == 8080
        assert target_group.inputs["vpc_id"] == network["vpc_id"]
        assert aws.find("aws_lb_target_group", {"name": "webui"}, "t").physical_id == (
            target_group.physical_id
        )

        updated = aws.update(
            "aws_lb_target_group",
            target_group.physical_id,
            {},
            {"health_check": {"path": "/api/health", "matcher": "200"}},
        )
        assert updated.physical_id == target_group.physical_id

        aws.delete("aws_lb_target_group", target_group.physical_id, {})
        assert aws.read("aws_lb_target_group", target_group.physical_id, {}) is None

    def test_listener_lifecycle(self, aws, lb, target_group):
        inputs = {
            "load_balancer_arn": lb.physical_id,
            "port": 80,
            "default_action": {"type": "forward", "target_group_arn": target_group.physical_id},
        }
        listener = aws.create("aws_lb_listener", inputs, "t")
        assert listener.inputs["port"] == 80
        assert aws.find("aws_lb_listener", inputs, "t").physical_id == listener.physical_id
        assert aws.find("aws_lb_listener", {**inputs, "port": 8080}, "t") is None

        fixed = {
            **inputs,
            "default_action": {"type": "fixed-response", "fixed_response": {"status_code": 404}},
        }
        updated = aws.update("aws_lb_listener", listener.physical_id, inputs, fixed)
        assert updated.physical_id == listener.physical_id

        aws.delete("aws_lb_listener", listener.physical_id, inputs)
        assert aws.read("aws_lb_listener", listener.physical_id, inputs) is None


CONTAINERS = json.dumps(
    [
        {
            "name": "webui",
            "image": "ghcr.io/open-webui/open-webui:main",
            "memory": 1024,
            "essential": True,
            "portMappings": [{"containerPort": 8080, "hostPort": 0}],
        }
    ]
)


class TestEcs:
    @pytest.fixture
    def cluster(self, aws):
        return aws.create("aws_ecs_cluster", {"name": "ollama", "tags": {"Stack": "ollama"}}, "t")

    @pytest.fixture
    def task_definition(self, aws):
        inputs = {"family": "webui", "container_definitions": CONTAINERS, "memory": 1024}
        return aws.create("aws_ecs_task_definition", inputs, "t")

    def test_cluster_lifecycle(self, aws, cluster):
        assert cluster.physical_id.endswith(":cluster/ollama")
        assert aws.read("aws_ecs_cluster", cluster.physical_id, {}).inputs["name"] == "ollama"
        found = aws.find("aws_ecs_cluster", {"name": "ollama"}, "t")
        assert found.physical_id == cluster.physical_id

        aws.delete("aws_ecs_cluster", cluster.physical_id, {})
        assert aws.read("aws_ecs_cluster", cluster.physical_id, {}) is None

    def test_task_definition_revisions(self, aws, task_definition):
        assert task_definition.outputs["revision"] == 1
        assert task_definition.outputs["id"] == "webui"

        second = aws.create(
            "aws_ecs_task_definition",
            {"family": "webui", "container_definitions": CONTAINERS, "memory": 2048},
            "t",
        )
        assert second.outputs["revision"] == 2

        aws.delete("aws_ecs_task_definition", task_definition.physical_id, {})
        assert aws.read("aws_ecs_task_definition", task_definition.physical_id, {}) is None
        assert aws.read("aws_ecs_task_definition", second.physical_id, {}) is not None

    def test_service_lifecycle(self, aws, cluster, task_definition):
        inputs = {
            "cluster": cluster.physical_id,
            "name": "webui",
            "task_definition": task_definition.physical_id,
            "desired_count": 0,
        }
        assert aws.find("aws_ecs_service", inputs, "0123456789abcdef0123456789abcdef") is None

        service = aws.create("aws_ecs_service", inputs, "0123456789abcdef0123456789abcdef")
        assert service.physical_id.endswith("service/ollama/webui")
        aws.wait_until_ready("aws_ecs_service", service, 1)

        found = aws.find("aws_ecs_service", inputs, "t")
        assert found.physical_id == service.physical_id

        updated = aws.update(
            "aws_ecs_service", service.physical_id, inputs, {**inputs, "desired_count": 0}
        )
        assert updated.inputs["task_definition"] == task_definition.physical_id

        aws.delete("aws_ecs_service", service.physical_id, inputs)
        assert aws.read("aws_ecs_service", service.physical_id, inputs) is None


class TestServiceDiscovery:
    def test_namespace_lifecycle(self, aws):
        inputs = {"name": "ollama.local", "description": "service connect"}
        assert aws.find("aws_service_discovery_http_namespace", inputs, "t") is None

        created = aws.create("aws_service_discovery_http_namespace", inputs, "t")
        assert created.physical_id.startswith("ns-")
        assert created.inputs["name"] == "ollama.local"

        found = aws.find("aws_service_discovery_http_namespace", inputs, "t")
        assert found.physical_id == created.physical_id

        aws.delete("aws_service_discovery_http_namespace", created.physical_id, {})
        assert aws.read("aws_service_discovery_http_namespace", created.physical_id, {}) is None


class TestDispatch:
    def test_unsupported_resource_type(self, aws):
        with pytest.raises(PlatformError) as exc_info:
            aws.create("aws_s3_bucket", {}, "t")
        assert exc_info.value.code == "Unsupported"

    def test_every_stack_type_has_a_handler(self, aws, ollama_stack):
        types = {r.type for r in ollama_stack.resources.values()}
        assert types <= set(aws.handlers)


class TestErrorClassification:
    @staticmethod
    def _client_error(code, message=""):
        return ClientError({"Error": {"Code": code, "Message": message}}, "CreateRole")

    def test_throttling_is_transient(self):
        with pytest.raises(TransientPlatformError) as exc_info:
            with platform_call("create aws_iam_role"):
                raise self._client_error("Throttling", "Rate exceeded")
        assert exc_info.value.code == "Throttling"

    def test_access_denied_is_permanent(self):
        with pytest.raises(PlatformError) as exc_info:
            with platform_call("create aws_iam_role"):
                raise self._client_error("AccessDenied")
        assert not isinstance(exc_info.value, TransientPlatformError)

    def test_eventual_consistency_matched_on_message(self):
        assert is_transient("InvalidParameterValue", "Invalid IamInstanceProfile name")
        assert not is_transient("InvalidParameterValue", "bad CIDR")
