"""ECS clusters, capacity providers, task definitions and services."""

import json
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from ...errors import ActionTimeoutError
from ...logging import get_logger
from ..base import ObservedResource
from .base import ResourceHandler, is_not_found, platform_call

logger = get_logger(__name__)

SERVICE_POLL_SECONDS = 15


def _ecs_tags(tags: Optional[Dict[str, str]]) -> List[Dict[str, str]]:
    return ResourceHandler._tag_list(tags, key="key", value="value")


def _strategy(items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [
        {
            "capacityProvider": item["capacity_provider"],
            "weight": int(item.get("weight", 1)),
            "base": int(item.get("base", 0)),
        }
        for item in items or []
    ]


class EcsClusterHandler(ResourceHandler):
    """``aws_ecs_cluster``; physical id is the cluster ARN."""

    resource_type = "aws_ecs_cluster"
    service = "ecs"

    def _settings(self, inputs: Dict[str, Any]) -> List[Dict[str, str]]:
        return [{"name": s["name"], "value": s["value"]} for s in inputs.get("settings") or []]

    def _observed(self, cluster: Dict[str, Any]) -> ObservedResource:
        return ObservedResource(
            physical_id=cluster["clusterArn"],
            outputs={"id": cluster["clusterArn"], "arn": cluster["clusterArn"]},
            inputs={"name": cluster["clusterName"]},
        )

    def _describe(self, cluster: str) -> Optional[Dict[str, Any]]:
        clusters = self._client().describe_clusters(clusters=[cluster])["clusters"]
        active = [c for c in clusters if c.get("status") == "ACTIVE"]
        return active[0] if active else None

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        params: Dict[str, Any] = {"clusterName": inputs["name"], "tags": _ecs_tags(inputs.get("tags"))}
        if inputs.get("settings"):
            params["settings"] = self._settings(inputs)
        with platform_call(self._op("create")):
            cluster = self._client().create_cluster(**params)["cluster"]
        return self._observed(cluster)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            cluster = self._describe(physical_id)
        return self._observed(cluster) if cluster else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("update")):
            if old_inputs.get("settings") != new_inputs.get("settings"):
                client.update_cluster_settings(
                    cluster=physical_id, settings=self._settings(new_inputs)
                )
            cluster = self._describe(physical_id)
        return self._observed(cluster)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_cluster(cluster=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        return self.read(inputs["name"], inputs)


class EcsCapacityProviderHandler(ResourceHandler):
    """``aws_ecs_capacity_provider`` over an Auto Scaling group."""

    resource_type = "aws_ecs_capacity_provider"
    service = "ecs"

    @staticmethod
    def _managed(inputs: Dict[str, Any]) -> Dict[str, Any]:
        scaling = inputs.get("managed_scaling") or {}
        provider: Dict[str, Any] = {
            "managedTerminationProtection": inputs.get("managed_termination_protection", "DISABLED"),
        }
        if scaling:
            provider["managedScaling"] = {
                "status": scaling.get("status", "ENABLED"),
                "targetCapacity": int(scaling.get("target_capacity", 100)),
                "minimumScalingStepSize": int(scaling.get("minimum_scaling_step_size", 1)),
                "maximumScalingStepSize": int(scaling.get("maximum_scaling_step_size", 1)),
            }
        return provider

    def _observed(self, provider: Dict[str, Any]) -> ObservedResource:
        return ObservedResource(
            physical_id=provider["name"],
            outputs={"id": provider["capacityProviderArn"], "arn": provider["capacityProviderArn"]},
            inputs={"name": provider["name"]},
        )

    def _describe(self, name: str) -> Optional[Dict[str, Any]]:
        providers = self._client().describe_capacity_providers(capacityProviders=[name])[
            "capacityProviders"
        ]
        active = [p for p in providers if p.get("status") == "ACTIVE"]
        return active[0] if active else None

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        group_provider = self._managed(inputs)
        group_provider["autoScalingGroupArn"] = inputs["auto_scaling_group_arn"]
        with platform_call(self._op("create")):
            provider = self._client().create_capacity_provider(
                name=inputs["name"],
                autoScalingGroupProvider=group_provider,
                tags=_ecs_tags(inputs.get("tags")),
            )["capacityProvider"]
        return self._observed(provider)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            provider = self._describe(physical_id)
        return self._observed(provider) if provider else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        with platform_call(self._op("update")):
            provider = self._client().update_capacity_provider(
                name=physical_id, autoScalingGroupProvider=self._managed(new_inputs)
            )["capacityProvider"]
        return self._observed(provider)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_capacity_provider(capacityProvider=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        return self.read(inputs["name"], inputs)


class EcsClusterCapacityProvidersHandler(ResourceHandler):
    """``aws_ecs_cluster_capacity_providers``; physical id is the cluster name."""

    resource_type = "aws_ecs_cluster_capacity_providers"
    service = "ecs"

    def _put(self, cluster: str, providers: List[str], strategy: List[Dict[str, Any]]):
        self._client().put_cluster_capacity_providers(
            cluster=cluster,
            capacityProviders=list(providers),
            defaultCapacityProviderStrategy=strategy,
        )

    def _observed(self, cluster_name: str, providers: List[str]) -> ObservedResource:
        return ObservedResource(
            physical_id=cluster_name,
            outputs={"id": cluster_name},
            inputs={"cluster_name": cluster_name, "capacity_providers": sorted(providers)},
        )

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        providers = list(inputs.get("capacity_providers") or [])
        with platform_call(self._op("create")):
            self._put(
                inputs["cluster_name"],
                providers,
                _strategy(inputs.get("default_capacity_provider_strategy")),
            )
        return self._observed(inputs["cluster_name"], providers)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            clusters = self._client().describe_clusters(clusters=[physical_id])["clusters"]
        active = [c for c in clusters if c.get("status") == "ACTIVE"]
        if not active:
            return None
        return self._observed(physical_id, active[0].get("capacityProviders", []))

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        return self.create(new_inputs, token="")

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._put(physical_id, [], [])
            except ClientError as e:
                if not is_not_found(e):
                    raise


class EcsTaskDefinitionHandler(ResourceHandler):
    """``aws_ecs_task_definition``; every change registers a new revision."""

    resource_type = "aws_ecs_task_definition"
    service = "ecs"

    def _observed(self, definition: Dict[str, Any]) -> ObservedResource:
        arn = definition["taskDefinitionArn"]
        return ObservedResource(
            physical_id=arn,
            outputs={"id": definition["family"], "arn": arn, "revision": definition["revision"]},
            inputs={"family": definition["family"]},
        )

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        params: Dict[str, Any] = {
            "family": inputs["family"],
            "containerDefinitions": json.loads(inputs["container_definitions"]),
            "networkMode": inputs.get("network_mode", "bridge"),
            "requiresCompatibilities": list(inputs.get("requires_compatibilities") or ["EC2"]),
        }
        for attribute, key in (
            ("execution_role_arn", "executionRoleArn"),
            ("task_role_arn", "taskRoleArn"),
            ("cpu", "cpu"),
            ("memory", "memory"),
        ):
            if inputs.get(attribute) is not None:
                params[key] = str(inputs[attribute])
        if inputs.get("tags"):
            params["tags"] = _ecs_tags(inputs["tags"])

        with platform_call(self._op("create")):
            definition = self._client().register_task_definition(**params)["taskDefinition"]
        return self._observed(definition)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            try:
                definition = self._client().describe_task_definition(
                    taskDefinition=physical_id
                )["taskDefinition"]
            except ClientError as e:
                if is_not_found(e) or "Unable to describe task definition" in str(e):
                    return None
                raise
        if definition.get("status") == "INACTIVE":
            return None
        return self._observed(definition)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().deregister_task_definition(taskDefinition=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise


class EcsServiceHandler(ResourceHandler):
    """``aws_ecs_service`` running on the cluster's capacity provider."""

    resource_type = "aws_ecs_service"
    service = "ecs"

    @staticmethod
    def _deployment(inputs: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "minimumHealthyPercent": int(inputs.get("deployment_minimum_healthy_percent", 100)),
            "maximumPercent": int(inputs.get("deployment_maximum_percent", 200)),
        }

    @staticmethod
    def _service_connect(inputs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        connect = inputs.get("service_connect")
        if not connect:
            return None
        return {
            "enabled": True,
            "namespace": connect["namespace"],
            "services": [
                {
                    "portName": s["port_name"],
                    "discoveryName": s.get("discovery_name", s["port_name"]),
                    "clientAliases": [
                        {"port": int(s["client_alias"]["port"]), "dnsName": s["client_alias"]["dns_name"]}
                    ],
                }
                for s in connect.get("services", [])
            ],
        }

    def _observed(self, service: Dict[str, Any]) -> ObservedResource:
        return ObservedResource(
            physical_id=service["serviceArn"],
            outputs={"id": service["serviceArn"], "arn": service["serviceArn"]},
            inputs={
                "name": service["serviceName"],
                "desired_count": service.get("desiredCount"),
                "task_definition": service.get("taskDefinition"),
            },
        )

    def _describe(self, cluster: str, service: str) -> Optional[Dict[str, Any]]:
        services = self._client().describe_services(cluster=cluster, services=[service])[
            "services"
        ]
        active = [s for s in services if s.get("status") == "ACTIVE"]
        return active[0] if active else None

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        params: Dict[str, Any] = {
            "cluster": inputs["cluster"],
            "serviceName": inputs["name"],
            "taskDefinition": inputs["task_definition"],
            "desiredCount": int(inputs.get("desired_count", 1)),
            "deploymentConfiguration": self._deployment(inputs),
            "clientToken": token[:36],
            "tags": _ecs_tags(inputs.get("tags")),
        }
        if inputs.get("capacity_provider_strategy"):
            params["capacityProviderStrategy"] = _strategy(inputs["capacity_provider_strategy"])
        connect = self._service_connect(inputs)
        if connect:
            params["serviceConnectConfiguration"] = connect
        balancer = inputs.get("load_balancer")
        if balancer:
            params["loadBalancers"] = [
                {
                    "targetGroupArn": balancer["target_group_arn"],
                    "containerName": balancer["container_name"],
                    "containerPort": int(balancer["container_port"]),
                }
            ]
            if inputs.get("health_check_grace_period_seconds") is not None:
                params["healthCheckGracePeriodSeconds"] = int(
                    inputs["health_check_grace_period_seconds"]
                )

        with platform_call(self._op("create")):
            service = self._client().create_service(**params)["service"]
        return self._observed(service)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            try:
                service = self._describe(inputs["cluster"], physical_id)
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        return self._observed(service) if service else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        params: Dict[str, Any] = {
            "cluster": new_inputs["cluster"],
            "service": physical_id,
            "taskDefinition": new_inputs["task_definition"],
            "desiredCount": int(new_inputs.get("desired_count", 1)),
            "deploymentConfiguration": self._deployment(new_inputs),
        }
        if new_inputs.get("capacity_provider_strategy"):
            params["capacityProviderStrategy"] = _strategy(new_inputs["capacity_provider_strategy"])
        connect = self._service_connect(new_inputs)
        if connect:
            params["serviceConnectConfiguration"] = connect
        if new_inputs.get("health_check_grace_period_seconds") is not None:
            params["healthCheckGracePeriodSeconds"] = int(
                new_inputs["health_check_grace_period_seconds"]
            )
        with platform_call(self._op("update")):
            service = self._client().update_service(**params)["service"]
        return self._observed(service)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        client = self._client()
        with platform_call(self._op("delete")):
            try:
                client.delete_service(cluster=inputs["cluster"], service=physical_id, force=True)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        with platform_call(self._op("find")):
            try:
                service = self._describe(inputs["cluster"], inputs["name"])
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        return self._observed(service) if service else None

    def _stable(self, cluster: str, service_arn: str) -> bool:
        with platform_call(self._op("read")):
            service = self._describe(cluster, service_arn)
        if service is None:
            return False
        primary = [d for d in service.get("deployments", []) if d.get("status") == "PRIMARY"]
        running = service.get("runningCount", 0)
        logger.debug(
            "Waiting for service", service=service_arn, running=running, desired=service.get("desiredCount")
        )
        return len(service.get("deployments", [])) == len(primary) and running == service.get(
            "desiredCount"
        )

    def wait_until_ready(self, observed: ObservedResource, timeout: float) -> None:
        # Service ARNs end in service/<cluster>/<service>
        cluster = observed.physical_id.split("/")[-2]
        poll = Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(SERVICE_POLL_SECONDS),
            retry=retry_if_result(lambda stable: not stable),
        )
        try:
            poll(self._stable, cluster, observed.physical_id)
        except RetryError:
            raise ActionTimeoutError(self._op("wait"), timeout)
