"""EC2 Auto Scaling groups backing the ECS capacity provider."""

from typing import Any, Dict, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from ...errors import ActionTimeoutError
from ...logging import get_logger
from ..base import ObservedResource
from .base import ResourceHandler, platform_call

logger = get_logger(__name__)

READY_POLL_SECONDS = 15


class AutoScalingGroupHandler(ResourceHandler):
    """``aws_autoscaling_group``; physical id is the group name."""

    resource_type = "aws_autoscaling_group"
    service = "autoscaling"

    def _params(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        template = inputs["launch_template"]
        params: Dict[str, Any] = {
            "AutoScalingGroupName": inputs["name"],
            "MinSize": int(inputs["min_size"]),
            "MaxSize": int(inputs["max_size"]),
            "VPCZoneIdentifier": ",".join(inputs["vpc_zone_identifier"]),
            "LaunchTemplate": {
                "LaunchTemplateId": template["id"],
                "Version": str(template.get("version", "$Latest")),
            },
            "NewInstancesProtectedFromScaleIn": bool(inputs.get("protect_from_scale_in", False)),
        }
        if inputs.get("desired_capacity") is not None:
            params["DesiredCapacity"] = int(inputs["desired_capacity"])
        if inputs.get("health_check_grace_period") is not None:
            params["HealthCheckGracePeriod"] = int(inputs["health_check_grace_period"])
        return params

    def _describe(self, name: str) -> Optional[Dict[str, Any]]:
        groups = self._client().describe_auto_scaling_groups(AutoScalingGroupNames=[name])[
            "AutoScalingGroups"
        ]
        return groups[0] if groups else None

    def _observed(self, group: Dict[str, Any]) -> ObservedResource:
        name = group["AutoScalingGroupName"]
        return ObservedResource(
            physical_id=name,
            outputs={"id": name, "arn": group["AutoScalingGroupARN"]},
            inputs={
                "name": name,
                "min_size": group["MinSize"],
                "max_size": group["MaxSize"],
            },
        )

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        client = self._client()
        tags = [
            {"Key": k, "Value": v, "PropagateAtLaunch": True}
            for k, v in sorted((inputs.get("tags") or {}).items())
        ]
        with platform_call(self._op("create")):
            client.create_auto_scaling_group(Tags=tags, **self._params(inputs))
            group = self._describe(inputs["name"])
        return self._observed(group)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            group = self._describe(physical_id)
        if group is None or group.get("Status") == "Delete in progress":
            return None
        return self._observed(group)

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("update")):
            client.update_auto_scaling_group(**self._params(new_inputs))
            group = self._describe(physical_id)
        return self._observed(group)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        client = self._client()
        with platform_call(self._op("delete")):
            if self._describe(physical_id) is None:
                return
            client.delete_auto_scaling_group(AutoScalingGroupName=physical_id, ForceDelete=True)

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        return self.read(inputs["name"], inputs)

    def _in_service(self, name: str) -> bool:
        with platform_call(self._op("read")):
            group = self._describe(name)
        if group is None:
            return False
        healthy = [
            i
            for i in group.get("Instances", [])
            if i.get("LifecycleState") == "InService" and i.get("HealthStatus") == "Healthy"
        ]
        wanted = min(group.get("DesiredCapacity", 0), 1)
        logger.debug("Waiting for instances", group=name, healthy=len(healthy), wanted=wanted)
        return len(healthy) >= wanted

    def wait_until_ready(self, observed: ObservedResource, timeout: float) -> None:
        """Block until at least one instance is in service (when any are desired)."""
        poll = Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(READY_POLL_SECONDS),
            retry=retry_if_result(lambda ready: not ready),
        )
        try:
            poll(self._in_service, observed.physical_id)
        except RetryError:
            raise ActionTimeoutError(self._op("wait"), timeout)
