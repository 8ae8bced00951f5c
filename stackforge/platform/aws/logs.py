"""CloudWatch log groups and Cloud Map HTTP namespaces."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError
from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from ...errors import ActionTimeoutError, PlatformError
from ..base import ObservedResource
from .base import ResourceHandler, is_not_found, platform_call

NAMESPACE_POLL_SECONDS = 2
NAMESPACE_TIMEOUT_SECONDS = 120


def _strip_wildcard(arn: str) -> str:
    return arn[:-2] if arn.endswith(":*") else arn


class LogGroupHandler(ResourceHandler):
    """``aws_cloudwatch_log_group``; physical id is the group name."""

    resource_type = "aws_cloudwatch_log_group"
    service = "logs"

    def _describe(self, name: str) -> Optional[Dict[str, Any]]:
        groups = self._client().describe_log_groups(logGroupNamePrefix=name)["logGroups"]
        for group in groups:
            if group["logGroupName"] == name:
                return group
        return None

    def _observed(self, group: Dict[str, Any]) -> ObservedResource:
        name = group["logGroupName"]
        return ObservedResource(
            physical_id=name,
            outputs={"id": name, "arn": _strip_wildcard(group["arn"])},
            inputs={"name": name, "retention_in_days": group.get("retentionInDays")},
        )

    def _set_retention(self, name: str, retention: Optional[int]):
        client = self._client()
        if retention:
            client.put_retention_policy(logGroupName=name, retentionInDays=int(retention))
        else:
            client.delete_retention_policy(logGroupName=name)

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        name = inputs["name"]
        params: Dict[str, Any] = {"logGroupName": name}
        if inputs.get("tags"):
            params["tags"] = dict(inputs["tags"])
        with platform_call(self._op("create")):
            self._client().create_log_group(**params)
            if inputs.get("retention_in_days"):
                self._set_retention(name, inputs["retention_in_days"])
            group = self._describe(name)
        return self._observed(group)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            group = self._describe(physical_id)
        return self._observed(group) if group else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        with platform_call(self._op("update")):
            if old_inputs.get("retention_in_days") != new_inputs.get("retention_in_days"):
                self._set_retention(physical_id, new_inputs.get("retention_in_days"))
            group = self._describe(physical_id)
        return self._observed(group)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_log_group(logGroupName=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        return self.read(inputs["name"], inputs)


class HttpNamespaceHandler(ResourceHandler):
    """``aws_service_discovery_http_namespace`` used by ECS service connect.

    Namespace creation is asynchronous; ``create`` polls the returned
    operation until it reports the namespace id.
    """

    resource_type = "aws_service_discovery_http_namespace"
    service = "servicediscovery"

    def _observed(self, namespace: Dict[str, Any]) -> ObservedResource:
        return ObservedResource(
            physical_id=namespace["Id"],
            outputs={"id": namespace["Id"], "arn": namespace["Arn"]},
            inputs={"name": namespace["Name"]},
        )

    def _operation_done(self, operation_id: str) -> Optional[str]:
        with platform_call(self._op("create")):
            operation = self._client().get_operation(OperationId=operation_id)["Operation"]
        status = operation.get("Status")
        if status == "FAIL":
            raise PlatformError(
                self._op("create"),
                operation.get("ErrorMessage", "namespace creation failed"),
                code=operation.get("ErrorCode"),
            )
        if status == "SUCCESS":
            return operation.get("Targets", {}).get("NAMESPACE")
        return None

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        params: Dict[str, Any] = {"Name": inputs["name"], "CreatorRequestId": token[:64]}
        if inputs.get("description"):
            params["Description"] = inputs["description"]
        if inputs.get("tags"):
            params["Tags"] = self._tag_list(inputs["tags"])

        with platform_call(self._op("create")):
            operation_id = self._client().create_http_namespace(**params)["OperationId"]

        poll = Retrying(
            stop=stop_after_delay(NAMESPACE_TIMEOUT_SECONDS),
            wait=wait_fixed(NAMESPACE_POLL_SECONDS),
            retry=retry_if_result(lambda namespace_id: namespace_id is None),
        )
        try:
            namespace_id = poll(self._operation_done, operation_id)
        except RetryError:
            raise ActionTimeoutError(self._op("create"), NAMESPACE_TIMEOUT_SECONDS)

        with platform_call(self._op("create")):
            namespace = self._client().get_namespace(Id=namespace_id)["Namespace"]
        return self._observed(namespace)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            try:
                namespace = self._client().get_namespace(Id=physical_id)["Namespace"]
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        return self._observed(namespace)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_namespace(Id=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        with platform_call(self._op("find")):
            paginator = self._client().get_paginator("list_namespaces")
            for page in paginator.paginate(
                Filters=[{"Name": "TYPE", "Values": ["HTTP"], "Condition": "EQ"}]
            ):
                for namespace in page.get("Namespaces", []):
                    if namespace["Name"] == inputs["name"]:
                        return self._observed(namespace)
        return None
