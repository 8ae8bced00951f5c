"""IAM roles, managed policy attachments and instance profiles."""

import json
from typing import Any, Dict, Optional
from urllib.parse import unquote

from botocore.exceptions import ClientError

from ..base import ObservedResource
from .base import ResourceHandler, is_not_found, platform_call


def _policy_string(document: Any) -> str:
    """IAM returns policy documents either parsed or URL-encoded."""
    if isinstance(document, str):
        document = json.loads(unquote(document))
    return json.dumps(document, sort_keys=True)


class IamRoleHandler(ResourceHandler):
    """``aws_iam_role``; physical id is the role name.

    IAM is a global service, the region is only used for client creation.
    """

    resource_type = "aws_iam_role"
    service = "iam"

    def _observed(self, role: Dict[str, Any]) -> ObservedResource:
        return ObservedResource(
            physical_id=role["RoleName"],
            outputs={"id": role["RoleName"], "arn": role["Arn"], "unique_id": role["RoleId"]},
            inputs={
                "name": role["RoleName"],
                "assume_role_policy": _policy_string(role.get("AssumeRolePolicyDocument", {})),
            },
        )

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        params = {
            "RoleName": inputs["name"],
            "AssumeRolePolicyDocument": inputs["assume_role_policy"],
            "Tags": self._tag_list(inputs.get("tags")),
        }
        if inputs.get("path"):
            params["Path"] = inputs["path"]
        if inputs.get("description"):
            params["Description"] = inputs["description"]

        with platform_call(self._op("create")):
            role = self._client().create_role(**params)["Role"]
        return self._observed(role)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            try:
                role = self._client().get_role(RoleName=physical_id)["Role"]
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        return self._observed(role)

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("update")):
            if old_inputs.get("assume_role_policy") != new_inputs.get("assume_role_policy"):
                client.update_assume_role_policy(
                    RoleName=physical_id, PolicyDocument=new_inputs["assume_role_policy"]
                )
            if old_inputs.get("description") != new_inputs.get("description"):
                client.update_role(
                    RoleName=physical_id, Description=new_inputs.get("description") or ""
                )
            if old_inputs.get("tags") != new_inputs.get("tags") and new_inputs.get("tags"):
                client.tag_role(RoleName=physical_id, Tags=self._tag_list(new_inputs["tags"]))
            role = client.get_role(RoleName=physical_id)["Role"]
        return self._observed(role)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_role(RoleName=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        return self.read(inputs["name"], inputs)


class IamRolePolicyAttachmentHandler(ResourceHandler):
    """``aws_iam_role_policy_attachment``; physical id is ``role/policy_arn``."""

    resource_type = "aws_iam_role_policy_attachment"
    service = "iam"

    @staticmethod
    def _id(role: str, policy_arn: str) -> str:
        return f"{role}/{policy_arn}"

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        with platform_call(self._op("create")):
            self._client().attach_role_policy(
                RoleName=inputs["role"], PolicyArn=inputs["policy_arn"]
            )
        physical_id = self._id(inputs["role"], inputs["policy_arn"])
        return ObservedResource(physical_id, {"id": physical_id}, dict(inputs))

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        role, policy_arn = physical_id.split("/", 1)
        client = self._client()
        with platform_call(self._op("read")):
            try:
                paginator = client.get_paginator("list_attached_role_policies")
                for page in paginator.paginate(RoleName=role):
                    for policy in page.get("AttachedPolicies", []):
                        if policy["PolicyArn"] == policy_arn:
                            return ObservedResource(
                                physical_id,
                                {"id": physical_id},
                                {"role": role, "policy_arn": policy_arn},
                            )
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        return None

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        role, policy_arn = physical_id.split("/", 1)
        with platform_call(self._op("delete")):
            try:
                self._client().detach_role_policy(RoleName=role, PolicyArn=policy_arn)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        return self.read(self._id(inputs["role"], inputs["policy_arn"]), inputs)


class IamInstanceProfileHandler(ResourceHandler):
    """``aws_iam_instance_profile`` holding at most one role."""

    resource_type = "aws_iam_instance_profile"
    service = "iam"

    def _observed(self, profile: Dict[str, Any]) -> ObservedResource:
        roles = profile.get("Roles", [])
        return ObservedResource(
            physical_id=profile["InstanceProfileName"],
            outputs={"id": profile["InstanceProfileName"], "arn": profile["Arn"]},
            inputs={
                "name": profile["InstanceProfileName"],
                "role": roles[0]["RoleName"] if roles else None,
            },
        )

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("create")):
            client.create_instance_profile(
                InstanceProfileName=inputs["name"], Tags=self._tag_list(inputs.get("tags"))
            )
            if inputs.get("role"):
                client.add_role_to_instance_profile(
                    InstanceProfileName=inputs["name"], RoleName=inputs["role"]
                )
            profile = client.get_instance_profile(InstanceProfileName=inputs["name"])
        return self._observed(profile["InstanceProfile"])

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            try:
                profile = self._client().get_instance_profile(InstanceProfileName=physical_id)
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        return self._observed(profile["InstanceProfile"])

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("update")):
            if old_inputs.get("role") != new_inputs.get("role"):
                if old_inputs.get("role"):
                    client.remove_role_from_instance_profile(
                        InstanceProfileName=physical_id, RoleName=old_inputs["role"]
                    )
                if new_inputs.get("role"):
                    client.add_role_to_instance_profile(
                        InstanceProfileName=physical_id, RoleName=new_inputs["role"]
                    )
            profile = client.get_instance_profile(InstanceProfileName=physical_id)
        return self._observed(profile["InstanceProfile"])

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        client = self._client()
        with platform_call(self._op("delete")):
            try:
                profile = client.get_instance_profile(InstanceProfileName=physical_id)
            except ClientError as e:
                if is_not_found(e):
                    return
                raise
            for role in profile["InstanceProfile"].get("Roles", []):
                client.remove_role_from_instance_profile(
                    InstanceProfileName=physical_id, RoleName=role["RoleName"]
                )
            client.delete_instance_profile(InstanceProfileName=physical_id)

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        return self.read(inputs["name"], inputs)
