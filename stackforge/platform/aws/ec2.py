"""Security groups and launch templates."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from ..base import ObservedResource
from .base import ResourceHandler, is_not_found, platform_call


def _permission(rule: Dict[str, Any]) -> Dict[str, Any]:
    """Translate one ``{from_port, to_port, protocol, ...}`` rule into IpPermissions."""
    permission: Dict[str, Any] = {"IpProtocol": str(rule.get("protocol", "tcp"))}
    if permission["IpProtocol"] != "-1":
        permission["FromPort"] = int(rule["from_port"])
        permission["ToPort"] = int(rule["to_port"])

    description = rule.get("description")
    ranges = []
    for cidr in rule.get("cidr_blocks") or []:
        entry = {"CidrIp": cidr}
        if description:
            entry["Description"] = description
        ranges.append(entry)
    if ranges:
        permission["IpRanges"] = ranges

    pairs = []
    for group_id in rule.get("security_groups") or []:
        entry = {"GroupId": group_id}
        if description:
            entry["Description"] = description
        pairs.append(entry)
    if pairs:
        permission["UserIdGroupPairs"] = pairs

    return permission


def _permissions(rules: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [_permission(r) for r in rules or []]


_DEFAULT_EGRESS = [{"IpProtocol": "-1", "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}]


class SecurityGroupHandler(ResourceHandler):
    """``aws_security_group`` with inline ingress and egress rules."""

    resource_type = "aws_security_group"
    service = "ec2"

    def _observed(self, group: Dict[str, Any]) -> ObservedResource:
        group_id = group["GroupId"]
        return ObservedResource(
            physical_id=group_id,
            outputs={
                "id": group_id,
                "arn": f"arn:aws:ec2:{self.region}:{group['OwnerId']}:security-group/{group_id}",
                "owner_id": group["OwnerId"],
            },
            inputs={
                "name": group["GroupName"],
                "description": group.get("Description", ""),
                "vpc_id": group.get("VpcId"),
            },
        )

    def _describe(self, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            groups = self._client().describe_security_groups(**kwargs)["SecurityGroups"]
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return groups[0] if groups else None

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        client = self._client()
        tags = dict(inputs.get("tags") or {})
        tags.setdefault("Name", inputs["name"])

        with platform_call(self._op("create")):
            group_id = client.create_security_group(
                GroupName=inputs["name"],
                Description=inputs.get("description") or inputs["name"],
                VpcId=inputs["vpc_id"],
                TagSpecifications=[
                    {"ResourceType": "security-group", "Tags": self._tag_list(tags)}
                ],
            )["GroupId"]

            ingress = _permissions(inputs.get("ingress"))
            if ingress:
                client.authorize_security_group_ingress(GroupId=group_id, IpPermissions=ingress)

            if inputs.get("egress") is not None:
                client.revoke_security_group_egress(GroupId=group_id, IpPermissions=_DEFAULT_EGRESS)
                egress = _permissions(inputs["egress"])
                if egress:
                    client.authorize_security_group_egress(GroupId=group_id, IpPermissions=egress)

            group = self._describe(GroupIds=[group_id])
        return self._observed(group)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            group = self._describe(GroupIds=[physical_id])
        return self._observed(group) if group else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("update")):
            if old_inputs.get("ingress") != new_inputs.get("ingress"):
                old = _permissions(old_inputs.get("ingress"))
                if old:
                    client.revoke_security_group_ingress(GroupId=physical_id, IpPermissions=old)
                new = _permissions(new_inputs.get("ingress"))
                if new:
                    client.authorize_security_group_ingress(GroupId=physical_id, IpPermissions=new)

            if old_inputs.get("egress") != new_inputs.get("egress"):
                old = _permissions(old_inputs.get("egress")) if old_inputs.get("egress") is not None else _DEFAULT_EGRESS
                if old:
                    client.revoke_security_group_egress(GroupId=physical_id, IpPermissions=old)
                new = _permissions(new_inputs.get("egress")) if new_inputs.get("egress") is not None else _DEFAULT_EGRESS
                if new:
                    client.authorize_security_group_egress(GroupId=physical_id, IpPermissions=new)

            if old_inputs.get("tags") != new_inputs.get("tags") and new_inputs.get("tags"):
                client.create_tags(Resources=[physical_id], Tags=self._tag_list(new_inputs["tags"]))

            group = self._describe(GroupIds=[physical_id])
        return self._observed(group)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_security_group(GroupId=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        with platform_call(self._op("find")):
            group = self._describe(
                Filters=[
                    {"Name": "group-name", "Values": [inputs["name"]]},
                    {"Name": "vpc-id", "Values": [inputs["vpc_id"]]},
                ]
            )
        return self._observed(group) if group else None


class LaunchTemplateHandler(ResourceHandler):
    """``aws_launch_template``; attribute changes become new template versions."""

    resource_type = "aws_launch_template"
    service = "ec2"

    def _data(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "ImageId": inputs["image_id"],
            "InstanceType": inputs["instance_type"],
        }
        if inputs.get("key_name"):
            data["KeyName"] = inputs["key_name"]
        if inputs.get("iam_instance_profile"):
            data["IamInstanceProfile"] = {"Arn": inputs["iam_instance_profile"]["arn"]}
        if inputs.get("vpc_security_group_ids"):
            data["SecurityGroupIds"] = list(inputs["vpc_security_group_ids"])
        if inputs.get("user_data"):
            data["UserData"] = inputs["user_data"]
        mappings = []
        for mapping in inputs.get("block_device_mappings") or []:
            ebs = mapping.get("ebs", {})
            mappings.append(
                {
                    "DeviceName": mapping["device_name"],
                    "Ebs": {
                        "VolumeSize": int(ebs.get("volume_size", 30)),
                        "VolumeType": ebs.get("volume_type", "gp3"),
                        "DeleteOnTermination": True,
                    },
                }
            )
        if mappings:
            data["BlockDeviceMappings"] = mappings
        if inputs.get("tags"):
            data["TagSpecifications"] = [
                {"ResourceType": "instance", "Tags": self._tag_list(inputs["tags"])}
            ]
        return data

    def _observed(self, template: Dict[str, Any]) -> ObservedResource:
        template_id = template["LaunchTemplateId"]
        return ObservedResource(
            physical_id=template_id,
            outputs={
                "id": template_id,
                "arn": f"arn:aws:ec2:{self.region}:{self.account_id}:launch-template/{template_id}",
                "latest_version": template["LatestVersionNumber"],
            },
            inputs={"name": template["LaunchTemplateName"]},
        )

    def _describe(self, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            templates = self._client().describe_launch_templates(**kwargs)["LaunchTemplates"]
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return templates[0] if templates else None

    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        with platform_call(self._op("create")):
            template = self._client().create_launch_template(
                LaunchTemplateName=inputs["name"],
                LaunchTemplateData=self._data(inputs),
                ClientToken=token[:64],
            )["LaunchTemplate"]
        return self._observed(template)

    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        with platform_call(self._op("read")):
            template = self._describe(LaunchTemplateIds=[physical_id])
        return self._observed(template) if template else None

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        client = self._client()
        with platform_call(self._op("update")):
            version = client.create_launch_template_version(
                LaunchTemplateId=physical_id, LaunchTemplateData=self._data(new_inputs)
            )["LaunchTemplateVersion"]["VersionNumber"]
            client.modify_launch_template(
                LaunchTemplateId=physical_id, DefaultVersion=str(version)
            )
            template = self._describe(LaunchTemplateIds=[physical_id])
        return self._observed(template)

    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        with platform_call(self._op("delete")):
            try:
                self._client().delete_launch_template(LaunchTemplateId=physical_id)
            except ClientError as e:
                if not is_not_found(e):
                    raise

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        with platform_call(self._op("find")):
            template = self._describe(LaunchTemplateNames=[inputs["name"]])
        return self._observed(template) if template else None
