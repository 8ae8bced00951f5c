"""Read-only data lookups against EC2."""

from typing import Any, Callable, Dict, List

import boto3
from botocore.exceptions import ClientError

from ...errors import DataLookupError
from ..base import Platform
from .base import error_code, error_message, platform_call


def _tag_filters(tags: Dict[str, str]) -> List[Dict[str, Any]]:
    return [{"Name": f"tag:{k}", "Values": [v]} for k, v in sorted(tags.items())]


class Ec2Lookups:
    """Resolve ``aws_vpc``, ``aws_subnets``, ``aws_availability_zones`` and
    ``aws_ec2_instance_type_offerings`` queries."""

    def __init__(self, session: boto3.Session, region: str) -> None:
        self.session = session
        self.region = region
        self._ec2 = None

    def _client(self):
        if self._ec2 is None:
            self._ec2 = self.session.client("ec2", region_name=self.region)
        return self._ec2

    def lookup(self, kind: str, filters: Dict[str, Any]) -> Dict[str, Any]:
        handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "aws_vpc": self._vpc,
            "aws_subnets": self._subnets,
            "aws_availability_zones": self._zones,
            "aws_ec2_instance_type_offerings": self._offerings,
        }
        if kind not in handlers:
            raise DataLookupError(kind, filters, "unsupported lookup kind")
        return handlers[kind](filters)

    def _vpc(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if filters.get("id"):
            params["VpcIds"] = [filters["id"]]
        if filters.get("tags"):
            params["Filters"] = _tag_filters(filters["tags"])

        with platform_call("lookup aws_vpc"):
            try:
                vpcs = self._client().describe_vpcs(**params)["Vpcs"]
            except ClientError as e:
                if error_code(e) == "InvalidVpcID.NotFound":
                    raise DataLookupError("aws_vpc", filters, error_message(e) or "VPC not found")
                raise

        vpc = Platform._single("aws_vpc", filters, vpcs, "VPCs")
        return {
            "id": vpc["VpcId"],
            "cidr_block": vpc.get("CidrBlock"),
            "tags": {t["Key"]: t["Value"] for t in vpc.get("Tags", [])},
        }

    def _subnets(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        query: List[Dict[str, Any]] = []
        if filters.get("vpc_id"):
            query.append({"Name": "vpc-id", "Values": [filters["vpc_id"]]})
        query.extend(_tag_filters(filters.get("tags", {})))

        zones: Dict[str, str] = {}
        with platform_call("lookup aws_subnets"):
            paginator = self._client().get_paginator("describe_subnets")
            for page in paginator.paginate(Filters=query):
                for subnet in page.get("Subnets", []):
                    zones[subnet["SubnetId"]] = subnet["AvailabilityZone"]

        if not zones:
            raise DataLookupError("aws_subnets", filters, "no subnets matched")
        ordered = dict(sorted(zones.items()))
        return {"ids": list(ordered), "availability_zones": ordered}

    def _zones(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        state = filters.get("state", "available")
        with platform_call("lookup aws_availability_zones"):
            zones = self._client().describe_availability_zones(
                Filters=[{"Name": "state", "Values": [state]}]
            )["AvailabilityZones"]
        if not zones:
            raise DataLookupError("aws_availability_zones", filters, "no availability zones matched")
        zones = sorted(zones, key=lambda z: z["ZoneName"])
        return {
            "names": [z["ZoneName"] for z in zones],
            "zone_ids": [z.get("ZoneId") for z in zones],
        }

    def _offerings(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        instance_type = filters.get("instance_type")
        locations = set()
        with platform_call("lookup aws_ec2_instance_type_offerings"):
            paginator = self._client().get_paginator("describe_instance_type_offerings")
            for page in paginator.paginate(
                LocationType=filters.get("location_type", "availability-zone"),
                Filters=[{"Name": "instance-type", "Values": [instance_type]}],
            ):
                for offering in page.get("InstanceTypeOfferings", []):
                    locations.add(offering["Location"])

        if not locations:
            raise DataLookupError(
                "aws_ec2_instance_type_offerings", filters, f"{instance_type} not offered"
            )
        return {"locations": sorted(locations), "instance_types": [instance_type]}
