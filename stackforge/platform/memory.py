"""
In-memory platform simulator.

A deterministic stand-in for the cloud control plane. It keeps network
fixtures for data lookups, stores managed resources with generated
identifiers, honours idempotency tokens, counts every call, and can be
persisted to a JSON file so separate CLI invocations share one simulated
account. Faults are injected through ``FaultInjector``.
"""

import copy
import itertools
import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import DataLookupError, PlatformError, StateError
from ..logging import get_logger
from ..utils.faults import FaultInjector
from .base import ObservedResource, Platform
from .schema import LOOKUP_KINDS, get_schema

logger = get_logger(__name__)

WRITE_OPERATIONS = frozenset({"create", "update", "delete"})

_ID_PREFIXES = {
    "aws_security_group": "sg",
    "aws_launch_template": "lt",
    "aws_lb_listener": "listener",
    "aws_lb_listener_rule": "rule",
    "aws_service_discovery_http_namespace": "ns",
    # Cluster names are already taken by aws_ecs_cluster in this store
    "aws_ecs_cluster_capacity_providers": "ccp",
}

_ELB_ZONE_IDS = {"us-east-1": "Z35SXDOTRQ7X7K", "us-west-2": "Z1H1FL5HABSF5"}


class InMemoryPlatform(Platform):
    """Simulated AWS account."""

    name = "memory"

    def __init__(
        self,
        region: str = "us-east-1",
        account_id: str = "123456789012",
        seed: int = 42,
        path: Optional[str] = None,
    ):
        self.region = region
        self.account_id = account_id
        self.path = path

        self.vpcs: Dict[str, Dict[str, Any]] = {}
        self.subnets: Dict[str, Dict[str, Any]] = {}
        self.zones: List[Dict[str, str]] = []
        self.instance_type_offerings: Dict[str, List[str]] = {}

        self.resources: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self.revisions: Dict[str, int] = {}

        self.faults = FaultInjector(seed)
        self.calls: List[Tuple[str, str]] = []

        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Fixtures
    # ------------------------------------------------------------------

    def add_vpc(self, vpc_id: str, cidr_block: str = "10.0.0.0/16", tags=None) -> str:
        self.vpcs[vpc_id] = {"cidr_block": cidr_block, "tags": dict(tags or {})}
        return vpc_id

    def add_zone(self, name: str, state: str = "available") -> str:
        zone_id = f"use1-az{len(self.zones) + 1}" if name.startswith("us-east-1") else name
        self.zones.append({"name": name, "zone_id": zone_id, "state": state})
        return name

    def add_subnet(
        self, subnet_id: str, vpc_id: str, availability_zone: str, tags=None
    ) -> str:
        self.subnets[subnet_id] = {
            "vpc_id": vpc_id,
            "availability_zone": availability_zone,
            "tags": dict(tags or {}),
        }
        if availability_zone not in {z["name"] for z in self.zones}:
            self.add_zone(availability_zone)
        return subnet_id

    def set_instance_type_offerings(self, instance_type: str, zones: List[str]):
        self.instance_type_offerings[instance_type] = list(zones)

    @classmethod
    def with_demo_network(
        cls, vpc_id: str = "vpc-123", region: str = "us-east-1", **kwargs
    ) -> "InMemoryPlatform":
        """A VPC with public and private subnets; GPUs offered in two of three zones."""
        platform = cls(region=region, **kwargs)
        platform.add_vpc(vpc_id)
        zones = [f"{region}a", f"{region}b", f"{region}c"]
        for i, zone in enumerate(zones):
            platform.add_subnet(f"subnet-priv{i}", vpc_id, zone, {"Tier": "private"})
            platform.add_subnet(f"subnet-pub{i}", vpc_id, zone, {"Tier": "public"})
        platform.set_instance_type_offerings("g4dn.xlarge", [zones[0], zones[2]])
        return platform

    # ------------------------------------------------------------------
    # Call accounting
    # ------------------------------------------------------------------

    def _record(self, operation: str, subject: str):
        with self._lock:
            self.calls.append((operation, subject))
        self.faults.check(f"{operation}:{subject}")

    @property
    def write_calls(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] in WRITE_OPERATIONS]

    def reset_calls(self):
        with self._lock:
            self.calls.clear()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def lookup(self, kind: str, filters: Dict[str, Any]) -> Dict[str, Any]:
        self._record("lookup", kind)

        if kind not in LOOKUP_KINDS:
            raise DataLookupError(kind, filters, "unsupported lookup kind")

        if kind == "aws_vpc":
            return self._lookup_vpc(filters)
        if kind == "aws_subnets":
            return self._lookup_subnets(filters)
        if kind == "aws_availability_zones":
            state = filters.get("state", "available")
            names = [z["name"] for z in self.zones if z["state"] == state]
            if not names:
                raise DataLookupError(kind, filters, "no availability zones matched")
            return {
                "names": names,
                "zone_ids": [z["zone_id"] for z in self.zones if z["state"] == state],
            }
        return self._lookup_offerings(filters)

    def _lookup_vpc(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        wanted_tags = filters.get("tags", {})
        matches = [
            vpc_id
            for vpc_id, vpc in sorted(self.vpcs.items())
            if ("id" not in filters or filters["id"] == vpc_id)
            and all(vpc["tags"].get(k) == v for k, v in wanted_tags.items())
        ]
        vpc_id = self._single("aws_vpc", filters, matches, "VPCs")
        vpc = self.vpcs[vpc_id]
        return {"id": vpc_id, "cidr_block": vpc["cidr_block"], "tags": dict(vpc["tags"])}

    def _lookup_subnets(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        wanted_tags = filters.get("tags", {})
        matches = {
            subnet_id: subnet["availability_zone"]
            for subnet_id, subnet in sorted(self.subnets.items())
            if ("vpc_id" not in filters or subnet["vpc_id"] == filters["vpc_id"])
            and all(subnet["tags"].get(k) == v for k, v in wanted_tags.items())
        }
        if not matches:
            raise DataLookupError("aws_subnets", filters, "no subnets matched")
        return {"ids": list(matches), "availability_zones": matches}

    def _lookup_offerings(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        instance_type = filters.get("instance_type")
        zones = [
            z
            for z in self.instance_type_offerings.get(instance_type, [])
            if z.startswith(self.region)
        ]
        if not zones:
            raise DataLookupError(
                "aws_ec2_instance_type_offerings", filters, f"{instance_type} not offered"
            )
        return {"locations": sorted(zones), "instance_types": [instance_type]}

    # ------------------------------------------------------------------
    # Managed resources
    # ------------------------------------------------------------------

    def _next_suffix(self) -> str:
        return f"{next(self._ids):017x}"

    def _computed(self, resource_type: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        schema = get_schema(resource_type)
        suffix = self._next_suffix()
        name = inputs.get(schema.name_attribute) if schema.name_attribute else None
        short_type = resource_type.replace("aws_", "").replace("_", "-")

        if resource_type in ("aws_iam_role", "aws_iam_instance_profile"):
            kind = "role" if resource_type == "aws_iam_role" else "instance-profile"
            outputs = {"id": name, "arn": f"arn:aws:iam::{self.account_id}:{kind}/{name}"}
            if resource_type == "aws_iam_role":
                outputs["unique_id"] = f"AROA{suffix[-16:].upper()}"
            return outputs

        if resource_type == "aws_iam_role_policy_attachment":
            return {"id": f"{inputs.get('role')}-{suffix[-8:]}"}

        if resource_type == "aws_ecs_task_definition":
            family = inputs.get("family")
            with self._lock:
                self.revisions[family] = self.revisions.get(family, 0) + 1
                revision = self.revisions[family]
            arn = (
                f"arn:aws:ecs:{self.region}:{self.account_id}:task-definition/{family}:{revision}"
            )
            return {"id": family, "arn": arn, "revision": revision}

        prefix = _ID_PREFIXES.get(resource_type)
        physical_id = f"{prefix}-{suffix}" if prefix else (name or f"{short_type}-{suffix}")
        outputs: Dict[str, Any] = {
            "id": physical_id,
            "arn": (
                f"arn:aws:{schema.service}:{self.region}:{self.account_id}:"
                f"{short_type}/{name or physical_id}"
            ),
        }

        if resource_type == "aws_lb":
            outputs["dns_name"] = f"{name}-{int(suffix, 16) % 10**9}.{self.region}.elb.amazonaws.com"
            outputs["zone_id"] = _ELB_ZONE_IDS.get(self.region, "Z00000000000000")
        elif resource_type == "aws_launch_template":
            outputs["latest_version"] = 1
        elif resource_type == "aws_security_group":
            outputs["owner_id"] = self.account_id

        for attribute in schema.computed:
            outputs.setdefault(attribute, f"{attribute}-{suffix}")
        return outputs

    def read(
        self, resource_type: str, physical_id: str, inputs: Dict[str, Any]
    ) -> Optional[ObservedResource]:
        self._record("read", resource_type)
        with self._lock:
            stored = self.resources.get(physical_id)
            if stored is None or stored["type"] != resource_type:
                return None
            return ObservedResource(
                physical_id=physical_id,
                outputs=copy.deepcopy(stored["outputs"]),
                inputs=copy.deepcopy(stored["inputs"]),
            )

    def create(self, resource_type: str, inputs: Dict[str, Any], token: str) -> ObservedResource:
        self._record("create", resource_type)

        with self._lock:
            if token in self.tokens and self.tokens[token] in self.resources:
                logger.debug("Create deduplicated by token", resource_type=resource_type)
                return self._observed(self.tokens[token])

            outputs = self._computed(resource_type, inputs)
            physical_id = str(outputs.get("arn") if resource_type == "aws_ecs_task_definition" else outputs["id"])
            if physical_id in self.resources:
                raise PlatformError(
                    f"create {resource_type}", f"{physical_id} already exists", code="AlreadyExists"
                )
            self.resources[physical_id] = {
                "type": resource_type,
                "inputs": copy.deepcopy(inputs),
                "outputs": outputs,
                "token": token,
            }
            self.tokens[token] = physical_id
            self._persist()
            return self._observed(physical_id)

    def update(
        self,
        resource_type: str,
        physical_id: str,
        old_inputs: Dict[str, Any],
        new_inputs: Dict[str, Any],
    ) -> ObservedResource:
        self._record("update", resource_type)

        with self._lock:
            stored = self.resources.get(physical_id)
            if stored is None:
                raise PlatformError(
                    f"update {resource_type}", f"{physical_id} not found", code="NotFound"
                )
            stored["inputs"] = copy.deepcopy(new_inputs)
            if "latest_version" in stored["outputs"]:
                stored["outputs"]["latest_version"] += 1
            self._persist()
            return self._observed(physical_id)

    def delete(self, resource_type: str, physical_id: str, inputs: Dict[str, Any]) -> None:
        self._record("delete", resource_type)

        with self._lock:
            stored = self.resources.pop(physical_id, None)
            if stored is not None:
                self.tokens.pop(stored.get("token"), None)
            self._persist()

    def find(
        self, resource_type: str, inputs: Dict[str, Any], token: str
    ) -> Optional[ObservedResource]:
        with self._lock:
            physical_id = self.tokens.get(token)
            if physical_id and physical_id in self.resources:
                return self._observed(physical_id)
        return None

    def wait_until_ready(
        self, resource_type: str, observed: ObservedResource, timeout: float
    ) -> None:
        self._record("ready", resource_type)

    def _observed(self, physical_id: str) -> ObservedResource:
        stored = self.resources[physical_id]
        return ObservedResource(
            physical_id=physical_id,
            outputs=copy.deepcopy(stored["outputs"]),
            inputs=copy.deepcopy(stored["inputs"]),
        )

    # ------------------------------------------------------------------
    # Out-of-band changes, used to exercise drift handling
    # ------------------------------------------------------------------

    def tamper(self, physical_id: str, **inputs: Any):
        """Change a resource behind the engine's back."""
        with self._lock:
            self.resources[physical_id]["inputs"].update(inputs)
            self._persist()

    def remove(self, physical_id: str):
        """Delete a resource behind the engine's back."""
        with self._lock:
            self.resources.pop(physical_id, None)
            self._persist()

    def managed(self, resource_type: Optional[str] = None) -> List[str]:
        with self._lock:
            return [
                pid
                for pid, stored in self.resources.items()
                if resource_type is None or stored["type"] == resource_type
            ]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region": self.region,
            "account_id": self.account_id,
            "vpcs": self.vpcs,
            "subnets": self.subnets,
            "zones": self.zones,
            "instance_type_offerings": self.instance_type_offerings,
            "resources": self.resources,
            "tokens": self.tokens,
            "revisions": self.revisions,
            "next_id": next(self._ids),
        }

    def _persist(self):
        if not self.path:
            return
        path = Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True))
            os.replace(tmp, path)
        except OSError as e:
            raise StateError(str(path), "write", str(e))

    @classmethod
    def load(cls, path: str, default_vpc_id: str = "vpc-123", region: str = "us-east-1") -> "InMemoryPlatform":
        """Load a persisted simulator, or create a demo account at *path*."""
        p = Path(path)
        if not p.exists():
            platform = cls.with_demo_network(vpc_id=default_vpc_id, region=region, path=path)
            platform._persist()
            return platform

        try:
            data = json.loads(p.read_text())
        except (OSError, ValueError) as e:
            raise StateError(path, "read", str(e))

        platform = cls(region=data["region"], account_id=data["account_id"], path=path)
        platform.vpcs = data["vpcs"]
        platform.subnets = data["subnets"]
        platform.zones = data["zones"]
        platform.instance_type_offerings = data["instance_type_offerings"]
        platform.resources = data["resources"]
        platform.tokens = data["tokens"]
        platform.revisions = data.get("revisions", {})
        platform._ids = itertools.count(data.get("next_id", 1))
        return platform
