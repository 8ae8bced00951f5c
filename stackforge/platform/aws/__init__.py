"""boto3-backed platform.

Each supported resource type has a handler; the platform dispatches to it.
Usage::

    from stackforge.platform.aws import AwsPlatform
    platform = AwsPlatform(region="us-east-1", profile="prod")
"""

from typing import Any, Dict, List, Optional, Type

import boto3

from ...errors import PlatformError
from ...logging import get_logger
from ..base import ObservedResource, Platform
from .autoscaling import AutoScalingGroupHandler
from .base import ResourceHandler
from .ec2 import LaunchTemplateHandler, SecurityGroupHandler
from .ecs import (
    EcsCapacityProviderHandler,
    EcsClusterCapacityProvidersHandler,
    EcsClusterHandler,
    EcsServiceHandler,
    EcsTaskDefinitionHandler,
)
from .elb import ListenerHandler, ListenerRuleHandler, LoadBalancerHandler, TargetGroupHandler
from .iam import IamInstanceProfileHandler, IamRoleHandler, IamRolePolicyAttachmentHandler
from .logs import HttpNamespaceHandler, LogGroupHandler
from .lookups import Ec2Lookups

logger = get_logger(__name__)

ALL_HANDLERS: List[Type[ResourceHandler]] = [
    IamRoleHandler,
    IamRolePolicyAttachmentHandler,
    IamInstanceProfileHandler,
    SecurityGroupHandler,
    LaunchTemplateHandler,
    AutoScalingGroupHandler,
    EcsClusterHandler,
    EcsCapacityProviderHandler,
    EcsClusterCapacityProvidersHandler,
    HttpNamespaceHandler,
    LogGroupHandler,
    LoadBalancerHandler,
    TargetGroupHandler,
    ListenerHandler,
    ListenerRuleHandler,
    EcsTaskDefinitionHandler,
    EcsServiceHandler,
]


class AwsPlatform(Platform):
    """Converge against a real AWS account."""

    name = "aws"

    def __init__(
        self,
        region: str = "us-east-1",
        profile: Optional[str] = None,
        session: Optional[boto3.Session] = None,
    ):
        self.region = region
        self.session = session or boto3.Session(profile_name=profile, region_name=region)
        self.handlers: Dict[str, ResourceHandler] = {
            h.resource_type: h(self.session, region) for h in ALL_HANDLERS
        }
        self.lookups = Ec2Lookups(self.session, region)

    def _handler(self, resource_type: str) -> ResourceHandler:
        handler = self.handlers.get(resource_type)
        if handler is None:
            raise PlatformError(
                f"dispatch {resource_type}", "unsupported resource type", code="Unsupported"
            )
        return handler

    def lookup(self, kind: str, filters: Dict[str, Any]) -> Dict[str, Any]:
        logger.debug("Resolving lookup", kind=kind, region=self.region)
        return self.lookups.lookup(kind, filters)

    def read(
        self, resource_type: str, physical_id: str, inputs: Dict[str, Any]
    ) -> Optional[ObservedResource]:
        return self._handler(resource_type).read(physical_id, inputs)

    def create(self, resource_type: str, inputs: Dict[str, Any], token: str) -> ObservedResource:
        return self._handler(resource_type).create(inputs, token)

    def update(
        self,
        resource_type: str,
        physical_id: str,
        old_inputs: Dict[str, Any],
        new_inputs: Dict[str, Any],
    ) -> ObservedResource:
        return self._handler(resource_type).update(physical_id, old_inputs, new_inputs)

    def delete(self, resource_type: str, physical_id: str, inputs: Dict[str, Any]) -> None:
        self._handler(resource_type).delete(physical_id, inputs)

    def find(
        self, resource_type: str, inputs: Dict[str, Any], token: str
    ) -> Optional[ObservedResource]:
        return self._handler(resource_type).find(inputs, token)

    def wait_until_ready(
        self, resource_type: str, observed: ObservedResource, timeout: float
    ) -> None:
        self._handler(resource_type).wait_until_ready(observed, timeout)


__all__ = ["ALL_HANDLERS", "AwsPlatform"]
