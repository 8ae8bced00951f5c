"""Base class for boto3 resource handlers and AWS error classification."""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ...errors import PlatformError, TransientPlatformError
from ..base import ObservedResource

# Error codes AWS documents as safe to retry
TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "InternalFailure",
        "InternalError",
        "RequestTimeout",
        "PriorRequestNotComplete",
        "DependencyViolation",
        "ResourceInUse",
        "ResourceInUseException",
    }
)

# (code, message fragment) pairs that indicate a just-created dependency is
# not yet visible to the calling service
EVENTUAL_CONSISTENCY = (
    ("InvalidParameterValue", "Invalid IamInstanceProfile"),
    ("InvalidParameterValue", "iamInstanceProfile"),
    ("ValidationError", "Invalid IamInstanceProfile"),
    ("ClientException", "Unable to assume role"),
    ("ClientException", "unable to assume the service linked role"),
    ("InvalidGroup.NotFound", ""),
    ("InvalidLaunchTemplateId.NotFound", ""),
    ("InvalidParameterException", "Unable to assume the service linked role"),
)

NOT_FOUND_CODES = frozenset(
    {
        "NoSuchEntity",
        "InvalidGroup.NotFound",
        "InvalidGroupId.NotFound",
        "InvalidLaunchTemplateId.NotFound",
        "InvalidLaunchTemplateId.NotFoundException",
        "InvalidLaunchTemplateName.NotFoundException",
        "ResourceNotFoundException",
        "LoadBalancerNotFound",
        "TargetGroupNotFound",
        "ListenerNotFound",
        "RuleNotFound",
        "ClusterNotFoundException",
        "ServiceNotFoundException",
        "NamespaceNotFound",
    }
)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


def error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", "")


def is_transient(code: str, message: str = "") -> bool:
    """Whether an AWS error is worth retrying."""
    if code in TRANSIENT_CODES:
        return True
    return any(
        code == c and (not fragment or fragment.lower() in message.lower())
        for c, fragment in EVENTUAL_CONSISTENCY
    )


def is_not_found(error: ClientError) -> bool:
    return error_code(error) in NOT_FOUND_CODES


@contextmanager
def platform_call(operation: str):
    """Translate botocore failures into stackforge platform errors."""
    try:
        yield
    except ClientError as e:
        code = error_code(e)
        message = error_message(e) or code
        if is_transient(code, message):
            raise TransientPlatformError(operation, message, code=code) from e
        raise PlatformError(operation, message, code=code) from e
    except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as e:
        raise TransientPlatformError(operation, str(e), code="ConnectionError") from e


class ResourceHandler(ABC):
    """Create/read/update/delete for one resource type.

    Subclasses set ``resource_type`` and ``service`` and translate the
    engine's snake_case attributes into API parameters. Handlers never log
    inputs, which may carry revealed secrets.
    """

    resource_type: str = ""
    service: str = ""

    def __init__(self, session: boto3.Session, region: str) -> None:
        self.session = session
        self.region = region
        self._clients: Dict[str, Any] = {}
        self._account_id: Optional[str] = None

    def _client(self, service: Optional[str] = None):
        """Return a boto3 client for *service* in the configured region."""
        service = service or self.service
        if service not in self._clients:
            self._clients[service] = self.session.client(service, region_name=self.region)
        return self._clients[service]

    @property
    def account_id(self) -> str:
        if self._account_id is None:
            with platform_call("sts:GetCallerIdentity"):
                self._account_id = self._client("sts").get_caller_identity()["Account"]
        return self._account_id

    def _op(self, verb: str) -> str:
        return f"{verb} {self.resource_type}"

    @abstractmethod
    def create(self, inputs: Dict[str, Any], token: str) -> ObservedResource:
        ...

    @abstractmethod
    def read(self, physical_id: str, inputs: Dict[str, Any]) -> Optional[ObservedResource]:
        ...

    def update(
        self, physical_id: str, old_inputs: Dict[str, Any], new_inputs: Dict[str, Any]
    ) -> ObservedResource:
        raise PlatformError(
            self._op("update"), "in-place update not supported", code="UpdateNotSupported"
        )

    @abstractmethod
    def delete(self, physical_id: str, inputs: Dict[str, Any]) -> None:
        ...

    def find(self, inputs: Dict[str, Any], token: str) -> Optional[ObservedResource]:
        return None

    def wait_until_ready(self, observed: ObservedResource, timeout: float) -> None:
        return None

    @staticmethod
    def _tag_list(tags: Optional[Dict[str, str]], key: str = "Key", value: str = "Value") -> List[Dict[str, str]]:
        """Convert ``{k: v}`` into the AWS ``[{"Key": k, "Value": v}]`` shape."""
        return [{key: k, value: v} for k, v in sorted((tags or {}).items())]

    @staticmethod
    def _safe_tags(tag_list, key: str = "Key", value: str = "Value") -> Dict[str, str]:
        if not tag_list:
            return {}
        return {t.get(key, ""): t.get(value, "") for t in tag_list if key in t}
