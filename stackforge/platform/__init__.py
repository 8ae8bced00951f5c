"""
Platform boundary for stackforge.

Two implementations share the ``Platform`` interface: an in-memory simulator
(deterministic, optionally persisted to JSON) and a boto3-backed AWS
platform.
"""

from typing import Optional

from ..config import get_config
from .aws import AwsPlatform
from .base import ObservedResource, Platform
from .memory import InMemoryPlatform


def get_platform(simulate_file: Optional[str] = None, region: Optional[str] = None) -> Platform:
    """Build the platform selected by arguments or configuration."""
    settings = get_config().platform
    simulate_file = simulate_file or settings.simulate_file
    region = region or settings.aws_region

    if simulate_file:
        return InMemoryPlatform.load(simulate_file, region=region)

    return AwsPlatform(region=region, profile=settings.aws_profile)


__all__ = ["AwsPlatform", "InMemoryPlatform", "ObservedResource", "Platform", "get_platform"]
