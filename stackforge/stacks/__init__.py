"""
Bundled stacks.
"""

from typing import Callable, Dict, List

from ..errors import ConfigurationError
from ..stack import Stack
from .ollama_webui import build_stack as build_ollama_webui

STACKS: Dict[str, Callable[[], Stack]] = {
    "ollama-webui": build_ollama_webui,
}


def available_stacks() -> List[str]:
    return sorted(STACKS)


def get_stack(name: str) -> Stack:
    """Build the bundled stack registered under *name*."""
    factory = STACKS.get(name)
    if factory is None:
        raise ConfigurationError("stack", name, f"one of {', '.join(available_stacks())}")
    return factory()


__all__ = ["STACKS", "available_stacks", "get_stack"]
