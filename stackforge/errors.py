"""
Error Definitions for Stackforge

This module defines custom exception classes used throughout stackforge to
provide clear, actionable error messages. Errors fall into five families:
configuration errors (detected while building the graph, before any external
call), lookup errors, transient platform errors, apply failures and drift.
"""

from typing import Any, Dict, Iterable, List, Optional


class StackforgeError(Exception):
    """Base exception class for all stackforge errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(StackforgeError):
    """Raised when a stack declaration or engine setting is invalid."""

    def __init__(self, field: str, value: Any, expected: str, **details):
        message = f"Invalid configuration for {field}: got {value}, expected {expected}"

        super().__init__(message, {"field": field, "value": value, "expected": expected, **details})
        self.field = field
        self.value = value
        self.expected = expected


class MissingVariableError(ConfigurationError):
    """Raised when a required variable has no binding and no default."""

    def __init__(self, name: str, **details):
        super().__init__(name, None, "a value for required variable", **details)
        self.message = f"Missing required variable: {name}"
        self.name = name


class DanglingReferenceError(StackforgeError):
    """Raised when an attribute references something that is not declared."""

    def __init__(self, consumer: str, target: str, **details):
        message = f"{consumer} references undeclared {target}"

        super().__init__(message, {"consumer": consumer, "target": target, **details})
        self.consumer = consumer
        self.target = target


class CycleError(StackforgeError):
    """Raised when the dependency graph contains one or more cycles."""

    def __init__(self, cycles: Iterable[Iterable[str]], **details):
        self.cycles: List[List[str]] = [sorted(c) for c in cycles]
        members = sorted({m for c in self.cycles for m in c})
        rendered = "; ".join(" <-> ".join(c) for c in self.cycles)
        message = f"Dependency cycle detected: {rendered}"

        super().__init__(message, {"members": members, **details})
        self.members = members


class SensitiveValueError(StackforgeError):
    """Raised when a sensitive value would flow somewhere it is not declared."""

    def __init__(self, variable: str, location: str, **details):
        message = f"Sensitive variable {variable} may not flow into {location}"

        super().__init__(message, {"variable": variable, "location": location, **details})
        self.variable = variable
        self.location = location


class DataLookupError(StackforgeError):
    """Raised when a read-only lookup returns zero or ambiguous results."""

    def __init__(self, kind: str, filters: Dict[str, Any], reason: str, **details):
        message = f"Lookup {kind} failed: {reason}"

        super().__init__(message, {"kind": kind, "filters": filters, "reason": reason, **details})
        self.kind = kind
        self.filters = filters
        self.reason = reason


class PlatformError(StackforgeError):
    """Raised when the platform rejects a call permanently."""

    def __init__(self, operation: str, reason: str, code: Optional[str] = None, **details):
        message = f"Platform error during {operation}: {reason}"

        super().__init__(message, {"operation": operation, "code": code, **details})
        self.operation = operation
        self.reason = reason
        self.code = code


class TransientPlatformError(PlatformError):
    """Raised for rate limiting and eventual-consistency misses; retried."""


class ActionTimeoutError(TransientPlatformError):
    """Raised when a single platform call exceeds its timeout."""

    def __init__(self, operation: str, timeout_seconds: float, **details):
        super().__init__(operation, f"exceeded {timeout_seconds}s limit", code="Timeout", **details)
        self.timeout_seconds = timeout_seconds


class ApplyError(StackforgeError):
    """Raised when a resource cannot be converged."""

    def __init__(self, address: str, reason: str, **details):
        message = f"Apply failed for {address}: {reason}"

        super().__init__(message, {"address": address, "reason": reason, **details})
        self.address = address
        self.reason = reason


class DriftError(StackforgeError):
    """Raised when observed state diverged from both recorded and desired state."""

    def __init__(self, address: str, attributes: List[str], **details):
        message = (
            f"Drift detected on {address} for {', '.join(attributes)}; "
            "resolve manually or enable overwrite_drift"
        )

        super().__init__(message, {"address": address, "attributes": attributes, **details})
        self.address = address
        self.attributes = attributes


class StateError(StackforgeError):
    """Raised when the persisted state cannot be read or written."""

    def __init__(self, path: str, operation: str, reason: str, **details):
        message = f"State error during {operation} on {path}: {reason}"

        super().__init__(
            message, {"path": path, "operation": operation, "reason": reason, **details}
        )
        self.path = path
        self.operation = operation
        self.reason = reason


# Convenience functions for common error patterns


def raise_configuration_error(field: str, value: Any, expected: str, **details):
    """Raise a configuration error with helpful context."""
    suggestions = {
        "max_parallelism": "Set MAX_PARALLELISM to a small positive integer",
        "action_timeout_seconds": "Set ACTION_TIMEOUT_SECONDS above the slowest API call",
        "retry_max_attempts": "Set RETRY_MAX_ATTEMPTS to at least 1",
        "log_format": "Use LOG_FORMAT=console or LOG_FORMAT=json",
    }

    suggestion = suggestions.get(field.lower())
    if suggestion:
        details["suggestion"] = suggestion

    raise ConfigurationError(field, value, expected, **details)


def raise_apply_error(address: str, reason: str, **details):
    """Raise an apply error with helpful context."""
    lowered = reason.lower()
    if "quota" in lowered or "limit" in lowered:
        details["suggestion"] = "Request a service quota increase"
    elif "ami" in lowered or "image" in lowered:
        details["suggestion"] = "Check ami_id exists in the target region"
    elif "not authorized" in lowered or "accessdenied" in lowered:
        details["suggestion"] = "Check the credentials' IAM permissions"

    raise ApplyError(address, reason, **details)
