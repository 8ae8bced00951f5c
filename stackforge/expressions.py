"""
Attribute Expressions

Resource attributes are plain Python values (str, int, list, dict, ...) that may
contain expression objects: references to other nodes (``Ref``), variables
(``Var``) and small computations (``Format``, ``Join``, ``JsonEncode``, ``Call``).
Because references are typed objects the dependency edges of a stack can be
collected by walking attribute values, without any string parsing.

Values that only exist after a resource has been applied evaluate to
``UNKNOWN``. Sensitive values travel as ``pydantic.SecretStr`` and any
computation that touches one yields a ``SecretStr`` as well.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Mapping, Optional, Set, Tuple

from pydantic import SecretStr

SENSITIVE_PLACEHOLDER = "(sensitive value)"
UNKNOWN_PLACEHOLDER = "(known after apply)"


class _Unknown:
    """Marker for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


class Expr:
    """Base class for attribute expressions."""

    def children(self) -> Tuple[Any, ...]:
        return ()

    def evaluate(self, scope: "Scope") -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class Ref(Expr):
    """Reference to a resource, data lookup or local.

    ``address`` is ``type.name`` for resources, ``data.kind.name`` for
    lookups and ``local.name`` for locals. ``attribute`` selects one
    attribute; ``None`` yields the whole value.
    """

    address: str
    attribute: Optional[str] = None

    def evaluate(self, scope: "Scope") -> Any:
        return scope.resolve(self.address, self.attribute)

    def __str__(self) -> str:
        if self.attribute:
            return f"{self.address}.{self.attribute}"
        return self.address


@dataclass(frozen=True)
class Var(Expr):
    """Reference to an input variable."""

    name: str

    def evaluate(self, scope: "Scope") -> Any:
        return scope.variable(self.name)

    def __str__(self) -> str:
        return f"var.{self.name}"


class Format(Expr):
    """``str.format`` over evaluated arguments."""

    def __init__(self, template: str, *args: Any, **kwargs: Any):
        self.template = template
        self.args = args
        self.kwargs = kwargs

    def children(self) -> Tuple[Any, ...]:
        return tuple(self.args) + tuple(self.kwargs.values())

    def evaluate(self, scope: "Scope") -> Any:
        args = [evaluate(a, scope) for a in self.args]
        kwargs = {k: evaluate(v, scope) for k, v in self.kwargs.items()}
        if not is_known(args) or not is_known(kwargs):
            return UNKNOWN
        result = self.template.format(*reveal(args), **reveal(kwargs))
        if is_sensitive(args) or is_sensitive(kwargs):
            return SecretStr(result)
        return result

    def __repr__(self) -> str:
        return f"Format({self.template!r})"


class Join(Expr):
    """Join a list of strings with a separator."""

    def __init__(self, separator: str, items: Any):
        self.separator = separator
        self.items = items

    def children(self) -> Tuple[Any, ...]:
        return (self.items,)

    def evaluate(self, scope: "Scope") -> Any:
        items = evaluate(self.items, scope)
        if not is_known(items):
            return UNKNOWN
        result = self.separator.join(str(i) for i in reveal(items))
        return SecretStr(result) if is_sensitive(items) else result


class JsonEncode(Expr):
    """Serialize an evaluated value to a JSON string."""

    def __init__(self, value: Any):
        self.value = value

    def children(self) -> Tuple[Any, ...]:
        return (self.value,)

    def evaluate(self, scope: "Scope") -> Any:
        value = evaluate(self.value, scope)
        if not is_known(value):
            return UNKNOWN
        result = json.dumps(reveal(value), sort_keys=True)
        return SecretStr(result) if is_sensitive(value) else result


class Call(Expr):
    """Apply a pure function to evaluated arguments."""

    def __init__(self, func: Callable[..., Any], *args: Any, name: Optional[str] = None):
        self.func = func
        self.args = args
        self.name = name or getattr(func, "__name__", "call")

    def children(self) -> Tuple[Any, ...]:
        return tuple(self.args)

    def evaluate(self, scope: "Scope") -> Any:
        args = [evaluate(a, scope) for a in self.args]
        if not is_known(args):
            return UNKNOWN
        result = self.func(*reveal(args))
        return SecretStr(result) if is_sensitive(args) and isinstance(result, str) else result

    def __repr__(self) -> str:
        return f"Call({self.name})"


class Scope:
    """Values visible to expressions during evaluation.

    ``values`` maps node addresses to their current value: an attribute dict
    for resources and lookups, any value for locals. Addresses in ``unknown``
    (and addresses with no value yet) evaluate to ``UNKNOWN``.
    """

    def __init__(
        self,
        variables: Mapping[str, Any],
        values: Mapping[str, Any],
        unknown: Optional[Set[str]] = None,
    ):
        self.variables = variables
        self.values = values
        self.unknown = unknown or set()

    def variable(self, name: str) -> Any:
        return self.variables[name]

    def resolve(self, address: str, attribute: Optional[str]) -> Any:
        if address in self.unknown or address not in self.values:
            return UNKNOWN
        value = self.values[address]
        if attribute is None:
            return value
        if isinstance(value, Mapping):
            return value.get(attribute, UNKNOWN)
        return UNKNOWN


def _walk(value: Any) -> Iterator[Any]:
    yield value
    if isinstance(value, Expr):
        for child in value.children():
            yield from _walk(child)
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _walk(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _walk(v)


def collect_references(value: Any) -> List[Ref]:
    """Return every ``Ref`` inside *value*, in encounter order."""
    return [v for v in _walk(value) if isinstance(v, Ref)]


def collect_variables(value: Any) -> List[str]:
    """Return the names of every ``Var`` inside *value*."""
    return [v.name for v in _walk(value) if isinstance(v, Var)]


def evaluate(value: Any, scope: Scope) -> Any:
    """Evaluate every expression inside *value*."""
    if isinstance(value, Expr):
        return value.evaluate(scope)
    if isinstance(value, Mapping):
        return {k: evaluate(v, scope) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [evaluate(v, scope) for v in value]
    return value


def is_known(value: Any) -> bool:
    """True when *value* contains no ``UNKNOWN``."""
    if value is UNKNOWN:
        return False
    if isinstance(value, Mapping):
        return all(is_known(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return all(is_known(v) for v in value)
    return True


def is_sensitive(value: Any) -> bool:
    """True when *value* contains a ``SecretStr``."""
    if isinstance(value, SecretStr):
        return True
    if isinstance(value, Mapping):
        return any(is_sensitive(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(is_sensitive(v) for v in value)
    return False


def reveal(value: Any) -> Any:
    """Unwrap secrets; only for values handed to the platform."""
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    if isinstance(value, Mapping):
        return {k: reveal(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [reveal(v) for v in value]
    return value


def redact(value: Any) -> Any:
    """Display-safe copy of *value*."""
    if isinstance(value, SecretStr):
        return SENSITIVE_PLACEHOLDER
    if value is UNKNOWN:
        return UNKNOWN_PLACEHOLDER
    if isinstance(value, Mapping):
        return {k: redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


def _secret_digest(secret: SecretStr) -> str:
    return "sha256:" + hashlib.sha256(secret.get_secret_value().encode("utf-8")).hexdigest()


def normalize(value: Any) -> Any:
    """JSON-compatible, comparable form of a known value.

    Secrets are replaced by their SHA-256 digest so state can be compared
    across runs without ever storing the plaintext.
    """
    if value is UNKNOWN:
        raise ValueError("cannot normalize an unknown value")
    if isinstance(value, SecretStr):
        return _secret_digest(value)
    if isinstance(value, Mapping):
        return {str(k): normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    return value


def digest(value: Any) -> str:
    """Stable hash of a known value, used for idempotency tokens."""
    encoded = json.dumps(normalize(value), sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def sensitive_paths(value: Any, prefix: str = "") -> List[str]:
    """Dotted paths of every secret inside *value*."""
    paths: List[str] = []
    if isinstance(value, SecretStr):
        paths.append(prefix)
    elif isinstance(value, Mapping):
        for k, v in value.items():
            paths.extend(sensitive_paths(v, f"{prefix}.{k}" if prefix else str(k)))
    elif isinstance(value, (list, tuple)):
        for i, v in enumerate(value):
            paths.extend(sensitive_paths(v, f"{prefix}[{i}]"))
    return paths
