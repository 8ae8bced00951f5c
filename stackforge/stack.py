"""
Stack Declarations

A ``Stack`` collects the variables, data lookups, locals, resources and
outputs that describe one deployment, in declaration order. Declaration order
is the tie-breaker for every ordering decision the engine makes, so two
stacks declared the same way always converge in the same order.
"""

from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .errors import ConfigurationError
from .expressions import Ref, Var
from .types import REQUIRED, DataLookup, Lifecycle, Local, NodeKind, Output, Resource, Variable


class Handle:
    """Reference builder returned when a node is declared."""

    def __init__(self, address: str):
        self.address = address

    def ref(self, attribute: Optional[str] = None) -> Ref:
        return Ref(self.address, attribute)

    def __getitem__(self, attribute: str) -> Ref:
        return self.ref(attribute)

    @property
    def id(self) -> Ref:
        return self.ref("id")

    @property
    def arn(self) -> Ref:
        return self.ref("arn")

    def __repr__(self) -> str:
        return f"Handle({self.address})"


Dependency = Union[str, Handle]


def _addresses(depends_on: Iterable[Dependency]) -> Tuple[str, ...]:
    return tuple(d.address if isinstance(d, Handle) else d for d in depends_on)


class Stack:
    """An ordered set of declarations."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description

        self.variables: Dict[str, Variable] = {}
        self.lookups: Dict[str, DataLookup] = {}
        self.locals: Dict[str, Local] = {}
        self.resources: Dict[str, Resource] = {}
        self.outputs: Dict[str, Output] = {}

        # Graph node addresses in declaration order
        self._order: List[str] = []

    def _register(self, address: str):
        if address in self._order:
            raise ConfigurationError(address, "duplicate declaration", "unique address")
        self._order.append(address)

    def variable(
        self,
        name: str,
        type: type = str,
        default: Any = REQUIRED,
        sensitive: bool = False,
        description: str = "",
    ) -> Var:
        if name in self.variables:
            raise ConfigurationError(f"var.{name}", "duplicate declaration", "unique name")
        self.variables[name] = Variable(
            name=name, type=type, default=default, sensitive=sensitive, description=description
        )
        return Var(name)

    def data(
        self,
        kind: str,
        name: str,
        filters: Optional[Dict[str, Any]] = None,
        depends_on: Iterable[Dependency] = (),
    ) -> Handle:
        lookup = DataLookup(
            kind=kind, name=name, filters=dict(filters or {}), depends_on=_addresses(depends_on)
        )
        self._register(lookup.address)
        self.lookups[lookup.address] = lookup
        return Handle(lookup.address)

    def local(self, name: str, value: Any) -> Ref:
        local = Local(name=name, value=value)
        self._register(local.address)
        self.locals[local.address] = local
        return Ref(local.address)

    def resource(
        self,
        type: str,
        name: str,
        attributes: Optional[Dict[str, Any]] = None,
        depends_on: Iterable[Dependency] = (),
        lifecycle: Optional[Lifecycle] = None,
        sensitive: Iterable[str] = (),
        description: str = "",
    ) -> Handle:
        resource = Resource(
            type=type,
            name=name,
            attributes=dict(attributes or {}),
            depends_on=_addresses(depends_on),
            lifecycle=lifecycle or Lifecycle(),
            sensitive=frozenset(sensitive),
            description=description,
        )
        self._register(resource.address)
        self.resources[resource.address] = resource
        return Handle(resource.address)

    def output(self, name: str, value: Any, description: str = "", sensitive: bool = False):
        if name in self.outputs:
            raise ConfigurationError(f"output.{name}", "duplicate declaration", "unique name")
        self.outputs[name] = Output(
            name=name, value=value, description=description, sensitive=sensitive
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def declaration_order(self) -> List[str]:
        return list(self._order)

    def kind_of(self, address: str) -> Optional[NodeKind]:
        if address in self.resources:
            return NodeKind.RESOURCE
        if address in self.lookups:
            return NodeKind.DATA
        if address in self.locals:
            return NodeKind.LOCAL
        return None

    def declaration(self, address: str) -> Union[Resource, DataLookup, Local]:
        for table in (self.resources, self.lookups, self.locals):
            if address in table:
                return table[address]
        raise KeyError(address)

    def __contains__(self, address: str) -> bool:
        return address in self.resources or address in self.lookups or address in self.locals

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __repr__(self) -> str:
        return (
            f"Stack({self.name}, resources={len(self.resources)}, "
            f"lookups={len(self.lookups)}, outputs={len(self.outputs)})"
        )
