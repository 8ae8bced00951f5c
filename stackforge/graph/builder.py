"""
Graph Builder

Turns a ``Stack`` plus variable bindings into a validated ``BuiltGraph``:
variables are bound and type-checked, every reference becomes an explicit
edge, sensitive values are checked against the attributes that declare them,
cycles are rejected, and data lookups and locals are resolved against the
platform in dependency order. Nothing here writes to the platform.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set

from ..errors import (
    ConfigurationError,
    CycleError,
    DanglingReferenceError,
    MissingVariableError,
    SensitiveValueError,
)
from ..expressions import (
    SENSITIVE_PLACEHOLDER,
    UNKNOWN,
    Scope,
    collect_references,
    collect_variables,
    evaluate,
    is_known,
    reveal,
)
from ..logging import get_logger, register_sensitive, trace_operation
from ..platform.base import Platform
from ..platform.schema import get_schema
from ..stack import Stack
from ..types import NodeKind
from .resource_graph import ResourceGraph

logger = get_logger(__name__)


class StackScope(Scope):
    """Scope that evaluates locals on demand.

    Locals that could be resolved at build time are served from ``values``;
    locals that depend on resources are evaluated against whatever resource
    values the caller supplies.
    """

    def __init__(
        self,
        built: "BuiltGraph",
        resources: Optional[Mapping[str, Any]] = None,
        unknown: Optional[Set[str]] = None,
    ):
        super().__init__(built.variables, {**built.values, **(resources or {})}, unknown)
        self._locals = built.stack.locals

    def resolve(self, address: str, attribute: Optional[str]) -> Any:
        if address in self._locals and address not in self.values:
            value = evaluate(self._locals[address].value, self)
            if attribute is None:
                return value
            return value.get(attribute, UNKNOWN) if isinstance(value, Mapping) else UNKNOWN
        return super().resolve(address, attribute)


@dataclass
class BuiltGraph:
    """A validated stack ready for planning."""

    stack: Stack
    graph: ResourceGraph
    variables: Dict[str, Any]
    values: Dict[str, Any] = field(default_factory=dict)
    # Sensitive variable name -> "address.attribute" locations it reaches
    sensitive_consumers: Dict[str, List[str]] = field(default_factory=dict)
    lookups_resolved: bool = False

    def scope(
        self, resources: Optional[Mapping[str, Any]] = None, unknown: Optional[Set[str]] = None
    ) -> StackScope:
        return StackScope(self, resources, unknown)


class GraphBuilder:
    """Builds and validates resource graphs."""

    def __init__(self, platform: Optional[Platform] = None):
        self.platform = platform

    @trace_operation("build_graph")
    def build(
        self,
        stack: Stack,
        variables: Optional[Mapping[str, Any]] = None,
        resolve_lookups: bool = True,
    ) -> BuiltGraph:
        """
        Build the graph for *stack*.

        Args:
            stack: Declarations to build from
            variables: Raw variable bindings (strings from the CLI are coerced)
            resolve_lookups: Query the platform for data lookups and locals

        Raises:
            MissingVariableError: A required variable has no binding
            DanglingReferenceError: A reference names something undeclared
            SensitiveValueError: A secret reaches an undeclared attribute or output
            CycleError: The dependencies contain cycles
            DataLookupError: A lookup matched nothing or was ambiguous
        """
        bound = self.bind_variables(stack, variables or {})

        graph = ResourceGraph()
        for address in stack.declaration_order:
            kind = stack.kind_of(address)
            resource_type = stack.resources[address].type if kind == NodeKind.RESOURCE else None
            graph.add_node(address, kind, resource_type)

        self._add_edges(stack, graph)
        self._check_attributes(stack)

        cycles = graph.find_cycles()
        if cycles:
            raise CycleError(cycles)

        self._check_lookup_dependencies(stack, graph)
        consumers = self._check_sensitive(stack, graph)

        for value in bound.values():
            if hasattr(value, "get_secret_value"):
                secret = value.get_secret_value()
                register_sensitive(secret)
                # The JSON-escaped form appears inside encoded documents
                register_sensitive(json.dumps(secret)[1:-1])

        built = BuiltGraph(
            stack=stack, graph=graph, variables=bound, sensitive_consumers=consumers
        )

        if resolve_lookups:
            self._resolve(built)
            built.lookups_resolved = True

        logger.info("Graph built", stack_name=stack.name, **graph.get_statistics())
        return built

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    @staticmethod
    def bind_variables(stack: Stack, bindings: Mapping[str, Any]) -> Dict[str, Any]:
        undeclared = sorted(set(bindings) - set(stack.variables))
        if undeclared:
            raise ConfigurationError(
                "variables", ", ".join(undeclared), "names declared by the stack"
            )

        bound: Dict[str, Any] = {}
        for name, variable in stack.variables.items():
            raw = bindings.get(name)
            if raw is None:
                if variable.required:
                    raise MissingVariableError(name)
                raw = variable.default

            try:
                bound[name] = variable.coerce(raw)
            except (TypeError, ValueError):
                shown = SENSITIVE_PLACEHOLDER if variable.sensitive else raw
                raise ConfigurationError(f"var.{name}", shown, variable.type.__name__)

        return bound

    # ------------------------------------------------------------------
    # Edges and validation
    # ------------------------------------------------------------------

    @staticmethod
    def _check_variables(stack: Stack, consumer: str, value: Any):
        for name in collect_variables(value):
            if name not in stack.variables:
                raise DanglingReferenceError(consumer, f"var.{name}")

    def _add_edges(self, stack: Stack, graph: ResourceGraph):
        for address in stack.declaration_order:
            declaration = stack.declaration(address)
            kind = stack.kind_of(address)

            if kind == NodeKind.RESOURCE:
                value: Any = declaration.attributes
            elif kind == NodeKind.DATA:
                value = declaration.filters
            else:
                value = declaration.value

            self._check_variables(stack, address, value)
            for ref in collect_references(value):
                graph.add_edge(ref.address, address, "reference", ref.attribute)

            for dependency in getattr(declaration, "depends_on", ()):
                graph.add_edge(dependency, address, "depends_on")

        for name, output in stack.outputs.items():
            consumer = f"output.{name}"
            self._check_variables(stack, consumer, output.value)
            for ref in collect_references(output.value):
                if ref.address not in stack:
                    raise DanglingReferenceError(consumer, ref.address)

    @staticmethod
    def _check_attributes(stack: Stack):
        """References to resources must name a declared or computed attribute."""
        consumers: Dict[str, Any] = {a: stack.declaration(a) for a in stack.declaration_order}
        values = {}
        for address, declaration in consumers.items():
            if address in stack.resources:
                values[address] = declaration.attributes
            elif address in stack.lookups:
                values[address] = declaration.filters
            else:
                values[address] = declaration.value
        for name, output in stack.outputs.items():
            values[f"output.{name}"] = output.value

        for consumer, value in values.items():
            for ref in collect_references(value):
                resource = stack.resources.get(ref.address)
                if resource is None or ref.attribute is None:
                    continue
                schema = get_schema(resource.type)
                if ref.attribute not in resource.attributes and not schema.is_computed(ref.attribute):
                    raise DanglingReferenceError(consumer, str(ref))

    @staticmethod
    def _check_lookup_dependencies(stack: Stack, graph: ResourceGraph):
        """Lookups run before any resource is applied, so they cannot depend on one."""
        for address in stack.lookups:
            producers = [
                a for a in graph.ancestors(address) if graph.nodes[a].kind == NodeKind.RESOURCE
            ]
            if producers:
                raise ConfigurationError(
                    address,
                    ", ".join(sorted(producers)),
                    "lookups that depend only on variables, lookups and locals",
                )

    def _check_sensitive(self, stack: Stack, graph: ResourceGraph) -> Dict[str, List[str]]:
        """Follow sensitive variables through locals and resource attributes."""
        sensitive = {n for n, v in stack.variables.items() if v.sensitive}
        consumers: Dict[str, Set[str]] = {n: set() for n in sensitive}
        tainted: Dict[str, Set[str]] = {}

        def taint_of(value: Any) -> Set[str]:
            found = {n for n in collect_variables(value) if n in sensitive}
            for ref in collect_references(value):
                if ref.address in stack.locals:
                    found |= tainted.get(ref.address, set())
                elif ref.address in stack.resources:
                    resource = stack.resources[ref.address]
                    attributes = [ref.attribute] if ref.attribute else list(resource.sensitive)
                    for attribute in attributes:
                        if attribute in resource.sensitive:
                            found |= tainted.get(f"{ref.address}.{attribute}", set())
            return found

        for address in graph.topological_order():
            if address in stack.lookups:
                names = taint_of(stack.lookups[address].filters)
                if names:
                    raise SensitiveValueError(sorted(names)[0], address)
            elif address in stack.locals:
                tainted[address] = taint_of(stack.locals[address].value)
            else:
                resource = stack.resources[address]
                for attribute, value in resource.attributes.items():
                    names = taint_of(value)
                    if not names:
                        continue
                    location = f"{address}.{attribute}"
                    if attribute not in resource.sensitive:
                        raise SensitiveValueError(sorted(names)[0], location)
                    tainted[location] = names
                    for name in names:
                        consumers[name].add(location)

        for name, output in stack.outputs.items():
            names = taint_of(output.value)
            if names and not output.sensitive:
                raise SensitiveValueError(sorted(names)[0], f"output.{name}")

        return {name: sorted(locations) for name, locations in consumers.items()}

    # ------------------------------------------------------------------
    # Lookups and locals
    # ------------------------------------------------------------------

    def _resolve(self, built: BuiltGraph):
        stack = built.stack
        for address in built.graph.topological_order():
            if address in stack.lookups:
                lookup = stack.lookups[address]
                filters = evaluate(lookup.filters, built.scope())
                if not is_known(filters):
                    raise ConfigurationError(address, filters, "filters known before apply")
                if self.platform is None:
                    raise ConfigurationError("platform", None, "a platform to resolve lookups")
                logger.debug("Resolving lookup", address=address, kind=lookup.kind)
                built.values[address] = self.platform.lookup(lookup.kind, reveal(filters))

            elif address in stack.locals:
                value = evaluate(stack.locals[address].value, built.scope())
                if is_known(value):
                    built.values[address] = value
