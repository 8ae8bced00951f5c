"""
Dependency Resolver

Derives resource-level orderings from a built graph. Data lookups and locals
are not applied, so dependencies that pass through them are collapsed onto
the resources on either side.
"""

from typing import Dict, Iterable, List, Optional, Set

from ..errors import ConfigurationError
from ..types import NodeKind
from .builder import BuiltGraph


class DependencyResolver:
    """Ordering and reachability queries over the resources of a built graph."""

    def __init__(self, built: BuiltGraph):
        self.built = built
        self.graph = built.graph
        self._dependencies: Dict[str, Set[str]] = {}
        self._dependents: Dict[str, Set[str]] = {}

        for address in self.graph.nodes_of_kind(NodeKind.RESOURCE):
            self._dependencies[address] = self._collapse(address, upstream=True)
            self._dependents[address] = self._collapse(address, upstream=False)

    def _collapse(self, address: str, upstream: bool) -> Set[str]:
        """Nearest resources reachable through non-resource nodes."""
        found: Set[str] = set()
        node = self.graph.nodes[address]
        pending = list(node.dependencies if upstream else node.dependents)
        seen: Set[str] = set()

        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            neighbour = self.graph.nodes[current]
            if neighbour.kind == NodeKind.RESOURCE:
                found.add(current)
            else:
                pending.extend(neighbour.dependencies if upstream else neighbour.dependents)

        return found

    def _ordered(self, addresses: Iterable[str]) -> List[str]:
        return sorted(addresses, key=lambda a: self.graph.nodes[a].index)

    def resource_dependencies(self, address: str) -> List[str]:
        """Resources *address* must wait for."""
        return self._ordered(self._dependencies[address])

    def resource_dependents(self, address: str) -> List[str]:
        """Resources that wait for *address*."""
        return self._ordered(self._dependents[address])

    def _check_targets(self, targets: Iterable[str]) -> List[str]:
        targets = list(targets)
        unknown = [t for t in targets if t not in self._dependencies]
        if unknown:
            raise ConfigurationError("targets", ", ".join(unknown), "declared resource addresses")
        return targets

    def apply_order(self, targets: Optional[Iterable[str]] = None) -> List[str]:
        """
        Deterministic resource apply order.

        With *targets*, only the named resources are returned; everything
        they depend on is expected to come from last-known state.
        """
        order = self.graph.topological_order()
        if targets is None:
            return [a for a in order if self.graph.nodes[a].kind == NodeKind.RESOURCE]

        selected = set(self._check_targets(targets))
        return [a for a in order if a in selected]

    def destroy_order(self, targets: Optional[Iterable[str]] = None) -> List[str]:
        """Reverse apply order; dependents are destroyed before their producers."""
        if targets is None:
            return list(reversed(self.apply_order()))

        selected: Set[str] = set(self._check_targets(targets))
        for target in list(selected):
            selected |= self.dependents_closure(target)
        return list(reversed(self.apply_order(selected)))

    def levels(self, targets: Optional[Iterable[str]] = None) -> List[List[str]]:
        """Groups of resources that can be applied concurrently."""
        order = self.apply_order(targets)
        members = set(order)
        level_of: Dict[str, int] = {}

        for address in order:
            producers = self._dependencies[address] & members
            level_of[address] = 1 + max((level_of[p] for p in producers), default=-1)

        levels: List[List[str]] = [[] for _ in range(max(level_of.values(), default=-1) + 1)]
        for address in order:
            levels[level_of[address]].append(address)
        return levels

    def dependents_closure(self, address: str) -> Set[str]:
        """Every resource that transitively waits for *address*."""
        closure: Set[str] = set()
        pending = list(self._dependents[address])
        while pending:
            current = pending.pop()
            if current in closure:
                continue
            closure.add(current)
            pending.extend(self._dependents[current])
        return closure

    def external_dependencies(self, targets: Iterable[str]) -> List[str]:
        """Resources the targets depend on that are not themselves targeted."""
        selected = set(self._check_targets(targets))
        external: Set[str] = set()
        for target in selected:
            external |= self._dependencies[target] - selected
        return self._ordered(external)

    def cycles(self) -> List[List[str]]:
        return self.graph.find_cycles()
