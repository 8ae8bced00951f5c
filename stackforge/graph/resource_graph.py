"""
Resource Graph Implementation

This module provides the directed graph of resources, data lookups and
locals. Edges point from producer to consumer: a consumer may only be
applied after all of its producers. Every node carries its declaration index,
which makes all orderings derived from the graph deterministic.
"""

import heapq
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from ..errors import CycleError, DanglingReferenceError
from ..logging import get_logger
from ..types import Address, NodeKind

logger = get_logger(__name__)


@dataclass
class GraphNode:
    """Represents a node in the resource graph."""

    address: Address
    kind: NodeKind
    index: int
    resource_type: Optional[str] = None
    dependencies: Set[Address] = field(default_factory=set)
    dependents: Set[Address] = field(default_factory=set)


@dataclass(frozen=True)
class GraphEdge:
    """Represents a producer -> consumer edge."""

    producer: Address
    consumer: Address
    edge_type: str = "reference"  # "reference" or "depends_on"
    attribute: Optional[str] = None


class ResourceGraph:
    """
    Directed graph of stack nodes.

    Unlike a general DAG library this graph accepts cycles while it is being
    built; ``find_cycles`` reports them all at once so the operator sees every
    member of every cycle in a single error.
    """

    def __init__(self, graph_id: Optional[str] = None):
        self.graph_id = graph_id or str(uuid.uuid4())[:8]
        self.nodes: Dict[Address, GraphNode] = {}
        self.edges: Set[GraphEdge] = set()

        self._topological_order: Optional[List[Address]] = None
        self.created_at = datetime.now(timezone.utc)

    def add_node(
        self, address: Address, kind: NodeKind, resource_type: Optional[str] = None
    ) -> GraphNode:
        """Add a node; the declaration index is the insertion position."""
        if address in self.nodes:
            raise ValueError(f"Node {address} already exists in graph")

        node = GraphNode(
            address=address, kind=kind, index=len(self.nodes), resource_type=resource_type
        )
        self.nodes[address] = node
        self._topological_order = None
        return node

    def add_edge(
        self,
        producer: Address,
        consumer: Address,
        edge_type: str = "reference",
        attribute: Optional[str] = None,
    ) -> GraphEdge:
        """Add a dependency edge; the consumer waits for the producer."""
        if producer not in self.nodes:
            raise DanglingReferenceError(consumer, producer)

        if consumer not in self.nodes:
            raise DanglingReferenceError(producer, consumer)

        edge = GraphEdge(producer, consumer, edge_type, attribute)
        self.edges.add(edge)

        self.nodes[producer].dependents.add(consumer)
        self.nodes[consumer].dependencies.add(producer)
        self._topological_order = None

        logger.debug(
            "Edge added", producer=producer, consumer=consumer, edge_type=edge_type
        )

        return edge

    def find_cycles(self) -> List[List[Address]]:
        """Return every cycle as the member list of a strongly connected component."""
        index_of: Dict[Address, int] = {}
        lowlink: Dict[Address, int] = {}
        on_stack: Set[Address] = set()
        stack: List[Address] = []
        cycles: List[List[Address]] = []
        counter = 0

        for root in self._ordered(self.nodes):
            if root in index_of:
                continue

            # Iterative Tarjan to stay clear of the recursion limit
            work = [(root, iter(self._ordered(self.nodes[root].dependents)))]
            index_of[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)

            while work:
                current, children = work[-1]
                advanced = False
                for child in children:
                    if child not in index_of:
                        index_of[child] = lowlink[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(self._ordered(self.nodes[child].dependents))))
                        advanced = True
                        break
                    if child in on_stack:
                        lowlink[current] = min(lowlink[current], index_of[child])

                if advanced:
                    continue

                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[current])

                if lowlink[current] == index_of[current]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == current:
                            break
                    is_self_loop = current in self.nodes[current].dependents
                    if len(component) > 1 or is_self_loop:
                        cycles.append(self._ordered(component))

        return cycles

    def topological_order(self, subset: Optional[Iterable[Address]] = None) -> List[Address]:
        """
        Kahn's algorithm with the declaration index as tie-breaker.

        Args:
            subset: Restrict the order to these nodes; edges to nodes outside
                the subset are treated as already satisfied.

        Raises:
            CycleError: If the graph (or subset) contains cycles
        """
        if subset is None and self._topological_order is not None:
            return list(self._topological_order)

        members = set(self.nodes) if subset is None else set(subset)
        in_degree = {
            address: len(self.nodes[address].dependencies & members) for address in members
        }

        heap = [(self.nodes[a].index, a) for a, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        result: List[Address] = []

        while heap:
            _, address = heapq.heappop(heap)
            result.append(address)

            for dependent in self.nodes[address].dependents:
                if dependent not in members:
                    continue
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(heap, (self.nodes[dependent].index, dependent))

        if len(result) != len(members):
            cycles = self.find_cycles() or [sorted(members - set(result))]
            raise CycleError(cycles)

        if subset is None:
            self._topological_order = result
        return list(result)

    def parallel_levels(self, subset: Optional[Iterable[Address]] = None) -> List[List[Address]]:
        """Group nodes into levels whose members are mutually independent."""
        order = self.topological_order(subset)
        members = set(order)
        level_of: Dict[Address, int] = {}

        for address in order:
            producers = self.nodes[address].dependencies & members
            level_of[address] = 1 + max((level_of[p] for p in producers), default=-1)

        levels: List[List[Address]] = [[] for _ in range(max(level_of.values(), default=-1) + 1)]
        for address in order:
            levels[level_of[address]].append(address)
        return levels

    def ancestors(self, address: Address) -> Set[Address]:
        """Every node the given node transitively depends on."""
        return self._closure(address, lambda n: n.dependencies)

    def descendants(self, address: Address) -> Set[Address]:
        """Every node that transitively depends on the given node."""
        return self._closure(address, lambda n: n.dependents)

    def _closure(self, address: Address, neighbours) -> Set[Address]:
        seen: Set[Address] = set()
        stack = list(neighbours(self.nodes[address]))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(neighbours(self.nodes[current]))
        return seen

    def _ordered(self, addresses: Iterable[Address]) -> List[Address]:
        return sorted(addresses, key=lambda a: self.nodes[a].index)

    def nodes_of_kind(self, kind: NodeKind) -> List[Address]:
        return [a for a in self._ordered(self.nodes) if self.nodes[a].kind == kind]

    def get_statistics(self) -> Dict[str, Any]:
        """Get statistics about the graph."""
        stats: Dict[str, Any] = {
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "resources": len(self.nodes_of_kind(NodeKind.RESOURCE)),
            "data_lookups": len(self.nodes_of_kind(NodeKind.DATA)),
            "locals": len(self.nodes_of_kind(NodeKind.LOCAL)),
        }

        if self.nodes:
            try:
                levels = self.parallel_levels()
                stats["parallel_levels"] = len(levels)
                stats["max_parallel_nodes"] = max(len(level) for level in levels)
            except CycleError:
                stats["parallel_levels"] = 0
                stats["max_parallel_nodes"] = 0

        return stats

    def to_dict(self) -> Dict[str, Any]:
        """Convert graph to dictionary representation."""
        return {
            "graph_id": self.graph_id,
            "created_at": self.created_at.isoformat(),
            "nodes": {
                address: {
                    "kind": node.kind.name,
                    "index": node.index,
                    "resource_type": node.resource_type,
                    "dependencies": self._ordered(node.dependencies),
                }
                for address, node in self.nodes.items()
            },
            "edges": sorted(
                (
                    {
                        "producer": e.producer,
                        "consumer": e.consumer,
                        "edge_type": e.edge_type,
                        "attribute": e.attribute,
                    }
                    for e in self.edges
                ),
                key=lambda e: (e["consumer"], e["producer"], e["edge_type"]),
            ),
            "statistics": self.get_statistics(),
        }

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, address: Address) -> bool:
        return address in self.nodes

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self.nodes.values())
