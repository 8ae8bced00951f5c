"""
Resource graph construction and ordering.
"""

from .builder import BuiltGraph, GraphBuilder, StackScope
from .resolver import DependencyResolver
from .resource_graph import GraphEdge, GraphNode, ResourceGraph

__all__ = [
    "BuiltGraph",
    "DependencyResolver",
    "GraphBuilder",
    "GraphEdge",
    "GraphNode",
    "ResourceGraph",
    "StackScope",
]
