"""Read-only graph view over a process definition."""

from __future__ import annotations

from typing import Dict, Iterator, List, NamedTuple

from ..errors import AmbiguousStartNode, NodeNotFound, NoStartNode
from .models import Node, NodeType, ProcessDefinition


class Edge(NamedTuple):
    source: str
    target: str


class ProcessGraph:
    """Lookup operations over the nodes and edges of a definition.

    The graph never mutates the definition. When node ids collide the first
    node wins; duplicate ids are reported by the validator, not here.
    """

    def __init__(self, definition: ProcessDefinition) -> None:
        self.definition = definition
        self._nodes: Dict[str, Node] = {}
        for node in definition.nodes:
            self._nodes.setdefault(node.id, node)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self.definition.nodes)

    def __len__(self) -> int:
        return len(self.definition.nodes)

    def find_node(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFound(node_id, self.definition.id) from None

    def find_start_node(self) -> Node:
        starts = [node for node in self.definition.nodes if node.type is NodeType.START]
        if not starts:
            raise NoStartNode(self.definition.id)
        if len(starts) > 1:
            raise AmbiguousStartNode([n.id for n in starts], self.definition.id)
        return starts[0]

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """Edges leaving ``node_id`` in declaration order."""
        node = self.find_node(node_id)
        return [Edge(node.id, target) for target in node.connections]

    def edges(self) -> List[Edge]:
        return [
            Edge(node.id, target)
            for node in self.definition.nodes
            for target in node.connections
        ]
