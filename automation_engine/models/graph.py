"""Runtime graph representation: an arena of nodes indexed by id."""

from typing import Dict, List, Optional

from .core import (
    DEFAULT_HANDLE,
    EdgeDefinition,
    NodeDefinition,
    NodeType,
    WorkflowDefinition,
)

# Node types whose self-loops are implicit "wait" edges rather than real cycles.
SUSPENDING_TYPES = (NodeType.DELAY, NodeType.WAIT_UNTIL)


class WorkflowGraph:
    """Indexed view over a workflow definition.

    Nodes are looked up by id and edges are kept in per-node adjacency lists,
    so traversal never follows object references between nodes.
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self._nodes: Dict[str, NodeDefinition] = {}
        self._order: List[str] = []
        self._outgoing: Dict[str, List[EdgeDefinition]] = {}
        self._incoming: Dict[str, List[EdgeDefinition]] = {}

        for node in definition.nodes:
            self._nodes[node.id] = node
            self._order.append(node.id)
            self._outgoing[node.id] = []
            self._incoming[node.id] = []

        self.dangling_edges: List[EdgeDefinition] = []
        for edge in definition.edges:
            if edge.source not in self._nodes or edge.target not in self._nodes:
                self.dangling_edges.append(edge)
                continue
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def node_ids(self) -> List[str]:
        return list(self._order)

    def nodes(self) -> List[NodeDefinition]:
        return [self._nodes[node_id] for node_id in self._order]

    def node(self, node_id: str) -> Optional[NodeDefinition]:
        return self._nodes.get(node_id)

    def outgoing(self, node_id: str) -> List[EdgeDefinition]:
        return list(self._outgoing.get(node_id, []))

    def incoming(self, node_id: str) -> List[EdgeDefinition]:
        return list(self._incoming.get(node_id, []))

    def handles(self, node_id: str) -> List[str]:
        return [edge.source_handle for edge in self._outgoing.get(node_id, [])]

    def nodes_of_type(self, node_type: NodeType) -> List[NodeDefinition]:
        return [node for node in self.nodes() if node.type == node_type]

    def trigger(self) -> Optional[NodeDefinition]:
        triggers = self.nodes_of_type(NodeType.TRIGGER)
        return triggers[0] if len(triggers) == 1 else None

    def is_wait_self_loop(self, edge: EdgeDefinition) -> bool:
        """Whether an edge is the implicit re-check loop of a suspending node."""
        if edge.source != edge.target:
            return False
        node = self._nodes.get(edge.source)
        return node is not None and node.type in SUSPENDING_TYPES

    def next_node_id(self, node_id: str, handle: str = DEFAULT_HANDLE) -> Optional[str]:
        """Target of the first edge leaving ``node_id`` through ``handle``."""
        for edge in self._outgoing.get(node_id, []):
            if edge.source_handle == handle and not self.is_wait_self_loop(edge):
                return edge.target
        return None

    def successors(self, node_id: str) -> List[str]:
        """Targets reachable in one step, skipping implicit wait loops."""
        return [
            edge.target for edge in self._outgoing.get(node_id, [])
            if not self.is_wait_self_loop(edge)
        ]
