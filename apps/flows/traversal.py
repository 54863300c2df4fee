"""Start-to-end connectivity analysis.

Two breadth-first walks over adjacency lists built once per call: forward from the start
node and backward (against edge direction) from the end node. Edges that reference
unknown nodes are ignored.
"""

import hashlib
import logging
from collections import Counter, OrderedDict, defaultdict, deque
from dataclasses import dataclass, field

from apps.flows.const import PROCESS_NODE_TYPES, BranchHandle, NodeType
from apps.flows.flow import Flow

logger = logging.getLogger("flows.traversal")


@dataclass(frozen=True)
class NodePosition:
    isConnectedToStart: bool
    isConnectedToEnd: bool
    # BFS distance from the start node; None when not reachable
    depth: int | None = None
    # index in the connected sequence; None for disconnected nodes
    position: int | None = None

    @property
    def is_connected(self) -> bool:
        return self.isConnectedToStart and self.isConnectedToEnd


@dataclass(frozen=True)
class TraversalResult:
    positions: dict[str, NodePosition]
    node_types: dict[str, NodeType]
    connected_sequence: tuple[str, ...] = ()
    disconnected_nodes: tuple[str, ...] = ()
    # edges whose source or target is not a node of the flow
    dangling_edges: tuple[str, ...] = ()
    duplicate_node_ids: tuple[str, ...] = ()
    has_valid_flow: bool = False
    fingerprint: str = ""

    @property
    def agent_positions(self) -> dict[str, NodePosition]:
        return {
            node_id: position
            for node_id, position in self.positions.items()
            if self.node_types[node_id] == NodeType.AGENT
        }

    def is_connected(self, node_id: str) -> bool:
        position = self.positions.get(node_id)
        return bool(position and position.is_connected)


@dataclass
class Adjacency:
    forward: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))
    backward: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))
    dangling: list[str] = field(default_factory=list)


def build_adjacency(flow: Flow) -> Adjacency:
    node_ids = {node.id for node in flow.nodes}
    adjacency = Adjacency()
    for edge in flow.edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            logger.debug("Ignoring dangling edge %s (%s -> %s)", edge.id, edge.source, edge.target)
            adjacency.dangling.append(edge.id)
            continue
        adjacency.forward[edge.source].append(edge.target)
        adjacency.backward[edge.target].append(edge.source)
    return adjacency


def breadth_first(origin: str | None, adjacency: dict[str, list[str]]) -> dict[str, int]:
    """Return ``{node_id: depth}`` for every node reachable from ``origin``."""
    if origin is None:
        return {}
    depths = {origin: 0}
    queue = deque([origin])
    while queue:
        node_id = queue.popleft()
        for neighbour in adjacency.get(node_id, []):
            if neighbour not in depths:
                depths[neighbour] = depths[node_id] + 1
                queue.append(neighbour)
    return depths


def structural_fingerprint(flow: Flow) -> str:
    """Hash of node ids/types and edge endpoints. Node payloads and positions are not included."""
    digest = hashlib.sha256()
    for node in sorted(flow.nodes, key=lambda n: n.id):
        digest.update(f"n:{node.id}:{node.type}\n".encode())
    for edge in sorted(flow.edges, key=lambda e: (e.source, e.target, e.sourceHandle or "", e.id)):
        digest.update(f"e:{edge.source}>{edge.target}:{edge.sourceHandle or ''}\n".encode())
    return digest.hexdigest()


def traverse_flow(flow: Flow) -> TraversalResult:
    adjacency = build_adjacency(flow)
    start, end = flow.start_node, flow.end_node
    from_start = breadth_first(start.id if start else None, adjacency.forward)
    to_end = breadth_first(end.id if end else None, adjacency.backward)

    node_types = {node.id: node.type for node in flow.nodes}
    process_nodes = [node for node in flow.nodes if node.type in PROCESS_NODE_TYPES]
    connected = sorted(
        (node.id for node in process_nodes if node.id in from_start and node.id in to_end),
        key=lambda node_id: (from_start[node_id], node_id),
    )
    sequence_index = {node_id: index for index, node_id in enumerate(connected)}

    positions = {
        node.id: NodePosition(
            isConnectedToStart=node.id in from_start,
            isConnectedToEnd=node.id in to_end,
            depth=from_start.get(node.id),
            position=sequence_index.get(node.id),
        )
        for node in flow.nodes
    }
    disconnected = tuple(node.id for node in process_nodes if node.id not in sequence_index)
    duplicates = tuple(node_id for node_id, count in Counter(node.id for node in flow.nodes).items() if count > 1)

    return TraversalResult(
        positions=positions,
        node_types=node_types,
        connected_sequence=tuple(connected),
        disconnected_nodes=disconnected,
        dangling_edges=tuple(adjacency.dangling),
        duplicate_node_ids=duplicates,
        has_valid_flow=not duplicates and _has_valid_flow(flow, from_start, to_end, bool(connected)),
        fingerprint=structural_fingerprint(flow),
    )


def _has_valid_flow(flow: Flow, from_start: dict, to_end: dict, has_connected_process: bool) -> bool:
    start, end = flow.start_node, flow.end_node
    if start is None or end is None or end.id not in from_start:
        return False
    if len(flow.nodes_of_type(NodeType.START)) > 1 or len(flow.nodes_of_type(NodeType.END)) > 1:
        return False
    if flow.nodes_of_type(NodeType.AGENT) or flow.nodes_of_type(NodeType.DATA_STORE):
        if not has_connected_process:
            return False

    node_ids = {node.id for node in flow.nodes}
    for if_node in flow.nodes_of_type(NodeType.IF):
        if if_node.id not in from_start:
            continue
        for handle in BranchHandle:
            edges = [edge for edge in flow.outgoing_edges(if_node.id) if edge.sourceHandle == handle]
            if len(edges) != 1 or edges[0].target not in node_ids:
                return False
            if edges[0].target not in to_end:
                return False
    return True


class TraversalCache:
    """Bounded cache of traversal results keyed by structural fingerprint.

    Owned by a service instance. An entry is never expired by time; a different
    fingerprint is simply a different key.
    """

    def __init__(self, maxsize: int = 64):
        self.maxsize = maxsize
        self._entries: OrderedDict[str, TraversalResult] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, flow: Flow) -> TraversalResult:
        fingerprint = structural_fingerprint(flow)
        result = self._entries.get(fingerprint)
        if result is not None:
            self.hits += 1
            self._entries.move_to_end(fingerprint)
            return result

        self.misses += 1
        result = traverse_flow(flow)
        self._entries[fingerprint] = result
        if len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)
        return result

    def invalidate(self, flow: Flow | None = None):
        if flow is None:
            self._entries.clear()
        else:
            self._entries.pop(structural_fingerprint(flow), None)

    def __len__(self):
        return len(self._entries)
