"""
Flow Graph — In-memory model of a chatbot's trigger→response logic.

A FlowGraph is a directed graph of Nodes joined by Connections. It is pure
data plus invariants, with no I/O:

  - node ids are unique;
  - there is at most one start node;
  - every connection endpoint resolves to a node;
  - no two connections share a (source, target) pair;
  - a node's `outgoing` list is exactly the targets of the connections
    whose source is that node, in insertion order.

Every mutation validates before touching state, so a failed call leaves
the graph exactly as it was. Mutations return the graph for chaining.

The graph also owns the identity table (node id → persisted template id).
Editor-only state (selection, drag, pan, zoom) lives in a separate
EditorViewState hanging off `graph.view`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional

import structlog

from flows.errors import DuplicateConnection, DuplicateId, GraphError, UnknownNode
from models.schemas import Connection, Node, NodeKind, Position

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Editor View State
# ──────────────────────────────────────────────────────────────

@dataclass
class EditorViewState:
    """Disposable editor state. Has no bearing on graph correctness."""
    selected_node: Optional[str] = None
    dragged_node: Optional[str] = None
    drag_offset: Position = field(default_factory=Position)
    pan_offset: Position = field(default_factory=Position)
    zoom: float = 1.0

    def forget(self, node_id: str):
        if self.selected_node == node_id:
            self.selected_node = None
        if self.dragged_node == node_id:
            self.dragged_node = None
            self.drag_offset = Position()


# ──────────────────────────────────────────────────────────────
#  Flow Graph
# ──────────────────────────────────────────────────────────────

class FlowGraph:

    def __init__(self):
        self._nodes: dict[str, Node] = {}
        self._connections: list[Connection] = []
        self._pairs: set[tuple[str, str]] = set()
        self._template_ids: dict[str, str] = {}       # node_id → persisted template id
        self.view = EditorViewState()

    @classmethod
    def from_parts(
        cls,
        nodes: Iterable[Node],
        connections: Iterable[Connection] = (),
    ) -> "FlowGraph":
        """
        Build a graph from loose parts (e.g. an imported document).

        Nodes are inserted first without their `outgoing` lists, then the
        explicit connections, then any `outgoing` targets not already
        covered by a connection.
        """
        graph = cls()
        nodes = list(nodes)
        for node in nodes:
            graph.add_node(node.model_copy(update={"outgoing": []}))
        for conn in connections:
            graph.add_connection(
                conn.source, conn.target,
                connection_id=conn.id,
                source_handle=conn.source_handle,
                target_handle=conn.target_handle,
            )
        for node in nodes:
            for target in node.outgoing:
                if (node.id, target) not in graph._pairs:
                    graph.add_connection(node.id, target)
        return graph

    # ── Queries ───────────────────────────────────────

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes.values())

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections)

    def get(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def require(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNode(node_id)
        return node

    def has_connection(self, source: str, target: str) -> bool:
        return (source, target) in self._pairs

    def start_node(self) -> Optional[Node]:
        return next((n for n in self._nodes.values() if n.kind == NodeKind.START), None)

    def nodes_of_kind(self, *kinds: NodeKind) -> list[Node]:
        return [n for n in self._nodes.values() if n.kind in kinds]

    def successors(self, node_id: str) -> list[Node]:
        node = self.require(node_id)
        return [self._nodes[t] for t in node.outgoing]

    def predecessors(self, node_id: str) -> list[Node]:
        self.require(node_id)
        return [self._nodes[c.source] for c in self._connections if c.target == node_id]

    # ── Node mutation ─────────────────────────────────

    def add_node(self, node: Node) -> "FlowGraph":
        """
        Insert a node. Targets already listed in `node.outgoing` become
        connections; each must be an existing node or the node itself.
        """
        if node.id in self._nodes:
            raise DuplicateId(node.id)
        if node.kind == NodeKind.START and self.start_node() is not None:
            raise GraphError(f"Graph already has a start node '{self.start_node().id}'")
        targets = list(dict.fromkeys(node.outgoing))
        for target in targets:
            if target != node.id and target not in self._nodes:
                raise UnknownNode(target)

        self._nodes[node.id] = node.model_copy(deep=True, update={"outgoing": []})
        for target in targets:
            self._connect(node.id, target)

        logger.debug("flow_node_added", node_id=node.id, kind=node.kind.value,
                     outgoing=len(targets))
        return self

    def remove_node(self, node_id: str) -> "FlowGraph":
        """Remove a node and every connection touching it."""
        self.require(node_id)

        dropped = [c for c in self._connections if node_id in (c.source, c.target)]
        self._connections = [c for c in self._connections if node_id not in (c.source, c.target)]
        for conn in dropped:
            self._pairs.discard(conn.pair)
            source = self._nodes.get(conn.source)
            if source is not None and conn.source != node_id:
                source.outgoing = [t for t in source.outgoing if t != node_id]

        del self._nodes[node_id]
        self._template_ids.pop(node_id, None)
        self.view.forget(node_id)

        logger.debug("flow_node_removed", node_id=node_id, connections_dropped=len(dropped))
        return self

    def update_payload(self, node_id: str, **fields: Any) -> "FlowGraph":
        """Edit payload fields (title, triggers, response, active, ...)."""
        node = self.require(node_id)
        unknown = set(fields) - set(type(node.payload).model_fields)
        if unknown:
            raise ValueError(f"Unknown payload fields: {', '.join(sorted(unknown))}")
        node.payload = type(node.payload).model_validate({**node.payload.model_dump(), **fields})
        return self

    def move_node(self, node_id: str, x: float, y: float) -> "FlowGraph":
        node = self.require(node_id)
        node.position = Position(x=x, y=y)
        return self

    # ── Connection mutation ───────────────────────────

    def add_connection(
        self,
        source: str,
        target: str,
        connection_id: Optional[str] = None,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
    ) -> "FlowGraph":
        if source not in self._nodes:
            raise UnknownNode(source)
        if target not in self._nodes:
            raise UnknownNode(target)
        if (source, target) in self._pairs:
            raise DuplicateConnection(source, target)

        self._connect(source, target, connection_id, source_handle, target_handle)
        return self

    def remove_connection(self, source: str, target: str) -> "FlowGraph":
        if (source, target) not in self._pairs:
            raise ValueError(f"No connection '{source}' → '{target}'")
        self._connections = [c for c in self._connections if c.pair != (source, target)]
        self._pairs.discard((source, target))
        node = self._nodes[source]
        node.outgoing = [t for t in node.outgoing if t != target]
        return self

    def _connect(
        self,
        source: str,
        target: str,
        connection_id: Optional[str] = None,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
    ):
        self._connections.append(Connection(
            id=connection_id or f"{source}-{target}",
            source=source,
            target=target,
            source_handle=source_handle,
            target_handle=target_handle,
        ))
        self._pairs.add((source, target))
        self._nodes[source].outgoing.append(target)

    # ── View state ────────────────────────────────────

    def set_selected(self, node_id: Optional[str]) -> "FlowGraph":
        if node_id is not None:
            self.require(node_id)
        self.view.selected_node = node_id
        return self

    @property
    def selected(self) -> Optional[str]:
        return self.view.selected_node

    # ── Identity table ────────────────────────────────

    def bind_template(self, node_id: str, template_id: str) -> "FlowGraph":
        self.require(node_id)
        self._template_ids[node_id] = str(template_id)
        return self

    def unbind_template(self, node_id: str) -> "FlowGraph":
        self._template_ids.pop(node_id, None)
        return self

    def template_id_for(self, node_id: str) -> Optional[str]:
        return self._template_ids.get(node_id)

    def node_id_for_template(self, template_id: Optional[str]) -> Optional[str]:
        if template_id is None:
            return None
        for node_id, bound in self._template_ids.items():
            if bound == str(template_id):
                return node_id
        return None

    @property
    def identities(self) -> dict[str, str]:
        return dict(self._template_ids)

    def restore_identities(self, identities: dict[str, str]) -> "FlowGraph":
        """Replace the identity table (used to roll back a failed batch)."""
        self._template_ids = {k: v for k, v in identities.items() if k in self._nodes}
        return self

    # ── Snapshots & validation ────────────────────────

    def copy(self) -> "FlowGraph":
        clone = FlowGraph()
        clone._nodes = {k: n.model_copy(deep=True) for k, n in self._nodes.items()}
        clone._connections = [c.model_copy() for c in self._connections]
        clone._pairs = set(self._pairs)
        clone._template_ids = dict(self._template_ids)
        clone.view = EditorViewState(
            selected_node=self.view.selected_node,
            dragged_node=self.view.dragged_node,
            drag_offset=self.view.drag_offset.model_copy(),
            pan_offset=self.view.pan_offset.model_copy(),
            zoom=self.view.zoom,
        )
        return clone

    def validate(self) -> list[str]:
        """Return invariant violations (empty for a consistent graph)."""
        errors = []
        seen_pairs: set[tuple[str, str]] = set()
        expected: dict[str, list[str]] = {node_id: [] for node_id in self._nodes}

        for conn in self._connections:
            if conn.source not in self._nodes:
                errors.append(f"connection '{conn.id}' references unknown source '{conn.source}'")
                continue
            if conn.target not in self._nodes:
                errors.append(f"connection '{conn.id}' references unknown target '{conn.target}'")
                continue
            if conn.pair in seen_pairs:
                errors.append(f"duplicate connection '{conn.source}' → '{conn.target}'")
            seen_pairs.add(conn.pair)
            expected[conn.source].append(conn.target)

        for node_id, node in self._nodes.items():
            if node.outgoing != expected[node_id]:
                errors.append(f"node '{node_id}' outgoing {node.outgoing} diverges from connections")

        starts = self.nodes_of_kind(NodeKind.START)
        if len(starts) > 1:
            errors.append(f"graph has {len(starts)} start nodes")

        for node_id in self._template_ids:
            if node_id not in self._nodes:
                errors.append(f"identity bound to unknown node '{node_id}'")

        return errors

    def __repr__(self):
        return f"<FlowGraph nodes={len(self._nodes)} connections={len(self._connections)}>"
