"""
Flow Serialization — Human-editable JSON export/import of a flow graph.

Document shape:
    {
      "metadata":    {"version", "created", "description"},
      "nodes":       [{"id", "type", "position", "data", "connections"}],
      "connections": [{"id", "source", "target", "sourceHandle"?, "targetHandle"?}]
    }

Import never crashes on a malformed document: every problem surfaces as
InvalidFormat and nothing is built. A node bound to a persisted template
carries its id as "templateId" in its data; documents without one fall back
to the legacy node id form "template-<digits>".
"""
from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from flows.errors import FlowError, InvalidFormat
from flows.graph import FlowGraph
from models.schemas import Connection, Node, NodeKind, NodePayload, Position

logger = structlog.get_logger()


FORMAT_VERSION = "1.0"
DEFAULT_DESCRIPTION = "Fluxo de conversação automática"
LEGACY_TEMPLATE_ID = re.compile(r"^template-(\d+)$")

# Payload field → document key, where the document uses the editor's names
DATA_KEYS = {"predicates": "conditions", "choices": "options"}
TEMPLATE_ID_KEY = "templateId"


# ──────────────────────────────────────────────────────────────
#  Export
# ──────────────────────────────────────────────────────────────

def flow_to_document(graph: FlowGraph, description: str = DEFAULT_DESCRIPTION) -> dict[str, Any]:
    nodes = []
    for node in graph.nodes:
        nodes.append({
            "id": node.id,
            "type": node.kind.value,
            "position": {"x": node.position.x, "y": node.position.y},
            "data": _dump_payload(node.payload, graph.template_id_for(node.id)),
            "connections": list(node.outgoing),
        })

    connections = []
    for conn in graph.connections:
        entry = {"id": conn.id, "source": conn.source, "target": conn.target}
        if conn.source_handle is not None:
            entry["sourceHandle"] = conn.source_handle
        if conn.target_handle is not None:
            entry["targetHandle"] = conn.target_handle
        connections.append(entry)

    return {
        "metadata": {
            "version": FORMAT_VERSION,
            "created": datetime.now(timezone.utc).isoformat(),
            "description": description,
        },
        "nodes": nodes,
        "connections": connections,
    }


def export_flow(graph: FlowGraph, description: str = DEFAULT_DESCRIPTION) -> str:
    return json.dumps(flow_to_document(graph, description), indent=2, ensure_ascii=False)


def _dump_payload(payload: NodePayload, template_id: Optional[str] = None) -> dict[str, Any]:
    data = payload.model_dump(exclude_none=True)
    for field_name, key in DATA_KEYS.items():
        if field_name in data:
            data[key] = data.pop(field_name)
    if template_id is not None:
        data[TEMPLATE_ID_KEY] = template_id
    return data


def _load_payload(data: Any) -> NodePayload:
    if not isinstance(data, dict):
        raise TypeError("data must be an object")
    data = dict(data)
    data.pop(TEMPLATE_ID_KEY, None)
    for field_name, key in DATA_KEYS.items():
        if key in data and field_name not in data:
            data[field_name] = data.pop(key)
    return NodePayload(**data)


# ──────────────────────────────────────────────────────────────
#  Import
# ──────────────────────────────────────────────────────────────

def import_flow(document: Union[str, bytes, dict[str, Any]]) -> FlowGraph:
    """Parse a flow document into a new graph. Raises InvalidFormat."""
    if isinstance(document, (str, bytes)):
        try:
            document = json.loads(document)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidFormat(f"Flow document is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise InvalidFormat("Flow document must be a JSON object")

    raw_nodes = document.get("nodes")
    if not isinstance(raw_nodes, list):
        raise InvalidFormat('"nodes" is missing or is not an array')
    raw_connections = document.get("connections")
    if not isinstance(raw_connections, list):
        raise InvalidFormat('"connections" is missing or is not an array')

    parsed = [_parse_node(raw, i) for i, raw in enumerate(raw_nodes)]
    nodes = [node for node, _ in parsed]
    connections = [_parse_connection(raw, i) for i, raw in enumerate(raw_connections)]

    try:
        graph = FlowGraph.from_parts(nodes, connections)
    except FlowError as e:
        raise InvalidFormat(f"Flow document is inconsistent: {e}") from e

    for node, template_id in parsed:
        if template_id is None:
            match = LEGACY_TEMPLATE_ID.match(node.id)
            template_id = match.group(1) if match else None
        if template_id is not None:
            graph.bind_template(node.id, template_id)

    logger.info("flow_imported", nodes=len(graph), connections=len(graph.connections),
                bound=len(graph.identities))
    return graph


def _parse_node(raw: Any, index: int) -> tuple[Node, Optional[str]]:
    if not isinstance(raw, dict):
        raise InvalidFormat(f"nodes[{index}] is not an object")

    kind_name = raw.get("type") or NodeKind.MESSAGE.value
    try:
        kind = NodeKind(kind_name)
    except ValueError:
        raise InvalidFormat(f"nodes[{index}] has unknown type '{kind_name}'") from None

    outgoing = raw.get("connections") or []
    if not isinstance(outgoing, list) or not all(isinstance(t, str) for t in outgoing):
        raise InvalidFormat(f"nodes[{index}].connections must be an array of node ids")

    data = raw.get("data") or {"title": "Novo Nó"}
    template_id = data.get(TEMPLATE_ID_KEY) if isinstance(data, dict) else None
    if template_id is not None and (
        isinstance(template_id, bool) or not isinstance(template_id, (str, int))
    ):
        raise InvalidFormat(f"nodes[{index}].data.{TEMPLATE_ID_KEY} must be a string or number")

    node_id = raw.get("id")
    try:
        node = Node(
            id=f"node-{index}" if node_id is None or node_id == "" else str(node_id),
            kind=kind,
            position=Position(**(raw.get("position") or {})),
            payload=_load_payload(data),
            outgoing=outgoing,
        )
    except (TypeError, ValidationError) as e:
        raise InvalidFormat(f"nodes[{index}] is malformed: {e}") from e
    return node, None if template_id is None else str(template_id)


def _parse_connection(raw: Any, index: int) -> Connection:
    if not isinstance(raw, dict):
        raise InvalidFormat(f"connections[{index}] is not an object")
    if not raw.get("source") or not raw.get("target"):
        raise InvalidFormat(f"connections[{index}] needs both source and target")
    conn_id = raw.get("id")
    try:
        return Connection(
            id=f"conn-{index}" if conn_id is None or conn_id == "" else str(conn_id),
            source=str(raw["source"]),
            target=str(raw["target"]),
            source_handle=raw.get("sourceHandle"),
            target_handle=raw.get("targetHandle"),
        )
    except ValidationError as e:
        raise InvalidFormat(f"connections[{index}] is malformed: {e}") from e


# ──────────────────────────────────────────────────────────────
#  Editor document holder
# ──────────────────────────────────────────────────────────────

class FlowDocumentEditor:
    """
    Holds the graph being edited. Applying a document replaces it only
    when the import succeeds.
    """

    def __init__(self, graph: Optional[FlowGraph] = None):
        self.graph = graph if graph is not None else FlowGraph()
        self.last_error: str = ""

    def export(self, description: str = DEFAULT_DESCRIPTION) -> str:
        return export_flow(self.graph, description)

    def apply(self, document: Union[str, bytes, dict[str, Any]]) -> FlowGraph:
        try:
            graph = import_flow(document)
        except InvalidFormat as e:
            self.last_error = str(e)
            logger.warning("flow_import_rejected", error=str(e))
            raise
        self.graph = graph
        self.last_error = ""
        return graph
