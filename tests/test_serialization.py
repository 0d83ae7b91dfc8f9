"""Tests for flow export/import and the editor document holder."""
import json

import pytest

from flows.errors import InvalidFormat
from flows.reconciler import FlowReconciler
from flows.serialization import FlowDocumentEditor, export_flow, flow_to_document, import_flow
from models.schemas import NodeKind, Template


class TestExport:
    def test_document_shape(self, bus_graph):
        document = json.loads(export_flow(bus_graph, description="Ônibus"))
        assert document["metadata"]["version"] == "1.0"
        assert document["metadata"]["description"] == "Ônibus"
        assert "created" in document["metadata"]
        assert len(document["nodes"]) == len(bus_graph)
        assert len(document["connections"]) == len(bus_graph.connections)

        welcome = next(n for n in document["nodes"] if n["id"] == "template-1")
        assert welcome["type"] == "message"
        assert welcome["connections"] == ["template-2", "template-3", "template-4"]
        assert welcome["data"]["triggers"][0] == "oi"
        assert welcome["data"]["templateId"] == "1"

    def test_unbound_node_has_no_template_id(self, small_graph):
        document = flow_to_document(small_graph)
        assert all("templateId" not in n["data"] for n in document["nodes"])

    def test_non_ascii_preserved(self, bus_graph):
        assert "Início" in export_flow(bus_graph)

    def test_condition_data_uses_editor_keys(self, bus_graph):
        document = flow_to_document(bus_graph)
        condition = next(n for n in document["nodes"] if n["id"] == "template-5")
        assert "conditions" in condition["data"]
        assert "predicates" not in condition["data"]


class TestImport:
    def test_export_import_preserves_structure(self, bus_graph):
        graph = import_flow(export_flow(bus_graph))
        assert [n.model_dump() for n in graph.nodes] == [n.model_dump() for n in bus_graph.nodes]
        assert [c.pair for c in graph.connections] == [c.pair for c in bus_graph.connections]
        assert graph.identities == bus_graph.identities

    @pytest.mark.asyncio
    async def test_reconciled_unsaved_node_keeps_binding(self, synthesizer, store):
        graph = synthesizer.synthesize([Template(triggers=["promoção"], response="Desconto!")])
        await FlowReconciler(store, "p1").reconcile(graph, await store.list_templates("p1"))
        assert graph.template_id_for("template-new-0") == "7"

        restored = import_flow(export_flow(graph))
        assert restored.identities == {"template-new-0": "7"}
        assert "templateId" not in restored.require("template-new-0").payload.model_dump()

    def test_template_id_wins_over_legacy_node_id(self):
        graph = import_flow({
            "nodes": [
                {"id": "template-12", "data": {"title": "A", "templateId": "40"}},
                {"id": "custom", "data": {"title": "B", "templateId": 41}},
            ],
            "connections": [],
        })
        assert graph.identities == {"template-12": "40", "custom": "41"}

    def test_zero_ids_are_kept(self):
        graph = import_flow({
            "nodes": [{"id": 0}, {"id": 1}],
            "connections": [{"id": 0, "source": "0", "target": "1"}],
        })
        assert [n.id for n in graph.nodes] == ["0", "1"]
        assert graph.connections[0].id == "0"

    def test_missing_fields_get_defaults(self):
        graph = import_flow({"nodes": [{"id": "x"}], "connections": []})
        node = graph.require("x")
        assert node.kind == NodeKind.MESSAGE
        assert (node.position.x, node.position.y) == (0, 0)
        assert node.payload.title == "Novo Nó"

    def test_node_connections_merged_with_top_level(self):
        graph = import_flow({
            "nodes": [
                {"id": "s", "type": "start", "connections": ["m"]},
                {"id": "m", "type": "message", "connections": ["e"]},
                {"id": "e", "type": "end"},
            ],
            "connections": [{"id": "s-m", "source": "s", "target": "m"}],
        })
        assert [c.pair for c in graph.connections] == [("s", "m"), ("m", "e")]

    def test_legacy_template_ids_are_bound(self):
        graph = import_flow({
            "nodes": [
                {"id": "template-12", "type": "message", "data": {"triggers": ["oi"], "response": "Olá"}},
                {"id": "template-new-0", "type": "message"},
                {"id": "template-13", "type": "condition"},
            ],
            "connections": [],
        })
        assert graph.identities == {"template-12": "12", "template-13": "13"}

    @pytest.mark.parametrize("document", [
        "{not json",
        "[]",
        {"nodes": "not-an-array", "connections": []},
        {"nodes": [], "connections": {}},
        {"connections": []},
        {"nodes": ["oops"], "connections": []},
        {"nodes": [{"id": "a", "type": "teleport"}], "connections": []},
        {"nodes": [{"id": "a"}, {"id": "a"}], "connections": []},
        {"nodes": [{"id": "a"}], "connections": [{"source": "a", "target": "ghost"}]},
        {"nodes": [{"id": "a", "connections": ["ghost"]}], "connections": []},
        {"nodes": [{"id": "a"}], "connections": [{"source": "a"}]},
        {"nodes": [{"id": "a", "position": {"x": "left"}}], "connections": []},
        {"nodes": [{"id": "a", "data": {"templateId": ["1"]}}], "connections": []},
        {"nodes": [{"id": "a", "data": {"templateId": True}}], "connections": []},
    ])
    def test_malformed_documents(self, document):
        with pytest.raises(InvalidFormat):
            import_flow(document)


class TestDocumentEditor:
    def test_apply_replaces_graph(self, bus_graph):
        editor = FlowDocumentEditor()
        graph = editor.apply(export_flow(bus_graph))
        assert editor.graph is graph
        assert len(editor.graph) == len(bus_graph)
        assert editor.last_error == ""

    def test_rejected_document_leaves_graph_untouched(self, bus_graph):
        editor = FlowDocumentEditor(bus_graph)
        with pytest.raises(InvalidFormat):
            editor.apply({"nodes": "not-an-array", "connections": []})
        assert editor.graph is bus_graph
        assert len(editor.graph) == 8
        assert "nodes" in editor.last_error

    def test_export(self, small_graph):
        editor = FlowDocumentEditor(small_graph)
        assert json.loads(editor.export())["nodes"][0]["id"] == "start"
