"""Tests for FlowReconciler — writing graph edits back to the template store."""
import pytest

from flows.errors import AuthExpired, StoreUnavailable
from flows.reconciler import NEW_NODE_RESPONSE, FlowReconciler
from flows.graph import FlowGraph
from models.schemas import Node, NodeKind, NodePayload, Position

PROJECT_ID = "p1"


def message_node(node_id, *triggers, response="resposta"):
    return Node(id=node_id, kind=NodeKind.MESSAGE,
                payload=NodePayload(title=node_id, triggers=list(triggers), response=response, active=True))


@pytest.fixture
def reconciler(store):
    return FlowReconciler(store, PROJECT_ID)


def store_calls(store, name):
    return [c for c in store.calls if c[0] == name]


class TestLoadFlow:
    @pytest.mark.asyncio
    async def test_load_flow(self, reconciler, store):
        graph, templates = await reconciler.load_flow()
        assert len(templates) == 6
        assert len(graph) == 8
        assert graph.template_id_for("template-2") == "2"
        assert store.calls == [("list_templates", PROJECT_ID)]


class TestReconcile:
    @pytest.mark.asyncio
    async def test_unchanged_graph_updates_in_place(self, reconciler, store, bus_graph, bus_templates):
        report = await reconciler.reconcile(bus_graph, bus_templates)
        assert report.updated == [(f"template-{i}", str(i)) for i in range(1, 5)]
        assert report.created == []
        assert report.ok
        assert store_calls(store, "create_template") == []

    @pytest.mark.asyncio
    async def test_edit_is_written(self, reconciler, store, bus_graph, bus_templates):
        bus_graph.update_payload("template-3", triggers=["2", "horários", "tabela"])
        await reconciler.reconcile(bus_graph, bus_templates)

        stored = await store.list_templates(PROJECT_ID)
        assert next(t for t in stored if t.id == "3").triggers == ["2", "horários", "tabela"]
        assert len(stored) == 6

    @pytest.mark.asyncio
    async def test_overlap_updates_instead_of_creating(self, reconciler, store, bus_graph, bus_templates):
        bus_graph.unbind_template("template-2")
        report = await reconciler.reconcile(bus_graph, bus_templates)

        assert ("template-2", "2") in report.updated
        assert bus_graph.template_id_for("template-2") == "2"
        assert store_calls(store, "create_template") == []

    @pytest.mark.asyncio
    async def test_overlap_is_case_insensitive(self, reconciler, store, bus_templates):
        graph = FlowGraph()
        graph.add_node(message_node("custom", "COMPRAR", response="Nova compra"))
        await reconciler.reconcile(graph, bus_templates)
        assert graph.template_id_for("custom") == "2"

    @pytest.mark.asyncio
    async def test_claimed_template_is_not_reused(self, reconciler, store, bus_templates):
        graph = FlowGraph()
        graph.add_node(message_node("first", "comprar"))
        graph.add_node(message_node("second", "passagem"))
        report = await reconciler.reconcile(graph, bus_templates)

        assert graph.template_id_for("first") == "2"
        assert report.created == [("second", "7")]
        assert graph.template_id_for("second") == "7"

    @pytest.mark.asyncio
    async def test_bound_template_is_not_taken_by_overlap(self, reconciler, store, bus_templates):
        graph = FlowGraph()
        graph.add_node(message_node("novo", "oi", response="NOVO"))
        graph.add_node(message_node("template-1", "oi", response="BOAS-VINDAS"))
        graph.bind_template("template-1", "1")
        report = await reconciler.reconcile(graph, bus_templates)

        assert report.created == [("novo", "7")]
        assert report.updated == [("template-1", "1")]
        assert graph.identities == {"template-1": "1", "novo": "7"}
        stored = {t.id: t.response for t in await store.list_templates(PROJECT_ID)}
        assert stored["1"] == "BOAS-VINDAS"
        assert stored["7"] == "NOVO"

    @pytest.mark.asyncio
    async def test_shared_binding_is_written_once(self, reconciler, store, bus_templates):
        graph = FlowGraph()
        graph.add_node(message_node("left", "promo", response="Esquerda"))
        graph.add_node(message_node("right", "extra", response="Direita"))
        graph.bind_template("left", "1")
        graph.bind_template("right", "1")
        report = await reconciler.reconcile(graph, bus_templates)

        assert report.updated == [("left", "1")]
        assert report.created == [("right", "7")]
        assert len(store_calls(store, "update_template")) == 1

    @pytest.mark.asyncio
    async def test_new_node_is_created_and_bound(self, reconciler, store, bus_graph, bus_templates):
        bus_graph.add_node(message_node("promo", "promoção", response="Desconto!"))
        report = await reconciler.reconcile(bus_graph, bus_templates)

        assert report.created == [("promo", "7")]
        assert bus_graph.template_id_for("promo") == "7"
        assert any(t.id == "7" for t in report.templates)
        assert ("create_template", PROJECT_ID, ("promoção",)) in store.calls

    @pytest.mark.asyncio
    async def test_incomplete_nodes_are_skipped(self, reconciler, store, bus_graph, bus_templates):
        bus_graph.add_node(message_node("blank", "", response="algo"))
        report = await reconciler.reconcile(bus_graph, bus_templates)
        assert report.skipped == ["blank"]
        assert bus_graph.template_id_for("blank") is None

    @pytest.mark.asyncio
    async def test_missing_templates_are_not_deleted(self, reconciler, store, bus_graph, bus_templates):
        bus_graph.remove_node("template-3")
        await reconciler.reconcile(bus_graph, bus_templates)
        assert store_calls(store, "delete_template") == []
        assert len(await store.list_templates(PROJECT_ID)) == 6

    @pytest.mark.asyncio
    async def test_unavailable_store_fails_one_node(self, reconciler, store, bus_graph, bus_templates):
        store.fail_next(StoreUnavailable("Template store down", 503))
        report = await reconciler.reconcile(bus_graph, bus_templates)

        assert [node_id for node_id, _ in report.failed] == ["template-1"]
        assert len(report.updated) == 3
        assert not report.ok
        assert report.summary() == {"created": 0, "updated": 3, "skipped": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_auth_expired_halts_and_rolls_back(self, reconciler, store, bus_graph, bus_templates):
        bus_graph.add_node(message_node("n1", "promo"))
        bus_graph.add_node(message_node("n2", "extra"))
        before = bus_graph.identities
        # four updates and the first create go through
        store.fail_next(AuthExpired(), after=5)

        with pytest.raises(AuthExpired) as exc_info:
            await reconciler.reconcile(bus_graph, bus_templates)

        assert bus_graph.identities == before
        report = exc_info.value.report
        assert report.halted
        assert report.created == [("n1", "7")]
        assert not report.ok


class TestDeleteNode:
    @pytest.mark.asyncio
    async def test_delete_bound_node(self, reconciler, store, bus_graph):
        await reconciler.delete_node(bus_graph, "template-3")

        assert "template-3" not in bus_graph
        assert bus_graph.template_id_for("template-3") is None
        assert ("delete_template", "3") in store.calls
        assert [t.id for t in await store.list_templates(PROJECT_ID)] == ["1", "2", "4", "5", "6"]

    @pytest.mark.asyncio
    async def test_store_failure_leaves_graph_untouched(self, reconciler, store, bus_graph):
        before_nodes = [n.model_dump() for n in bus_graph.nodes]
        before_connections = [c.pair for c in bus_graph.connections]
        store.fail_next(StoreUnavailable("Template store down", 503))

        with pytest.raises(StoreUnavailable):
            await reconciler.delete_node(bus_graph, "template-3")

        assert [n.model_dump() for n in bus_graph.nodes] == before_nodes
        assert [c.pair for c in bus_graph.connections] == before_connections
        assert bus_graph.template_id_for("template-3") == "3"

    @pytest.mark.asyncio
    async def test_auth_expired_leaves_graph_untouched(self, reconciler, store, bus_graph):
        store.fail_next(AuthExpired())
        with pytest.raises(AuthExpired):
            await reconciler.delete_node(bus_graph, "template-3")
        assert "template-3" in bus_graph

    @pytest.mark.asyncio
    async def test_already_deleted_template(self, reconciler, store, bus_graph):
        bus_graph.bind_template("template-3", "99")
        await reconciler.delete_node(bus_graph, "template-3")
        assert "template-3" not in bus_graph

    @pytest.mark.asyncio
    async def test_unbound_node_is_local(self, reconciler, store, bus_graph):
        await reconciler.delete_node(bus_graph, "end-1")
        assert "end-1" not in bus_graph
        assert store.calls == []


class TestAddMessageNode:
    @pytest.mark.asyncio
    async def test_creates_then_inserts(self, reconciler, store, bus_graph):
        node = await reconciler.add_message_node(bus_graph, position=Position(x=400, y=400))

        assert node.id == "template-7"
        assert node.kind == NodeKind.MESSAGE
        assert node.payload.triggers == ["novo"]
        assert node.payload.response == NEW_NODE_RESPONSE
        assert bus_graph.template_id_for("template-7") == "7"
        assert bus_graph.selected == "template-7"
        assert len(await store.list_templates(PROJECT_ID)) == 7

    @pytest.mark.asyncio
    async def test_store_failure_adds_nothing(self, reconciler, store, bus_graph):
        store.fail_next(StoreUnavailable("Template store down", 503))
        with pytest.raises(StoreUnavailable):
            await reconciler.add_message_node(bus_graph)
        assert len(bus_graph) == 8
        assert bus_graph.selected is None
