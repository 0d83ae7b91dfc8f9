"""Shared test fixtures for FlowDesk."""
import pytest

from backend.store import InMemoryTemplateStore
from config.settings import SimulationConfig, StoreConfig
from flows.graph import FlowGraph
from flows.seeds import default_project_templates
from flows.synthesizer import FlowSynthesizer
from models.schemas import Node, NodeKind, NodePayload, Position, Template


PROJECT_ID = "p1"


@pytest.fixture
def bus_templates() -> list[Template]:
    """The six bus-ticket templates, persisted as ids 1..6."""
    return [
        t.model_copy(update={"id": str(i + 1)})
        for i, t in enumerate(default_project_templates())
    ]


@pytest.fixture
def store(bus_templates) -> InMemoryTemplateStore:
    """In-memory store holding the bus-ticket project under PROJECT_ID."""
    store = InMemoryTemplateStore()
    store.seed(PROJECT_ID, bus_templates)
    return store


@pytest.fixture
def empty_store() -> InMemoryTemplateStore:
    return InMemoryTemplateStore()


@pytest.fixture
def synthesizer() -> FlowSynthesizer:
    return FlowSynthesizer()


@pytest.fixture
def bus_graph(synthesizer, bus_templates) -> FlowGraph:
    return synthesizer.synthesize(bus_templates)


@pytest.fixture
def sim_config() -> SimulationConfig:
    """Simulation settings with no reply delay."""
    return SimulationConfig(reply_delay_seconds=0)


@pytest.fixture
def store_config() -> StoreConfig:
    """REST store settings with instant retries."""
    return StoreConfig(
        base_url="http://store.test/api",
        token="secret-token",
        timeout_seconds=5,
        retry_attempts=3,
        retry_max_wait=0,
    )


@pytest.fixture
def small_graph() -> FlowGraph:
    """start → a → b, with a and b as message nodes."""
    graph = FlowGraph()
    graph.add_node(Node(id="start", kind=NodeKind.START, payload=NodePayload(title="Início")))
    graph.add_node(Node(
        id="a", kind=NodeKind.MESSAGE, position=Position(x=100, y=0),
        payload=NodePayload(title="A", triggers=["oi"], response="Olá", active=True),
    ))
    graph.add_node(Node(
        id="b", kind=NodeKind.MESSAGE, position=Position(x=200, y=0),
        payload=NodePayload(title="B", triggers=["1"], response="Um", active=True),
    ))
    graph.add_connection("start", "a")
    graph.add_connection("a", "b")
    return graph
