"""
Template↔Graph Synthesizer — Builds a flow graph from a flat template list
and flattens an edited graph back into templates.

Synthesis (templates → graph):
  1. one start node
  2. welcome template            → message node, start → welcome
  3. menu options (sorted)       → message nodes, welcome (or start) → option
  4. special / programmatic      → condition nodes, purchase option → condition
  5. operator menu option        → retyped to human, moved aside
  6. one end node; every other childless node (not start, end, human or
     unclassified) → end
  7. templates no rule claims    → unclassified nodes, left unwired

Role assignment comes from a ClassificationPolicy; this module only lays
out the topology. Positions are a cosmetic grid. Given the same template
list and policy, synthesis always produces the same graph.

Flattening (graph → templates) turns every message, human and
unclassified node that has both triggers and a response into a Template,
carrying the persisted id from the graph's identity table.
"""
from __future__ import annotations

from typing import Optional, Sequence

import structlog

from flows.classification import ClassificationPolicy, Role, default_policy
from flows.graph import FlowGraph
from models.schemas import (
    TEMPLATE_KINDS, Node, NodeKind, NodePayload, Position, Predicate, Template,
)
from utils.matching import numeric_trigger, overlaps

logger = structlog.get_logger()


START_NODE_ID = "start-1"
END_NODE_ID = "end-1"

# Descriptive suffixes for menu option titles, first match wins
OPTION_TITLES: list[tuple[list[str], str]] = [
    (["comprar", "passagem", "bilhete"], "Comprar Passagem"),
    (["horários", "horario", "hora"], "Ver Horários"),
    (["operador", "atendente", "humano", "pessoa"], "Falar com Operador"),
]


def template_node_id(template: Template, index: int) -> str:
    """Node id for a template; unsaved templates are keyed by list position."""
    if template.id is not None:
        return f"template-{template.id}"
    return f"template-new-{index}"


class FlowSynthesizer:

    def __init__(self, policy: Optional[ClassificationPolicy] = None):
        self.policy = policy or default_policy()

    # ── Synthesis ─────────────────────────────────────

    def synthesize(self, templates: Sequence[Template]) -> FlowGraph:
        graph = FlowGraph()
        classification = self.policy.classify(templates)
        index_of = {id(t): i for i, t in enumerate(templates)}

        def node_id(template: Template) -> str:
            return template_node_id(template, index_of[id(template)])

        def add_template_node(template: Template, kind: NodeKind, title: str,
                              position: Position, **extra) -> Node:
            node = Node(
                id=node_id(template),
                kind=kind,
                position=position,
                payload=NodePayload(
                    title=title,
                    triggers=list(template.triggers),
                    response=template.response,
                    active=template.active,
                    **extra,
                ),
            )
            graph.add_node(node)
            if template.id is not None:
                graph.bind_template(node.id, template.id)
            return node

        # 1. Start
        graph.add_node(Node(
            id=START_NODE_ID,
            kind=NodeKind.START,
            position=Position(x=50, y=50),
            payload=NodePayload(title="Início", description="Usuário inicia conversa"),
        ))

        # 2. Welcome
        welcome_node = None
        welcome = classification.first(Role.WELCOME)
        if welcome is not None:
            welcome_node = add_template_node(welcome, NodeKind.MESSAGE, "Boas-vindas",
                                             Position(x=50, y=150))
            graph.add_connection(START_NODE_ID, welcome_node.id)

        # 3. Menu options
        menu_rule = self.policy.rule_for(Role.MENU_OPTION)
        digits = menu_rule.any_of if menu_rule else []
        menu_parent = welcome_node.id if welcome_node else START_NODE_ID
        options = classification.of(Role.MENU_OPTION)
        for i, option in enumerate(options):
            node = add_template_node(
                option, NodeKind.MESSAGE, self._option_title(option, digits),
                Position(x=300 + (i % 3) * 200, y=100 + (i // 3) * 120),
            )
            graph.add_connection(menu_parent, node.id)

        # 4. Special / programmatic triggers
        special_rule = self.policy.rule_for(Role.SPECIAL)
        anchor = None
        if special_rule and special_rule.attach_to_any_of:
            anchor = next((o for o in options if overlaps(o.triggers, special_rule.attach_to_any_of)), None)
        for i, special in enumerate(classification.of(Role.SPECIAL)):
            node = add_template_node(
                special, NodeKind.CONDITION, self._special_title(special),
                Position(x=50 + i * 250, y=400),
                predicates=[Predicate(field="trigger", operator="equals", value=t)
                            for t in special.triggers],
            )
            if anchor is not None:
                graph.add_connection(node_id(anchor), node.id)

        # 5. Human hand-off
        for human in classification.of(Role.HUMAN):
            node = graph.require(node_id(human))
            node.kind = NodeKind.HUMAN
            node.position = Position(x=50, y=300)
            graph.update_payload(node.id, title="Atendimento Humano")

        # 7. Unclassified templates are kept, not dropped
        for i, loose in enumerate(classification.unclassified):
            title = loose.triggers[0] if loose.triggers else "Template sem classificação"
            add_template_node(loose, NodeKind.UNCLASSIFIED, title,
                              Position(x=50 + i * 250, y=550))

        # 6. End, fed by every childless node of the topology
        graph.add_node(Node(
            id=END_NODE_ID,
            kind=NodeKind.END,
            position=Position(x=650, y=250),
            payload=NodePayload(title="Fim", description="Conversa finalizada"),
        ))
        excluded = {NodeKind.START, NodeKind.END, NodeKind.HUMAN, NodeKind.UNCLASSIFIED}
        for node in graph.nodes:
            if not node.outgoing and node.kind not in excluded:
                graph.add_connection(node.id, END_NODE_ID)

        logger.info("flow_synthesized",
                    templates=len(templates),
                    nodes=len(graph),
                    connections=len(graph.connections),
                    menu_options=len(options),
                    unclassified=len(classification.unclassified))
        return graph

    @staticmethod
    def _option_title(option: Template, digits: Sequence[str]) -> str:
        number = numeric_trigger(option.triggers, digits)
        title = f"Opção {number}" if number is not None else "Opção"
        for vocabulary, label in OPTION_TITLES:
            if overlaps(option.triggers, vocabulary):
                return f"{title} - {label}"
        return title

    @staticmethod
    def _special_title(template: Template) -> str:
        if any("CIDADE_NAO_DISPONIVEL" in t for t in template.triggers):
            return "Cidade Não Disponível"
        if any("CIDADE_DISPONIVEL" in t for t in template.triggers):
            return "Cidade Disponível"
        return "Template Especial"

    # ── Flattening ────────────────────────────────────

    def flatten(self, graph: FlowGraph) -> list[Template]:
        templates = []
        for node in graph.nodes:
            if node.kind not in TEMPLATE_KINDS or not node.payload.is_flattenable:
                continue
            templates.append(node_to_template(graph, node, order_index=len(templates)))
        return templates


def node_to_template(graph: FlowGraph, node: Node, order_index: int = 0) -> Template:
    """The Template a template-bearing node stands for."""
    return Template(
        id=graph.template_id_for(node.id),
        triggers=[t for t in node.payload.triggers or [] if t and t.strip()],
        response=node.payload.response or "",
        active=node.payload.active is not False,
        order_index=order_index,
    )
