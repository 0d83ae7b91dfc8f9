"""
Flow Reconciler — Writes an edited flow graph back to the Template Store.

For every template-bearing node (message, human, unclassified), in graph
order and one request at a time:

  1. identity:  the graph's identity table maps the node to a persisted
                template still in the store list and not yet written in this
                batch → update it
  2. overlap:   the node's triggers share a key with a persisted template
                neither written in this batch nor bound to another node
                → update that one and bind it
  3. otherwise: create, then bind the assigned id to the node

Created records join the working list, so later nodes resolve against them.
Persisted templates with no node are left alone; deletion is an explicit
per-node operation (`delete_node`).

Failure handling:
  - StoreUnavailable on one node is recorded and the batch moves on;
  - AuthExpired stops the batch at once, restores the identity table to
    its pre-batch state and propagates with the partial report attached.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from backend.store import TemplateStore
from flows.errors import AuthExpired, StoreError, StoreUnavailable
from flows.graph import FlowGraph
from flows.synthesizer import FlowSynthesizer, node_to_template
from models.schemas import (
    TEMPLATE_KINDS, Node, NodeKind, Position, Template, default_payload,
)
from utils.matching import trigger_keys

logger = structlog.get_logger()


NEW_NODE_TRIGGERS = ["novo"]
NEW_NODE_RESPONSE = "Nova resposta automática"


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation batch."""
    created: list[tuple[str, str]] = field(default_factory=list)   # (node_id, template_id)
    updated: list[tuple[str, str]] = field(default_factory=list)   # (node_id, template_id)
    skipped: list[str] = field(default_factory=list)               # node ids lacking triggers/response
    failed: list[tuple[str, str]] = field(default_factory=list)    # (node_id, error)
    halted: bool = False
    templates: list[Template] = field(default_factory=list)        # persisted list after the batch

    @property
    def ok(self) -> bool:
        return not self.failed and not self.halted

    def summary(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class FlowReconciler:

    def __init__(self, store: TemplateStore, project_id: str):
        self.store = store
        self.project_id = str(project_id)

    # ── Loading ───────────────────────────────────────

    async def load_flow(
        self, synthesizer: Optional[FlowSynthesizer] = None,
    ) -> tuple[FlowGraph, list[Template]]:
        """Fetch the project's templates and synthesize a graph from them."""
        synthesizer = synthesizer or FlowSynthesizer()
        templates = await self.store.list_templates(self.project_id)
        return synthesizer.synthesize(templates), templates

    # ── Identity resolution ───────────────────────────

    @staticmethod
    def resolve(
        graph: FlowGraph,
        node: Node,
        persisted: Sequence[Template],
        claimed: Optional[set[str]] = None,
        reserved: Optional[set[str]] = None,
    ) -> Optional[Template]:
        """
        The persisted template a node stands for, if any.

        `claimed` holds ids already written in this batch and is closed to
        both paths. `reserved` holds ids bound to other nodes and is only
        closed to the overlap path.
        """
        claimed = claimed or set()
        reserved = reserved or set()
        bound = graph.template_id_for(node.id)
        if bound is not None and bound not in claimed:
            match = next((t for t in persisted if t.id == bound), None)
            if match is not None:
                return match

        keys = trigger_keys(node.payload.triggers)
        if not keys:
            return None
        for template in persisted:
            if template.id is None or template.id in claimed or template.id in reserved:
                continue
            if keys & trigger_keys(template.triggers):
                return template
        return None

    # ── Batch reconciliation ──────────────────────────

    async def reconcile(self, graph: FlowGraph, persisted: Sequence[Template]) -> ReconcileReport:
        report = ReconcileReport()
        snapshot = graph.identities
        known = list(persisted)
        claimed: set[str] = set()
        nodes = graph.nodes_of_kind(*TEMPLATE_KINDS)
        reserved = {graph.template_id_for(n.id) for n in nodes} - {None}

        for node in nodes:
            if not node.payload.is_flattenable:
                report.skipped.append(node.id)
                logger.debug("flow_reconcile_node_skipped", node_id=node.id,
                             reason="missing triggers or response")
                continue

            own = graph.template_id_for(node.id)
            existing = self.resolve(graph, node, known, claimed, reserved - {own})
            try:
                if existing is not None:
                    desired = node_to_template(graph, node, order_index=existing.order_index)
                    desired = desired.model_copy(update={"id": existing.id})
                    await self.store.update_template(desired)
                    graph.bind_template(node.id, existing.id)
                    claimed.add(existing.id)
                    known = [desired if t.id == existing.id else t for t in known]
                    report.updated.append((node.id, existing.id))
                else:
                    draft = node_to_template(graph, node, order_index=len(known))
                    created = await self.store.create_template(
                        self.project_id, draft.model_copy(update={"id": None}),
                    )
                    graph.bind_template(node.id, created.id)
                    claimed.add(created.id)
                    known.append(created)
                    report.created.append((node.id, created.id))
            except AuthExpired as e:
                graph.restore_identities(snapshot)
                report.halted = True
                report.templates = known
                e.report = report
                logger.error("flow_reconcile_halted", project_id=self.project_id,
                             node_id=node.id, **report.summary())
                raise
            except StoreUnavailable as e:
                report.failed.append((node.id, str(e)))
                logger.error("flow_reconcile_node_failed", project_id=self.project_id,
                             node_id=node.id, error=str(e))

        report.templates = known
        logger.info("flow_reconciled", project_id=self.project_id, **report.summary())
        return report

    # ── Per-node operations ───────────────────────────

    async def delete_node(self, graph: FlowGraph, node_id: str) -> FlowGraph:
        """
        Delete a node and its persisted template. The store is called
        first; the graph only changes once the store has agreed.
        """
        graph.require(node_id)
        template_id = graph.template_id_for(node_id)

        if template_id is not None:
            try:
                await self.store.delete_template(template_id)
            except StoreUnavailable as e:
                if e.status_code != 404:
                    logger.error("flow_node_delete_failed", node_id=node_id,
                                 template_id=template_id, error=str(e))
                    raise
                logger.warning("flow_node_template_already_gone", node_id=node_id,
                               template_id=template_id)
            except StoreError as e:
                logger.error("flow_node_delete_failed", node_id=node_id,
                             template_id=template_id, error=str(e))
                raise

        graph.remove_node(node_id)
        logger.info("flow_node_deleted", node_id=node_id, template_id=template_id)
        return graph

    async def add_message_node(
        self,
        graph: FlowGraph,
        position: Optional[Position] = None,
        triggers: Optional[list[str]] = None,
        response: Optional[str] = None,
    ) -> Node:
        """
        Create a template in the store, then add a message node bound to
        it. Nothing is added to the graph if the store call fails.
        """
        template = Template(
            triggers=list(triggers or NEW_NODE_TRIGGERS),
            response=response or NEW_NODE_RESPONSE,
            active=True,
        )
        created = await self.store.create_template(self.project_id, template)

        node_id = f"template-{created.id}"
        suffix = 1
        while node_id in graph:
            suffix += 1
            node_id = f"template-{created.id}-{suffix}"

        payload = default_payload(NodeKind.MESSAGE).model_copy(update={
            "triggers": list(created.triggers),
            "response": created.response,
            "active": created.active,
        })
        graph.add_node(Node(id=node_id, kind=NodeKind.MESSAGE,
                            position=position or Position(), payload=payload))
        graph.bind_template(node_id, created.id)
        graph.set_selected(node_id)

        logger.info("flow_node_created", node_id=node_id, template_id=created.id)
        return graph.require(node_id)
