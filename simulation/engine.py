"""
Dialogue Simulation Engine — Plays a conversation against a flow so an
operator can test replies before they go live.

Replies are chosen with the same matching the production reply service
uses (first active template, list order, case-insensitive substring), so
what the simulator answers is what a real user would get.

States:
    IDLE ──start()──▶ AWAITING_INPUT ──submit()──▶ EVALUATING ──▶ AWAITING_INPUT
      any ──stop()──▶ TERMINATED ──start()──▶ AWAITING_INPUT

The reply delay is a real `asyncio.sleep`. `stop()` bumps the session
generation; a submit that wakes up under a newer generation drops its
reply instead of writing into a transcript it no longer owns.

Usage:
    sim = DialogueSimulator(graph, templates)
    sim.start()
    entry = await sim.submit("oi")
    entry.content   # → "🚌 Olá! Usuário Bem-vindo ..."
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional, Sequence

import structlog

from config.settings import SimulationConfig, get_settings
from flows.errors import InvalidState, NoStartNode
from flows.graph import FlowGraph
from flows.synthesizer import template_node_id
from models.schemas import Template, TranscriptEntry, TranscriptRole
from utils.matching import find_matching_template

logger = structlog.get_logger()


class SimulationState(str, Enum):
    IDLE = "idle"
    AWAITING_INPUT = "awaiting_input"
    EVALUATING = "evaluating"
    TERMINATED = "terminated"


class TraversalMode(str, Enum):
    FREE = "free"       # every turn rescans the whole template list
    GRAPH = "graph"     # only templates bound to the current node's successors


class DialogueSimulator:

    def __init__(
        self,
        graph: FlowGraph,
        templates: Sequence[Template],
        config: Optional[SimulationConfig] = None,
        traversal: Optional[TraversalMode] = None,
    ):
        self.graph = graph
        self.templates = list(templates)
        self.config = config or get_settings().simulation
        self.traversal = TraversalMode(traversal or self.config.traversal)

        self.state = SimulationState.IDLE
        self.transcript: list[TranscriptEntry] = []
        self.current_node_id: Optional[str] = None
        self._generation = 0

    # ── Lifecycle ─────────────────────────────────────

    def start(self) -> TranscriptEntry:
        """Open a fresh session and emit the greeting."""
        if self.state not in (SimulationState.IDLE, SimulationState.TERMINATED):
            raise InvalidState("start", self.state.value)
        start = self.graph.start_node()
        if start is None:
            raise NoStartNode()

        self._generation += 1
        self.transcript = []
        self.current_node_id = start.id
        greeting = self._append(TranscriptRole.BOT, self.config.greeting, node_id=start.id)
        self.state = SimulationState.AWAITING_INPUT

        logger.info("simulation_started", node_id=start.id, traversal=self.traversal.value,
                    templates=len(self.templates))
        return greeting

    def stop(self):
        """End the session. Any reply still waiting on its delay is dropped."""
        self._generation += 1
        self.state = SimulationState.TERMINATED
        self.transcript = []
        self.current_node_id = None
        logger.info("simulation_stopped")

    # ── Turns ─────────────────────────────────────────

    async def submit(self, user_text: str) -> Optional[TranscriptEntry]:
        """
        Process one user message and return the bot's reply entry.

        Returns None when the session was stopped while the reply was
        being delayed; the reply is then discarded.
        """
        if self.state != SimulationState.AWAITING_INPUT:
            raise InvalidState("submit", self.state.value)

        text = user_text.strip()
        generation = self._generation
        self._append(TranscriptRole.USER, text)
        self.state = SimulationState.EVALUATING

        template = find_matching_template(text, self._candidates())

        if self.config.reply_delay_seconds > 0:
            await asyncio.sleep(self.config.reply_delay_seconds)
        if generation != self._generation:
            logger.info("simulation_reply_discarded", text=text)
            return None

        if template is not None:
            node_id = self._node_for(template)
            if node_id is not None:
                self.current_node_id = node_id
            entry = self._append(TranscriptRole.BOT, self._render(template.response),
                                 template_id=template.id, node_id=node_id)
            logger.info("simulation_reply", text=text, template_id=template.id, node_id=node_id)
        else:
            entry = self._append(TranscriptRole.BOT, self.config.fallback)
            logger.info("simulation_fallback", text=text)

        self.state = SimulationState.AWAITING_INPUT
        return entry

    def reply_for(self, text: str) -> str:
        """The reply text for `text`, without touching session state."""
        template = find_matching_template(text.strip(), self._candidates())
        if template is None:
            return self.config.fallback
        return self._render(template.response)

    async def replay(self, inputs: Sequence[str]) -> list[TranscriptEntry]:
        """Run a whole scripted conversation from a fresh session."""
        if self.state not in (SimulationState.IDLE, SimulationState.TERMINATED):
            self.stop()
        self.start()
        for text in inputs:
            await self.submit(text)
        return list(self.transcript)

    # ── Internals ─────────────────────────────────────

    def _render(self, response: str) -> str:
        return response.replace("{name}", self.config.simulated_identity)

    def _candidates(self) -> list[Template]:
        if self.traversal == TraversalMode.FREE:
            return self.templates

        start = self.graph.start_node()
        node_ids = []
        if self.current_node_id in self.graph:
            node_ids.extend(n.id for n in self.graph.successors(self.current_node_id))
        if start is not None:
            node_ids.extend(n.id for n in self.graph.successors(start.id))

        allowed = {self.graph.template_id_for(node_id) for node_id in node_ids}
        allowed.discard(None)
        return [
            t for t in self.templates
            if t.id in allowed or (t.id is None and self._node_for(t) in node_ids)
        ]

    def _node_for(self, template: Template) -> Optional[str]:
        """The graph node standing for a template, bound or synthesized from this list."""
        node_id = self.graph.node_id_for_template(template.id)
        if node_id is not None or template.id is not None:
            return node_id
        index = next(i for i, t in enumerate(self.templates) if t is template)
        unsaved = template_node_id(template, index)
        return unsaved if unsaved in self.graph else None

    def _append(self, role: TranscriptRole, content: str,
                template_id: Optional[str] = None, node_id: Optional[str] = None) -> TranscriptEntry:
        entry = TranscriptEntry(role=role, content=content, template_id=template_id, node_id=node_id)
        self.transcript.append(entry)
        return entry
