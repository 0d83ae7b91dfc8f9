"""
Core data models for the FlowDesk flow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeKind(str, Enum):
    """The role a node plays in a conversation flow."""
    START = "start"                 # entry point
    MESSAGE = "message"             # auto-reply backed by a template
    CONDITION = "condition"         # branch fired programmatically
    OPTIONS = "options"             # menu of choices
    HUMAN = "human"                 # hand-off to an operator
    END = "end"                     # terminal
    UNCLASSIFIED = "unclassified"   # template no classification rule claimed


# Kinds whose payload carries a persistable trigger/response pair
TEMPLATE_KINDS = frozenset({NodeKind.MESSAGE, NodeKind.HUMAN, NodeKind.UNCLASSIFIED})


class TranscriptRole(str, Enum):
    USER = "user"
    BOT = "bot"


# ──────────────────────────────────────────────────────────────
#  Template — a stored trigger-set/response pair
# ──────────────────────────────────────────────────────────────

class Template(BaseModel):
    """
    An auto-reply template as stored in the Template Store.

    `id` is None until the store assigns one. Store ids are numeric on
    the wire and normalized to strings here.
    """
    id: Optional[str] = None
    triggers: list[str] = []                  # case-insensitive match keys
    response: str = ""                        # may contain {name}
    active: bool = True
    order_index: int = 0

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Template":
        """Build a Template from a store wire record."""
        triggers = record.get("trigger_words", record.get("triggers", []))
        if isinstance(triggers, str):
            triggers = [triggers]
        return cls(
            id=record.get("id"),
            triggers=list(triggers or []),
            response=record.get("response_text", record.get("response", "")) or "",
            active=bool(record.get("is_active", record.get("active", True))),
            order_index=int(record.get("order_index", 0) or 0),
        )

    def to_record(self) -> dict[str, Any]:
        """Wire payload for create/update calls (id travels in the URL)."""
        return {
            "trigger_words": list(self.triggers),
            "response_text": self.response,
            "is_active": self.active,
            "order_index": self.order_index,
        }


# ──────────────────────────────────────────────────────────────
#  Project — a named template collection
# ──────────────────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    name: str
    description: Optional[str] = ""
    is_active: bool = True
    is_default: bool = False
    created_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        return str(value)


# ──────────────────────────────────────────────────────────────
#  Flow graph records
# ──────────────────────────────────────────────────────────────

class Position(BaseModel):
    """Editor layout coordinate. Carries no semantic weight."""
    x: float = 0
    y: float = 0


class Predicate(BaseModel):
    """One test in a condition node."""
    field: str = ""
    operator: str = "contains"
    value: str = ""


class Choice(BaseModel):
    """One entry in an options node."""
    id: str
    label: str = ""
    value: str = ""


class NodePayload(BaseModel):
    """
    Kind-dependent node data.

    message / human / unclassified: title, triggers, response, active
    condition:                      title, predicates
    options:                        title, choices
    start / end:                    title, description
    """
    title: str = ""
    description: Optional[str] = None
    triggers: Optional[list[str]] = None
    response: Optional[str] = None
    active: Optional[bool] = None
    predicates: Optional[list[Predicate]] = None
    choices: Optional[list[Choice]] = None

    @property
    def is_flattenable(self) -> bool:
        has_trigger = any(t and t.strip() for t in self.triggers or [])
        return has_trigger and bool((self.response or "").strip())


class Node(BaseModel):
    id: str
    kind: NodeKind
    position: Position = Field(default_factory=Position)
    payload: NodePayload = Field(default_factory=NodePayload)
    outgoing: list[str] = []                  # mirrors connections sourced here


class Connection(BaseModel):
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None

    @property
    def pair(self) -> tuple[str, str]:
        return (self.source, self.target)


def default_payload(kind: NodeKind) -> NodePayload:
    """Editor defaults for a freshly added node of the given kind."""
    if kind == NodeKind.START:
        return NodePayload(title="Início", description="Conversa iniciada")
    if kind == NodeKind.MESSAGE:
        return NodePayload(title="Novo Template", triggers=[""], response="", active=True)
    if kind == NodeKind.CONDITION:
        return NodePayload(title="Condição",
                           predicates=[Predicate(field="", operator="contains", value="")])
    if kind == NodeKind.OPTIONS:
        return NodePayload(title="Opções", choices=[Choice(id="1", label="Opção 1", value="1")])
    if kind == NodeKind.HUMAN:
        return NodePayload(title="Atendimento Humano", description="Transferir para humano")
    if kind == NodeKind.END:
        return NodePayload(title="Fim", description="Conversa finalizada")
    return NodePayload(title="Nó", description="")


# ──────────────────────────────────────────────────────────────
#  Simulation transcript
# ──────────────────────────────────────────────────────────────

class TranscriptEntry(BaseModel):
    """One line of a simulated conversation."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: TranscriptRole
    content: str
    template_id: Optional[str] = None
    node_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
