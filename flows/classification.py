"""
Template Classification Policy — Decides which role each template plays
when a flat template list is synthesized into a flow graph.

The heuristics are data, not buried conditionals: a policy is an ordered
list of ClassificationRule records. Each rule is a predicate over a
template's triggers plus the role it assigns.

Two kinds of rule exist:
  - claiming rules (applies_to empty) take templates nobody has claimed
    yet, in list order;
  - refining rules (applies_to = some role) re-tag templates already
    claimed by that role, e.g. "the operator option among the menu
    options is a human hand-off".

Templates no claiming rule takes are reported as unclassified.

Rule predicates:
    any_of    — trigger-set overlap, case-insensitive exact token
    contains  — some trigger contains the substring (case-sensitive)
    endswith  — some trigger ends with the suffix (case-sensitive)
    none_of   — veto: trigger-set overlap disqualifies the template
A rule matches when at least one positive predicate holds and no veto does.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

import structlog
from pydantic import BaseModel

from models.schemas import Template
from utils.matching import numeric_trigger, overlaps

logger = structlog.get_logger()


GREETING_VOCABULARY = ["oi", "olá", "menu", "dia", "tarde", "noite", "bom dia", "boa tarde", "boa noite"]
MENU_DIGITS = ["1", "2", "3", "4", "5"]
PURCHASE_TRIGGERS = ["comprar", "passagem", "1"]
OPERATOR_TRIGGERS = ["3", "operador", "atendente", "humano", "pessoa"]


class Role(str, Enum):
    WELCOME = "welcome"           # greeting, entry reply
    MENU_OPTION = "menu_option"   # numbered menu choice
    SPECIAL = "special"           # programmatically-fired trigger
    HUMAN = "human"               # hand-off to an operator


# ──────────────────────────────────────────────────────────────
#  Rule
# ──────────────────────────────────────────────────────────────

class ClassificationRule(BaseModel):
    """One predicate→role mapping."""
    role: Role
    any_of: list[str] = []
    contains: list[str] = []
    endswith: list[str] = []
    none_of: list[str] = []
    applies_to: Optional[Role] = None        # refine an earlier role instead of claiming
    first_only: bool = False                 # take at most one template
    sort_numeric: bool = False               # order matches by their numeric any_of trigger
    attach_to_any_of: list[str] = []         # topology hint: parent must overlap these
    description: str = ""

    def matches(self, template: Template) -> bool:
        triggers = template.triggers
        if self.none_of and overlaps(triggers, self.none_of):
            return False
        if self.any_of and overlaps(triggers, self.any_of):
            return True
        if self.contains and any(s in t for t in triggers for s in self.contains):
            return True
        if self.endswith and any(t.endswith(s) for t in triggers for s in self.endswith):
            return True
        return False

    def sort_key(self, template: Template) -> int:
        return numeric_trigger(template.triggers, self.any_of) or 0


# ──────────────────────────────────────────────────────────────
#  Classification Result
# ──────────────────────────────────────────────────────────────

@dataclass
class Classification:
    """Role assignments for one template list. Lists keep rule order."""
    assignments: dict[Role, list[Template]] = field(default_factory=dict)
    unclassified: list[Template] = field(default_factory=list)

    def of(self, role: Role) -> list[Template]:
        return self.assignments.get(role, [])

    def first(self, role: Role) -> Optional[Template]:
        members = self.of(role)
        return members[0] if members else None


# ──────────────────────────────────────────────────────────────
#  Policy
# ──────────────────────────────────────────────────────────────

class ClassificationPolicy:
    """Ordered rule list. Earlier claiming rules win."""

    def __init__(self, rules: Sequence[ClassificationRule]):
        errors = self._validate(rules)
        if errors:
            logger.error("invalid_classification_policy", errors=errors)
            raise ValueError(f"Invalid classification policy: {'; '.join(errors)}")
        self.rules = list(rules)

    @classmethod
    def from_config(cls, config: list[dict[str, Any]]) -> "ClassificationPolicy":
        """Load rules from YAML config. An empty list means the built-in rules."""
        if not config:
            return default_policy()
        policy = cls([ClassificationRule(**raw) for raw in config])
        logger.info("classification_policy_loaded", rules=len(policy.rules))
        return policy

    def rule_for(self, role: Role) -> Optional[ClassificationRule]:
        return next((r for r in self.rules if r.role == role), None)

    def classify(self, templates: Sequence[Template]) -> Classification:
        result = Classification()
        remaining = list(templates)

        for rule in self.rules:
            if rule.applies_to is not None:
                pool = result.of(rule.applies_to)
                picked = [t for t in pool if rule.matches(t)]
                if rule.first_only:
                    picked = picked[:1]
                result.assignments[rule.role] = picked
                continue

            picked = [t for t in remaining if rule.matches(t)]
            if rule.first_only:
                picked = picked[:1]
            if rule.sort_numeric:
                # sorted() is stable, so ties keep list order
                picked = sorted(picked, key=rule.sort_key)
            claimed = {id(t) for t in picked}
            remaining = [t for t in remaining if id(t) not in claimed]
            result.assignments[rule.role] = result.of(rule.role) + picked

        result.unclassified = remaining
        return result

    @staticmethod
    def _validate(rules: Sequence[ClassificationRule]) -> list[str]:
        errors = []
        claimed_roles: set[Role] = set()
        for i, rule in enumerate(rules):
            if not (rule.any_of or rule.contains or rule.endswith):
                errors.append(f"rule[{i}] ({rule.role.value}) has no positive predicate")
            if rule.applies_to is not None:
                if rule.applies_to not in claimed_roles:
                    errors.append(
                        f"rule[{i}] refines '{rule.applies_to.value}' before any rule claims it"
                    )
            else:
                claimed_roles.add(rule.role)
        return errors


def default_policy() -> ClassificationPolicy:
    """The built-in rules for numbered-menu chatbots."""
    return ClassificationPolicy([
        ClassificationRule(
            role=Role.WELCOME,
            any_of=GREETING_VOCABULARY,
            first_only=True,
            description="First template answering a greeting",
        ),
        ClassificationRule(
            role=Role.MENU_OPTION,
            any_of=MENU_DIGITS,
            none_of=GREETING_VOCABULARY,
            sort_numeric=True,
            description="Numbered menu choices",
        ),
        ClassificationRule(
            role=Role.SPECIAL,
            contains=["CIDADE_"],
            endswith=["_DISPONIVEL", "_NAO_DISPONIVEL"],
            attach_to_any_of=PURCHASE_TRIGGERS,
            description="Triggers fired by the system, not typed by users",
        ),
        ClassificationRule(
            role=Role.HUMAN,
            applies_to=Role.MENU_OPTION,
            any_of=OPERATOR_TRIGGERS,
            first_only=True,
            description="Menu option that hands off to an operator",
        ),
    ])
