"""
Shared trigger matching — used by the Synthesizer, the Reconciler and the
Simulation Engine.

Two distinct notions of "match" exist and must not be confused:
  - reply matching: a trigger fires when it occurs anywhere inside the
    user's text (case-insensitive substring), exactly as the production
    message-reply service does it;
  - trigger-set overlap: two trigger lists share at least one key
    (case-insensitive exact token), used for classification and identity.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

from models.schemas import Template


def normalize(trigger: str) -> str:
    return trigger.strip().lower()


def trigger_keys(triggers: Optional[Iterable[str]]) -> set[str]:
    """Lower-cased, stripped, non-empty trigger keys."""
    return {normalize(t) for t in (triggers or []) if t and t.strip()}


def overlaps(triggers: Optional[Iterable[str]], vocabulary: Iterable[str]) -> bool:
    """True when any trigger equals (case-insensitive) a vocabulary entry."""
    return bool(trigger_keys(triggers) & trigger_keys(vocabulary))


def text_matches(text: str, triggers: Optional[Iterable[str]]) -> bool:
    """Reply matching: does any trigger occur inside `text`?"""
    haystack = text.lower()
    for trigger in triggers or []:
        # An empty trigger would match every message
        if trigger and trigger.lower() in haystack:
            return True
    return False


def find_matching_template(text: str, templates: Sequence[Template]) -> Optional[Template]:
    """
    First active template (list order) with a trigger inside `text`.
    No priority beyond list order.
    """
    for template in templates:
        if template.active and text_matches(text, template.triggers):
            return template
    return None


def numeric_trigger(triggers: Optional[Iterable[str]], digits: Iterable[str]) -> Optional[int]:
    """The first trigger (in trigger order) that is one of `digits`, as an int."""
    allowed = trigger_keys(digits)
    for trigger in triggers or []:
        key = normalize(trigger)
        if key in allowed and key.isdigit():
            return int(key)
    return None
