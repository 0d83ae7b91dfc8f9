"""
Built-in seed content: the bus-ticket sales project created on first run
and the generic starter flow offered by the editor.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import structlog
import yaml

from flows.graph import FlowGraph
from flows.serialization import import_flow
from models.schemas import Project, Template

if TYPE_CHECKING:
    from backend.store import TemplateStore

logger = structlog.get_logger()

SEEDS_PATH = Path(__file__).parent / "seeds.yaml"


@lru_cache(maxsize=1)
def _load_seeds() -> dict[str, Any]:
    with open(SEEDS_PATH, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def default_project_info() -> tuple[str, str]:
    project = _load_seeds()["default_project"]
    return project["name"], project["description"]


def default_project_templates() -> list[Template]:
    """The bus-ticket templates, unsaved and in menu order."""
    return [
        Template(
            triggers=list(raw["triggers"]),
            response=raw["response"],
            active=raw.get("active", True),
            order_index=raw.get("order_index", i + 1),
        )
        for i, raw in enumerate(_load_seeds()["default_project"]["templates"])
    ]


def starter_flow() -> FlowGraph:
    """A fresh copy of the generic starter flow."""
    return import_flow(_load_seeds()["starter_flow"])


async def ensure_default_project(store: "TemplateStore") -> Project:
    """
    Make sure the store has a default project to open.

    With no projects at all, the bus-ticket project is created, made
    default and filled with its templates in order. With projects but no
    default, the first one is promoted. Otherwise nothing is written.
    """
    projects = await store.list_projects()
    default: Optional[Project] = next((p for p in projects if p.is_default), None)
    if default is not None:
        return default

    if projects:
        first = projects[0]
        await store.set_default_project(first.id)
        logger.info("default_project_promoted", project_id=first.id, name=first.name)
        return first.model_copy(update={"is_default": True})

    name, description = default_project_info()
    project = await store.create_project(name, description, is_active=True, is_default=True)
    await store.set_default_project(project.id)
    for template in default_project_templates():
        await store.create_template(project.id, template)

    logger.info("default_project_created", project_id=project.id, name=project.name)
    return project.model_copy(update={"is_default": True})
