"""
Template Store — Client for the dashboard's project/template HTTP API.

The store is the only place templates persist. Every call carries a bearer
credential. Failures are mapped onto the flow engine's error taxonomy:

    401                       → AuthExpired (never retried)
    transport error, 5xx      → retried with backoff, then StoreUnavailable
    any other 4xx, bad body   → StoreUnavailable

Responses are accepted bare or wrapped ({"projects": [...]},
{"messages": [...]}, {"project": {...}}, {"autoMessage": {...}}).
"""
from __future__ import annotations

import abc
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import StoreConfig, get_settings
from flows.errors import AuthExpired, StoreError, StoreUnavailable
from models.schemas import Project, Template

logger = structlog.get_logger()


class TemplateStore(abc.ABC):
    """Abstract base for all template store clients."""

    @abc.abstractmethod
    async def list_projects(self) -> list[Project]:
        ...

    @abc.abstractmethod
    async def create_project(
        self, name: str, description: str = "", is_active: bool = True, is_default: bool = False,
    ) -> Project:
        ...

    @abc.abstractmethod
    async def set_default_project(self, project_id: str) -> None:
        ...

    @abc.abstractmethod
    async def list_templates(self, project_id: str) -> list[Template]:
        """Templates of a project, in store order."""
        ...

    @abc.abstractmethod
    async def create_template(self, project_id: str, template: Template) -> Template:
        """Persist a new template. The returned copy carries the assigned id."""
        ...

    @abc.abstractmethod
    async def update_template(self, template: Template) -> Template:
        ...

    @abc.abstractmethod
    async def delete_template(self, template_id: str) -> None:
        ...

    async def close(self):
        pass


# ──────────────────────────────────────────────────────────────
#  REST client
# ──────────────────────────────────────────────────────────────

class _TransientFailure(Exception):
    """A failure worth retrying (network trouble or a 5xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _unwrap(result: Any, *keys: str) -> Any:
    if isinstance(result, dict):
        for key in keys:
            if result.get(key) is not None:
                return result[key]
    return result


class RESTTemplateStore(TemplateStore):

    def __init__(self, config: StoreConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().store
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={
                    "Authorization": f"Bearer {self.config.token}",
                    "Content-Type": "application/json",
                },
                timeout=self.config.timeout_seconds,
                transport=self.transport,
            )
        return self.client

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        client = await self._get_client()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=wait_exponential(multiplier=min(1.0, self.config.retry_max_wait),
                                  max=self.config.retry_max_wait),
            retry=retry_if_exception_type(_TransientFailure),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(client, method, path, **kwargs)
        except _TransientFailure as e:
            logger.error("template_store_request_failed",
                         method=method, path=path, status_code=e.status_code, error=str(e))
            raise StoreUnavailable(str(e), e.status_code) from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise StoreUnavailable(f"{method} {path} returned a non-JSON body",
                                   response.status_code) from e

    async def _send(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise _TransientFailure(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status == 401:
            logger.warning("template_store_auth_expired", method=method, path=path)
            raise AuthExpired()
        if status >= 500:
            raise _TransientFailure(f"{method} {path} returned {status}", status)
        if status >= 400:
            logger.error("template_store_request_rejected", method=method, path=path, status_code=status)
            raise StoreUnavailable(f"{method} {path} returned {status}", status)
        return response

    # ── Projects ──────────────────────────────────────

    async def list_projects(self) -> list[Project]:
        result = _unwrap(await self._request("GET", "/projects"), "projects", "data")
        return [Project(**raw) for raw in result or []]

    async def create_project(
        self, name: str, description: str = "", is_active: bool = True, is_default: bool = False,
    ) -> Project:
        result = await self._request("POST", "/projects", json={
            "name": name,
            "description": description,
            "is_active": is_active,
            "is_default": is_default,
        })
        project = Project(**_unwrap(result, "project", "data"))
        logger.info("project_created", project_id=project.id, name=project.name)
        return project

    async def set_default_project(self, project_id: str) -> None:
        await self._request("POST", f"/projects/{project_id}/set-default")
        logger.info("project_set_default", project_id=project_id)

    # ── Templates ─────────────────────────────────────

    async def list_templates(self, project_id: str) -> list[Template]:
        result = _unwrap(await self._request("GET", f"/projects/{project_id}/messages"), "messages", "data")
        return [Template.from_record(raw) for raw in result or []]

    async def create_template(self, project_id: str, template: Template) -> Template:
        result = await self._request("POST", f"/projects/{project_id}/messages", json=template.to_record())
        record = _unwrap(result, "autoMessage", "message", "data")
        if not isinstance(record, dict) or record.get("id") is None:
            raise StoreUnavailable("Template store did not return an id for the created template")
        created = template.model_copy(update={"id": str(record["id"])})
        logger.info("template_created", project_id=project_id, template_id=created.id,
                    triggers=created.triggers)
        return created

    async def update_template(self, template: Template) -> Template:
        if template.id is None:
            raise ValueError("Cannot update a template that has no id")
        result = await self._request("PUT", f"/messages/{template.id}", json=template.to_record())
        record = _unwrap(result, "autoMessage", "message", "data")
        logger.info("template_updated", template_id=template.id)
        if isinstance(record, dict) and "trigger_words" in record:
            return Template.from_record(record)
        return template

    async def delete_template(self, template_id: str) -> None:
        await self._request("DELETE", f"/messages/{template_id}")
        logger.info("template_deleted", template_id=template_id)

    async def close(self):
        if self.client:
            await self.client.aclose()


# ──────────────────────────────────────────────────────────────
#  In-memory store
# ──────────────────────────────────────────────────────────────

class InMemoryTemplateStore(TemplateStore):
    """
    Template store kept in process, for development and testing.

    `calls` records every operation in order. `fail_next()` queues an
    error to raise from a coming operation, to exercise recovery paths.
    """

    def __init__(self):
        self._projects: dict[str, Project] = {}
        self._templates: dict[str, list[Template]] = {}      # project_id → templates
        self._next_id = 1
        self._failures: deque[list] = deque()                 # [calls_to_skip, error]
        self.calls: list[tuple[Any, ...]] = []

    def _assign_id(self) -> str:
        assigned = str(self._next_id)
        self._next_id += 1
        return assigned

    def fail_next(self, error: StoreError, after: int = 0):
        """Raise `error` from the operation that follows `after` successful ones."""
        self._failures.append([after, error])

    def _record(self, *call: Any):
        self.calls.append(call)
        if self._failures:
            pending = self._failures[0]
            if pending[0] > 0:
                pending[0] -= 1
                return
            self._failures.popleft()
            raise pending[1]

    def _find(self, template_id: str) -> tuple[str, int]:
        for project_id, templates in self._templates.items():
            for i, t in enumerate(templates):
                if t.id == str(template_id):
                    return project_id, i
        raise StoreUnavailable(f"Template {template_id} not found", 404)

    def seed(self, project_id: str, templates: list[Template]) -> list[Template]:
        """Load templates directly (no call recorded); assigns ids where missing."""
        if project_id not in self._projects:
            self._projects[project_id] = Project(id=project_id, name=f"Projeto {project_id}")
        stored = [t if t.id is not None else t.model_copy(update={"id": self._assign_id()})
                  for t in templates]
        self._templates.setdefault(project_id, []).extend(stored)
        return list(stored)

    async def list_projects(self) -> list[Project]:
        self._record("list_projects")
        return list(self._projects.values())

    async def create_project(
        self, name: str, description: str = "", is_active: bool = True, is_default: bool = False,
    ) -> Project:
        self._record("create_project", name)
        project = Project(
            id=self._assign_id(), name=name, description=description,
            is_active=is_active, is_default=is_default,
            created_at=datetime.now(timezone.utc),
        )
        self._projects[project.id] = project
        self._templates[project.id] = []
        return project

    async def set_default_project(self, project_id: str) -> None:
        self._record("set_default_project", project_id)
        if project_id not in self._projects:
            raise StoreUnavailable(f"Project {project_id} not found", 404)
        for pid, project in self._projects.items():
            project.is_default = pid == project_id

    async def list_templates(self, project_id: str) -> list[Template]:
        self._record("list_templates", project_id)
        return [t.model_copy(deep=True) for t in self._templates.get(project_id, [])]

    async def create_template(self, project_id: str, template: Template) -> Template:
        self._record("create_template", project_id, tuple(template.triggers))
        if project_id not in self._projects:
            raise StoreUnavailable(f"Project {project_id} not found", 404)
        created = template.model_copy(deep=True, update={"id": self._assign_id()})
        self._templates[project_id].append(created)
        return created.model_copy(deep=True)

    async def update_template(self, template: Template) -> Template:
        self._record("update_template", template.id, tuple(template.triggers))
        project_id, i = self._find(template.id)
        self._templates[project_id][i] = template.model_copy(deep=True)
        return template.model_copy(deep=True)

    async def delete_template(self, template_id: str) -> None:
        self._record("delete_template", str(template_id))
        project_id, i = self._find(template_id)
        del self._templates[project_id][i]


def create_template_store(config: StoreConfig = None) -> TemplateStore:
    """Factory function to create the appropriate template store."""
    config = config or get_settings().store
    if config.type == "rest" and config.base_url:
        return RESTTemplateStore(config)
    logger.warning("using_memory_template_store", reason="no store configured or base_url empty")
    return InMemoryTemplateStore()
