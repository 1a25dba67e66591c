from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from ingestor.errors import DownstreamRejectedError, TransientError
from ingestor.models import CandidateRecord, StoreDecision, StoreResult, WebhookAction
from ingestor.processor import best_match

LOGGER = logging.getLogger("portfolio.ingestor.store")

DEFAULT_SIMILARITY_THRESHOLD = 90
DEFAULT_SOURCE_PRIORITY: dict[str, int] = {"custom": 0, "medium": 1, "github": 2}


class ProjectStore(Protocol):
    async def apply(self, candidate: CandidateRecord, action: str) -> StoreResult: ...


class HttpProjectStore:
    """Delivers candidates to the downstream projects API."""

    def __init__(self, base_url: str, *, api_key: str | None = None, timeout: float = 15) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"x-api-key": self.api_key}

    async def apply(self, candidate: CandidateRecord, action: str) -> StoreResult:
        body = {**candidate.to_project_input(), "action": action}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method="POST",
                    url=f"{self.base_url}/projects/ingest",
                    json=body,
                    headers=self.headers(),
                )
        except httpx.RequestError as exc:
            raise TransientError(f"projects API is unavailable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"projects API returned {response.status_code}")
        if response.status_code >= 400:
            detail = payload.get("detail", "request rejected") if isinstance(payload, dict) else ""
            raise DownstreamRejectedError(response.status_code, str(detail))

        try:
            return StoreResult.model_validate(payload)
        except ValueError as exc:
            raise TransientError("projects API returned an unreadable decision") from exc


@dataclass
class StoredProject:
    project_id: str
    name: str
    source_type: str
    url: str | None = None
    description: str = ""
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemoryProjectStore:
    """Process-local project catalog that decides create/update/skip by title similarity.

    A near-duplicate from a lower-priority source never overwrites a record
    owned by a higher-priority one.
    """

    def __init__(
        self,
        *,
        similarity_threshold: int = DEFAULT_SIMILARITY_THRESHOLD,
        source_priority: dict[str, int] | None = None,
    ) -> None:
        self.similarity_threshold = similarity_threshold
        self.source_priority = dict(source_priority or DEFAULT_SOURCE_PRIORITY)
        self._projects: dict[str, StoredProject] = {}
        self._lock = threading.RLock()

    def list_projects(self) -> list[StoredProject]:
        with self._lock:
            return list(self._projects.values())

    def _find_similar(self, name: str) -> tuple[StoredProject, int] | None:
        by_name = {project.name: project for project in self._projects.values()}
        match = best_match(name, by_name)
        if match is None or match[1] < self.similarity_threshold:
            return None
        return by_name[match[0]], match[1]

    async def apply(self, candidate: CandidateRecord, action: str) -> StoreResult:
        with self._lock:
            found = self._find_similar(candidate.name)

            if action == WebhookAction.DELETE:
                if found is None:
                    return StoreResult(decision=StoreDecision.SKIP)
                project, score = found
                del self._projects[project.project_id]
                return StoreResult(
                    decision=StoreDecision.DELETE,
                    project_id=project.project_id,
                    matched_name=project.name,
                    similarity=score,
                )

            if found is None:
                project = StoredProject(
                    project_id=str(uuid.uuid4()),
                    name=candidate.name,
                    source_type=candidate.source_type,
                    url=candidate.url,
                    description=candidate.description,
                    tags=list(candidate.tags),
                    metadata=dict(candidate.metadata),
                )
                self._projects[project.project_id] = project
                return StoreResult(decision=StoreDecision.CREATE, project_id=project.project_id)

            project, score = found
            if self._priority(project.source_type) > self._priority(candidate.source_type):
                return StoreResult(
                    decision=StoreDecision.SKIP,
                    project_id=project.project_id,
                    matched_name=project.name,
                    similarity=score,
                )

            project.url = candidate.url or project.url
            project.description = candidate.description or project.description
            project.tags = list(dict.fromkeys([*project.tags, *candidate.tags]))
            project.metadata = {**project.metadata, **candidate.metadata}
            project.source_type = candidate.source_type
            return StoreResult(
                decision=StoreDecision.UPDATE,
                project_id=project.project_id,
                matched_name=project.name,
                similarity=score,
            )

    def _priority(self, source_type: str) -> int:
        return self.source_priority.get(source_type, 0)
