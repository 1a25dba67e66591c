from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CANDIDATE_NAME_LIMIT = 50


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookSource(StrEnum):
    GITHUB = "github"
    MEDIUM = "medium"
    CUSTOM = "custom"


class WebhookAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ItemKind(StrEnum):
    PROJECT = "project"
    BLOG = "blog"


class QueueStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"


class StoreDecision(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    DELETE = "delete"


class WebhookItem(ApiModel):
    external_id: str = Field(..., min_length=1)
    kind: ItemKind = ItemKind.PROJECT
    title: str
    description: str = ""
    content: str | None = None
    tags: list[str] = Field(default_factory=list)
    url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be empty")
        return value.strip()


class WebhookEnvelope(ApiModel):
    webhook_id: str = Field(..., min_length=1)
    source: WebhookSource = WebhookSource.CUSTOM
    action: WebhookAction = WebhookAction.CREATE
    items: list[WebhookItem] = Field(default_factory=list)


class CandidateRecord(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str = Field(..., min_length=1, max_length=CANDIDATE_NAME_LIMIT)
    source_type: str
    url: str | None = None
    tags: list[str] = Field(default_factory=list)
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_project_input(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "url": self.url or "",
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "source": self.source_type,
        }


class QueueEntry(ApiModel):
    id: str
    payload: dict[str, Any]
    attempts: int = 0
    max_attempts: int
    status: QueueStatus = QueueStatus.PENDING
    created_at: str
    next_attempt_at: float
    last_attempt_at: str | None = None
    last_error: str | None = None


class DeadLetterEntry(ApiModel):
    id: str
    payload: dict[str, Any]
    final_error: str
    attempts: int
    created_at: str
    moved_at: str


class QueueStats(ApiModel):
    queue_size: int
    dlq_size: int
    total_attempts: int
    is_processing: bool


class ProcessSummary(ApiModel):
    successful: int = 0
    failed: int = 0


class IngestResults(ApiModel):
    indexed: int = 0
    skipped: int = 0
    failed: int = 0


class IngestResponse(ApiModel):
    webhook_id: str
    processed: int
    results: IngestResults


class DeadLetterActionResponse(ApiModel):
    success: bool
    id: str
    message: str


class StoreResult(ApiModel):
    decision: StoreDecision
    project_id: str | None = None
    matched_name: str | None = None
    similarity: int | None = None
