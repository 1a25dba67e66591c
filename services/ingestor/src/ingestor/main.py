from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ingestor.errors import AuthenticationError, PayloadValidationError
from ingestor.models import (
    CandidateRecord,
    DeadLetterActionResponse,
    DeadLetterEntry,
    IngestResponse,
    IngestResults,
    QueueStats,
    WebhookAction,
    WebhookEnvelope,
    WebhookItem,
    WebhookSource,
)
from ingestor.observability import MetricsSnapshot, MetricsStore, configure_logging, install_observability
from ingestor.processor import (
    process_article,
    process_generic_item,
    process_push_event,
    validate_article,
)
from ingestor.queue import WebhookQueue
from ingestor.repository import QueueRepository
from ingestor.settings import IngestorSettings
from ingestor.store import HttpProjectStore, InMemoryProjectStore, ProjectStore
from ingestor.verifier import verify_bearer_token, verify_signature

LOGGER = logging.getLogger("portfolio.ingestor")

SIGNATURE_HEADER = "x-webhook-signature"
GITHUB_SIGNATURE_HEADER = "x-hub-signature-256"


def build_project_store(settings: IngestorSettings) -> ProjectStore:
    if settings.projects_api_url:
        return HttpProjectStore(settings.projects_api_url, api_key=settings.projects_api_key)
    return InMemoryProjectStore(similarity_threshold=settings.similarity_threshold)


def build_queue(settings: IngestorSettings) -> WebhookQueue:
    repository = QueueRepository(settings.queue_db_path) if settings.queue_db_path else None
    return WebhookQueue(
        max_attempts=settings.max_attempts,
        backoff_schedule=settings.backoff_schedule,
        attempt_timeout=settings.attempt_timeout_seconds,
        repository=repository,
    )


def require_signature(raw_body: bytes, signature: str | None, secret: str | None) -> None:
    if not secret:
        raise AuthenticationError("Webhook secret not configured")
    if not signature:
        raise AuthenticationError("Missing signature")
    if not verify_signature(raw_body, signature, secret):
        raise AuthenticationError("Invalid signature")


def parse_json_body(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except ValueError as exc:
        raise PayloadValidationError("Request body must be valid JSON") from exc


def queue_payload(
    *,
    webhook_id: str,
    source: str,
    action: str,
    candidate: CandidateRecord,
    external_id: str | None = None,
) -> dict[str, Any]:
    return {
        "webhookId": webhook_id,
        "source": source,
        "action": action,
        "externalId": external_id,
        "candidate": candidate.model_dump(by_alias=True),
    }


def create_app(
    *,
    settings: IngestorSettings | None = None,
    queue: WebhookQueue | None = None,
    store: ProjectStore | None = None,
) -> FastAPI:
    resolved_settings = settings or IngestorSettings.from_env()
    configure_logging(resolved_settings.log_level)
    webhook_queue = queue or build_queue(resolved_settings)
    project_store = store or build_project_store(resolved_settings)
    metrics = MetricsStore()

    async def deliver(payload: dict[str, Any]) -> None:
        candidate = CandidateRecord.model_validate(payload["candidate"])
        action = str(payload.get("action") or WebhookAction.CREATE.value)
        result = await project_store.apply(candidate, action)
        LOGGER.info(
            json.dumps(
                {
                    "event": "candidate_applied",
                    "webhook_id": payload.get("webhookId"),
                    "source": payload.get("source"),
                    "name": candidate.name,
                    "decision": result.decision.value,
                    "project_id": result.project_id,
                    "similarity": result.similarity,
                }
            )
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repository = webhook_queue.repository
        if repository is not None:
            await run_in_threadpool(repository.connect)
            await webhook_queue.restore()
        webhook_queue.set_processor(deliver)
        app.state.queue = webhook_queue
        app.state.store = project_store
        app.state.settings = resolved_settings
        if resolved_settings.autostart:
            webhook_queue.start_processing(resolved_settings.process_interval_seconds)
        try:
            yield
        finally:
            await webhook_queue.shutdown()
            if repository is not None:
                await run_in_threadpool(repository.close)

    app = FastAPI(title="Portfolio Ingestor", version="0.3.0", lifespan=lifespan)
    install_observability(app, metrics)

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(PayloadValidationError)
    async def validation_error_handler(request: Request, exc: PayloadValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "ingestor"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics_snapshot() -> MetricsSnapshot:
        return metrics.snapshot()

    @app.post("/webhooks/github", response_model=IngestResponse, status_code=202)
    async def ingest_github(request: Request) -> IngestResponse:
        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER) or request.headers.get(
            GITHUB_SIGNATURE_HEADER
        )
        require_signature(raw_body, signature, resolved_settings.github_secret)
        webhook_id = request.headers.get("x-github-delivery") or str(uuid.uuid4())

        if request.headers.get("x-github-event") == "ping":
            return IngestResponse(webhook_id=webhook_id, processed=0, results=IngestResults())

        candidate = process_push_event(parse_json_body(raw_body))
        if candidate is None:
            raise PayloadValidationError("Push event requires repository name and url")

        await webhook_queue.add_to_queue(
            queue_payload(
                webhook_id=webhook_id,
                source=WebhookSource.GITHUB.value,
                action=WebhookAction.CREATE.value,
                candidate=candidate,
            )
        )
        return IngestResponse(webhook_id=webhook_id, processed=1, results=IngestResults(indexed=1))

    @app.post("/webhooks/medium", response_model=IngestResponse, status_code=202)
    async def ingest_medium(request: Request) -> IngestResponse:
        raw_body = await request.body()
        require_signature(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            resolved_settings.medium_secret,
        )
        webhook_id = request.headers.get("x-webhook-id") or str(uuid.uuid4())
        body = parse_json_body(raw_body)

        if isinstance(body, dict) and isinstance(body.get("articles"), list):
            articles = body["articles"]
        elif validate_article(body):
            articles = [body]
        else:
            raise PayloadValidationError("Article requires title and link")

        results = IngestResults()
        for article in articles:
            candidate = process_article(article)
            if candidate is None:
                results.failed += 1
                continue
            await webhook_queue.add_to_queue(
                queue_payload(
                    webhook_id=webhook_id,
                    source=WebhookSource.MEDIUM.value,
                    action=WebhookAction.CREATE.value,
                    candidate=candidate,
                )
            )
            results.indexed += 1
        return IngestResponse(webhook_id=webhook_id, processed=len(articles), results=results)

    @app.post("/webhooks/ingest", response_model=IngestResponse, status_code=202)
    async def ingest_generic(request: Request) -> IngestResponse:
        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        auth_header = request.headers.get("authorization")

        if signature and resolved_settings.ingest_secret:
            require_signature(raw_body, signature, resolved_settings.ingest_secret)
        elif auth_header and resolved_settings.ingest_token:
            if not verify_bearer_token(auth_header, resolved_settings.ingest_token):
                raise AuthenticationError("Invalid token")
        else:
            raise AuthenticationError("No authentication method available")

        body = parse_json_body(raw_body)
        if not isinstance(body, dict):
            raise PayloadValidationError("Envelope must be a JSON object")
        raw_items = body.get("items", [])
        if not isinstance(raw_items, list):
            raise PayloadValidationError("Envelope items must be a list")
        try:
            envelope = WebhookEnvelope.model_validate({**body, "items": []})
        except ValidationError as exc:
            raise PayloadValidationError(
                f"Invalid envelope: {exc.errors(include_url=False)[0]['msg']}"
            ) from exc

        results = IngestResults()
        seen_external_ids: set[str] = set()
        for raw_item in raw_items:
            try:
                item = WebhookItem.model_validate(raw_item)
            except ValidationError as exc:
                results.failed += 1
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "item_rejected",
                            "webhook_id": envelope.webhook_id,
                            "errors": len(exc.errors()),
                        }
                    )
                )
                continue
            if item.external_id in seen_external_ids:
                results.skipped += 1
                continue
            seen_external_ids.add(item.external_id)

            await webhook_queue.add_to_queue(
                queue_payload(
                    webhook_id=envelope.webhook_id,
                    source=envelope.source.value,
                    action=envelope.action.value,
                    candidate=process_generic_item(item, envelope.source),
                    external_id=item.external_id,
                )
            )
            results.indexed += 1

        return IngestResponse(
            webhook_id=envelope.webhook_id,
            processed=len(raw_items),
            results=results,
        )

    @app.get("/webhooks/status", response_model=QueueStats)
    async def queue_status() -> QueueStats:
        return webhook_queue.get_stats()

    @app.get("/webhooks/dlq", response_model=list[DeadLetterEntry])
    async def list_dead_letters() -> list[DeadLetterEntry]:
        return webhook_queue.get_dead_letter_queue()

    @app.get("/webhooks/dlq/{entry_id}", response_model=DeadLetterEntry)
    async def get_dead_letter(entry_id: str) -> DeadLetterEntry:
        dead_letter = webhook_queue.get_dead_letter(entry_id)
        if dead_letter is None:
            raise HTTPException(status_code=404, detail="Webhook not found in DLQ")
        return dead_letter

    @app.post("/webhooks/dlq/retry/{entry_id}", response_model=DeadLetterActionResponse)
    async def retry_dead_letter(entry_id: str) -> DeadLetterActionResponse:
        if not await webhook_queue.retry_from_dlq(entry_id):
            raise HTTPException(status_code=404, detail="Webhook not found in DLQ")
        return DeadLetterActionResponse(
            success=True,
            id=entry_id,
            message="Webhook moved back to queue for retry",
        )

    @app.delete("/webhooks/dlq/{entry_id}", response_model=DeadLetterActionResponse)
    async def acknowledge_dead_letter(entry_id: str) -> DeadLetterActionResponse:
        if not await webhook_queue.acknowledge_dead_letter(entry_id):
            raise HTTPException(status_code=404, detail="Webhook not found in DLQ")
        return DeadLetterActionResponse(
            success=True,
            id=entry_id,
            message="Dead-letter entry acknowledged",
        )

    return app


app = create_app()
