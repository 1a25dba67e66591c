"""Environment-driven configuration for the ingestor service."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from ingestor.queue import DEFAULT_BACKOFF_SCHEDULE, DEFAULT_MAX_ATTEMPTS
from ingestor.store import DEFAULT_SIMILARITY_THRESHOLD

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def _optional(name: str) -> str | None:
    return os.getenv(name, "").strip() or None


@dataclass(frozen=True)
class IngestorSettings:
    github_secret: str | None = None
    medium_secret: str | None = None
    ingest_secret: str | None = None
    ingest_token: str | None = None
    queue_db_path: str | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_schedule: tuple[float, ...] = DEFAULT_BACKOFF_SCHEDULE
    attempt_timeout_seconds: float = 30.0
    process_interval_seconds: float = 5.0
    autostart: bool = True
    projects_api_url: str | None = None
    projects_api_key: str | None = None
    similarity_threshold: int = DEFAULT_SIMILARITY_THRESHOLD
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> IngestorSettings:
        load_dotenv()
        errors: list[str] = []

        def parse_int(name: str, default: int, minimum: int) -> int:
            raw = os.getenv(name, "").strip()
            if not raw:
                return default
            try:
                value = int(raw)
            except ValueError:
                errors.append(f"{name} must be an integer, got {raw!r}")
                return default
            if value < minimum:
                errors.append(f"{name} must be >= {minimum}")
            return value

        def parse_float(name: str, default: float) -> float:
            raw = os.getenv(name, "").strip()
            if not raw:
                return default
            try:
                value = float(raw)
            except ValueError:
                errors.append(f"{name} must be a number, got {raw!r}")
                return default
            if value <= 0:
                errors.append(f"{name} must be positive")
            return value

        def parse_bool(name: str, default: bool) -> bool:
            raw = os.getenv(name, "").strip().lower()
            if not raw:
                return default
            if raw in TRUE_VALUES:
                return True
            if raw in FALSE_VALUES:
                return False
            errors.append(f"{name} must be a boolean, got {raw!r}")
            return default

        backoff_schedule = DEFAULT_BACKOFF_SCHEDULE
        raw_backoff = os.getenv("INGESTOR_BACKOFF_SECONDS", "").strip()
        if raw_backoff:
            try:
                backoff_schedule = tuple(float(part) for part in raw_backoff.split(",") if part.strip())
            except ValueError:
                errors.append(f"INGESTOR_BACKOFF_SECONDS must be comma-separated numbers, got {raw_backoff!r}")
            else:
                if not backoff_schedule or list(backoff_schedule) != sorted(backoff_schedule):
                    errors.append("INGESTOR_BACKOFF_SECONDS must be non-empty and non-decreasing")

        settings = cls(
            github_secret=_optional("GITHUB_WEBHOOK_SECRET"),
            medium_secret=_optional("MEDIUM_WEBHOOK_SECRET"),
            ingest_secret=_optional("WEBHOOK_SECRET"),
            ingest_token=_optional("WEBHOOK_TOKEN"),
            queue_db_path=_optional("INGESTOR_QUEUE_DB_PATH"),
            max_attempts=parse_int("INGESTOR_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, 1),
            backoff_schedule=backoff_schedule,
            attempt_timeout_seconds=parse_float("INGESTOR_ATTEMPT_TIMEOUT_SECONDS", 30.0),
            process_interval_seconds=parse_float("INGESTOR_PROCESS_INTERVAL_SECONDS", 5.0),
            autostart=parse_bool("INGESTOR_AUTOSTART", True),
            projects_api_url=_optional("PROJECTS_API_URL"),
            projects_api_key=_optional("PROJECTS_API_KEY"),
            similarity_threshold=parse_int(
                "INGESTOR_SIMILARITY_THRESHOLD", DEFAULT_SIMILARITY_THRESHOLD, 0
            ),
            log_level=(os.getenv("LOG_LEVEL", "INFO").strip() or "INFO").upper(),
        )

        if errors:
            raise ValueError("Config errors:\n  " + "\n  ".join(errors))
        return settings
