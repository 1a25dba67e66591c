"""In-process retry queue with exponential backoff and a dead-letter store.

Entry lifecycle::

    add_to_queue -> PENDING -> PROCESSING -> removed            (handler succeeded)
                                          -> PENDING + backoff  (failed, attempts < max)
                                          -> dead letter        (failed, attempts >= max)
    dead letter  -> retry_from_dlq -> PENDING with attempts reset to 0

The queue never inspects payloads. It only knows whether the registered
handler returned or raised.

With a repository attached, every transition is written to disk before the
in-memory state changes, and the write runs in the threadpool.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from common.utils import now_utc_iso
from fastapi.concurrency import run_in_threadpool

from ingestor.models import (
    DeadLetterEntry,
    ProcessSummary,
    QueueEntry,
    QueueStats,
    QueueStatus,
)
from ingestor.repository import QueueRepository

LOGGER = logging.getLogger("portfolio.ingestor.queue")

DEFAULT_BACKOFF_SCHEDULE: tuple[float, ...] = (0.0, 1.0, 5.0, 30.0)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ATTEMPT_TIMEOUT = 30.0

QueueHandler = Callable[[dict[str, Any]], Awaitable[None]]


def _log_event(level: int, event: str, **fields: Any) -> None:
    LOGGER.log(level, json.dumps({"event": event, **fields}, default=str))


def _error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


def backoff_delay(schedule: Sequence[float], attempts: int) -> float:
    return schedule[min(attempts, len(schedule) - 1)]


class WebhookQueue:
    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_schedule: Sequence[float] = DEFAULT_BACKOFF_SCHEDULE,
        attempt_timeout: float | None = DEFAULT_ATTEMPT_TIMEOUT,
        clock: Callable[[], float] = time.time,
        repository: QueueRepository | None = None,
    ) -> None:
        if not backoff_schedule:
            raise ValueError("backoff_schedule must not be empty")
        if any(later < earlier for earlier, later in zip(backoff_schedule, backoff_schedule[1:])):
            raise ValueError("backoff_schedule must be non-decreasing")
        self.set_max_retries(max_attempts)
        self.backoff_schedule = tuple(float(delay) for delay in backoff_schedule)
        self.attempt_timeout = attempt_timeout
        self.clock = clock
        self.repository = repository

        self._entries: dict[str, QueueEntry] = {}
        self._dead_letters: dict[str, DeadLetterEntry] = {}
        self._handler: QueueHandler | None = None
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    def set_processor(self, handler: QueueHandler) -> None:
        self._handler = handler

    def set_max_retries(self, max_attempts: int) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts

    async def _persist(self, operation: str, *args: Any) -> None:
        if self.repository is not None:
            await run_in_threadpool(getattr(self.repository, operation), *args)

    async def restore(self) -> None:
        """Reload persisted state; entries caught mid-attempt become pending again."""
        repository = self.repository
        if repository is None:
            return
        now = self.clock()
        for entry in await run_in_threadpool(repository.load_entries):
            if entry.status is QueueStatus.PROCESSING:
                entry.status = QueueStatus.PENDING
                entry.next_attempt_at = now
                await run_in_threadpool(repository.save_entry, entry)
            self._entries[entry.id] = entry
        for dead_letter in await run_in_threadpool(repository.load_dead_letters):
            self._dead_letters[dead_letter.id] = dead_letter
        _log_event(
            logging.INFO,
            "queue_restored",
            queue_size=len(self._entries),
            dlq_size=len(self._dead_letters),
        )

    async def add_to_queue(self, payload: dict[str, Any]) -> str:
        entry = QueueEntry(
            id=str(uuid.uuid4()),
            payload=payload,
            attempts=0,
            max_attempts=self.max_attempts,
            status=QueueStatus.PENDING,
            created_at=now_utc_iso(),
            next_attempt_at=self.clock(),
        )
        await self._persist("save_entry", entry)
        self._entries[entry.id] = entry
        _log_event(logging.INFO, "queue_enqueued", entry_id=entry.id)
        return entry.id

    def get_entry(self, entry_id: str) -> QueueEntry | None:
        return self._entries.get(entry_id)

    def get_queued_entries(self) -> list[QueueEntry]:
        return list(self._entries.values())

    async def process_queue(self) -> ProcessSummary:
        handler = self._handler
        if handler is None:
            return ProcessSummary()

        async with self._lock:
            now = self.clock()
            eligible = [
                entry
                for entry in self._entries.values()
                if entry.status is QueueStatus.PENDING and entry.next_attempt_at <= now
            ]
            claimed: list[QueueEntry] = []
            for entry in eligible:
                if await self._claim(entry):
                    claimed.append(entry)

        if not claimed:
            return ProcessSummary()

        outcomes = await asyncio.gather(
            *(self._attempt(handler, entry) for entry in claimed),
            return_exceptions=True,
        )

        summary = ProcessSummary()
        async with self._lock:
            now = self.clock()
            for entry, outcome in zip(claimed, outcomes):
                if self._entries.get(entry.id) is not entry:
                    # Removed by clear() while the attempt was in flight.
                    continue
                try:
                    if isinstance(outcome, BaseException):
                        if await self._record_failure(entry, outcome, now):
                            summary.failed += 1
                    else:
                        await self._record_success(entry)
                        summary.successful += 1
                except Exception:
                    LOGGER.exception(json.dumps({"event": "queue_fold_failed", "entry_id": entry.id}))
                    # Disk may still say PROCESSING; restore() resets that to PENDING too.
                    entry.status = QueueStatus.PENDING
        return summary

    async def _claim(self, entry: QueueEntry) -> bool:
        claimed_at = now_utc_iso()
        updated = entry.model_copy(
            update={"status": QueueStatus.PROCESSING, "last_attempt_at": claimed_at}
        )
        try:
            await self._persist("save_entry", updated)
        except Exception:
            LOGGER.exception(json.dumps({"event": "queue_claim_failed", "entry_id": entry.id}))
            return False
        entry.status = QueueStatus.PROCESSING
        entry.last_attempt_at = claimed_at
        return True

    async def _attempt(self, handler: QueueHandler, entry: QueueEntry) -> None:
        if self.attempt_timeout is None:
            await handler(entry.payload)
            return
        deadline = asyncio.timeout(self.attempt_timeout)
        try:
            async with deadline:
                await handler(entry.payload)
        except TimeoutError as exc:
            if deadline.expired():
                raise TimeoutError(f"attempt timed out after {self.attempt_timeout:g}s") from exc
            raise

    async def _record_success(self, entry: QueueEntry) -> None:
        await self._persist("delete_entry", entry.id)
        del self._entries[entry.id]
        _log_event(logging.INFO, "queue_delivered", entry_id=entry.id, attempts=entry.attempts + 1)

    async def _record_failure(self, entry: QueueEntry, error: BaseException, now: float) -> bool:
        attempts = entry.attempts + 1
        last_error = _error_message(error)

        if attempts >= entry.max_attempts:
            await self._move_to_dead_letter(entry, attempts, last_error)
            return True

        delay = backoff_delay(self.backoff_schedule, attempts)
        updated = entry.model_copy(
            update={
                "attempts": attempts,
                "last_error": last_error,
                "status": QueueStatus.PENDING,
                "next_attempt_at": now + delay,
            }
        )
        await self._persist("save_entry", updated)
        entry.attempts = attempts
        entry.last_error = last_error
        entry.status = QueueStatus.PENDING
        entry.next_attempt_at = now + delay
        _log_event(
            logging.WARNING,
            "queue_attempt_failed",
            entry_id=entry.id,
            attempts=attempts,
            max_attempts=entry.max_attempts,
            retry_in_seconds=delay,
            error=last_error,
        )
        return False

    async def _move_to_dead_letter(self, entry: QueueEntry, attempts: int, last_error: str) -> None:
        dead_letter = DeadLetterEntry(
            id=entry.id,
            payload=entry.payload,
            final_error=last_error,
            attempts=attempts,
            created_at=entry.created_at,
            moved_at=now_utc_iso(),
        )
        await self._persist("move_to_dead_letter", dead_letter)
        entry.attempts = attempts
        entry.last_error = last_error
        del self._entries[entry.id]
        self._dead_letters[entry.id] = dead_letter
        _log_event(
            logging.ERROR,
            "queue_dead_lettered",
            entry_id=entry.id,
            attempts=attempts,
            error=last_error,
        )

    def get_dead_letter_queue(self) -> list[DeadLetterEntry]:
        return list(self._dead_letters.values())

    def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        return self._dead_letters.get(entry_id)

    async def retry_from_dlq(self, entry_id: str) -> bool:
        dead_letter = self._dead_letters.get(entry_id)
        if dead_letter is None:
            return False

        entry = QueueEntry(
            id=dead_letter.id,
            payload=dead_letter.payload,
            attempts=0,
            max_attempts=self.max_attempts,
            status=QueueStatus.PENDING,
            created_at=dead_letter.created_at,
            next_attempt_at=self.clock(),
        )
        await self._persist("requeue_dead_letter", entry)
        self._dead_letters.pop(entry_id, None)
        self._entries[entry.id] = entry
        _log_event(logging.INFO, "dlq_retry", entry_id=entry.id)
        return True

    async def acknowledge_dead_letter(self, entry_id: str) -> bool:
        if entry_id not in self._dead_letters:
            return False
        await self._persist("delete_dead_letter", entry_id)
        self._dead_letters.pop(entry_id, None)
        _log_event(logging.INFO, "dlq_acknowledged", entry_id=entry_id)
        return True

    @property
    def is_processing(self) -> bool:
        return self._task is not None

    def start_processing(self, interval_seconds: float) -> None:
        if self._task is not None:
            return
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(interval_seconds, self._stop_event))
        _log_event(logging.INFO, "queue_processing_started", interval_seconds=interval_seconds)

    def stop_processing(self) -> asyncio.Task[None] | None:
        """Stop scheduling new passes; a pass already in flight runs to completion."""
        task = self._task
        if task is None:
            return None
        if self._stop_event is not None:
            self._stop_event.set()
        self._task = None
        self._stop_event = None
        _log_event(logging.INFO, "queue_processing_stopped")
        return task

    async def shutdown(self) -> None:
        task = self.stop_processing()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            if stop_event.is_set():
                break
            try:
                await self.process_queue()
            except Exception:
                LOGGER.exception(json.dumps({"event": "queue_pass_failed"}))

    def get_stats(self) -> QueueStats:
        return QueueStats(
            queue_size=len(self._entries),
            dlq_size=len(self._dead_letters),
            total_attempts=sum(entry.attempts for entry in self._entries.values()),
            is_processing=self.is_processing,
        )

    async def clear(self) -> None:
        async with self._lock:
            await self._persist("clear")
            self._entries.clear()
            self._dead_letters.clear()
