from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path

from ingestor.models import DeadLetterEntry, QueueEntry, QueueStatus


class QueueRepository:
    """Durable sqlite backing for queue and dead-letter state.

    Each method commits one transition, so the on-disk state always matches a
    state the in-memory queue has actually been in.
    """

    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            if self._connection is not None:
                return
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS queue_entries (
                    id TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    next_attempt_at REAL NOT NULL,
                    last_attempt_at TEXT,
                    last_error TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_queue_entries_next_attempt
                    ON queue_entries (status, next_attempt_at);

                CREATE TABLE IF NOT EXISTS dead_letters (
                    id TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL,
                    final_error TEXT NOT NULL,
                    attempts INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    moved_at TEXT NOT NULL
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def save_entry(self, entry: QueueEntry) -> None:
        with self._lock:
            self._upsert_entry(entry)
            self.connection.commit()

    def delete_entry(self, entry_id: str) -> None:
        with self._lock:
            self.connection.execute("DELETE FROM queue_entries WHERE id = ?", (entry_id,))
            self.connection.commit()

    def move_to_dead_letter(self, dead_letter: DeadLetterEntry) -> None:
        with self._lock:
            self.connection.execute("DELETE FROM queue_entries WHERE id = ?", (dead_letter.id,))
            self.connection.execute(
                """
                INSERT OR REPLACE INTO dead_letters (
                    id,
                    payload_json,
                    final_error,
                    attempts,
                    created_at,
                    moved_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    dead_letter.id,
                    json.dumps(dead_letter.payload),
                    dead_letter.final_error,
                    dead_letter.attempts,
                    dead_letter.created_at,
                    dead_letter.moved_at,
                ),
            )
            self.connection.commit()

    def requeue_dead_letter(self, entry: QueueEntry) -> None:
        with self._lock:
            self.connection.execute("DELETE FROM dead_letters WHERE id = ?", (entry.id,))
            self._upsert_entry(entry)
            self.connection.commit()

    def delete_dead_letter(self, entry_id: str) -> None:
        with self._lock:
            self.connection.execute("DELETE FROM dead_letters WHERE id = ?", (entry_id,))
            self.connection.commit()

    def clear(self) -> None:
        with self._lock:
            self.connection.execute("DELETE FROM queue_entries")
            self.connection.execute("DELETE FROM dead_letters")
            self.connection.commit()

    def load_entries(self) -> list[QueueEntry]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT
                    id,
                    payload_json,
                    attempts,
                    max_attempts,
                    status,
                    created_at,
                    next_attempt_at,
                    last_attempt_at,
                    last_error
                FROM queue_entries
                ORDER BY created_at ASC
                """
            ).fetchall()
        return [
            QueueEntry(
                id=row["id"],
                payload=json.loads(row["payload_json"]),
                attempts=int(row["attempts"]),
                max_attempts=int(row["max_attempts"]),
                status=QueueStatus(row["status"]),
                created_at=row["created_at"],
                next_attempt_at=float(row["next_attempt_at"]),
                last_attempt_at=row["last_attempt_at"],
                last_error=row["last_error"],
            )
            for row in rows
        ]

    def load_dead_letters(self) -> list[DeadLetterEntry]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT id, payload_json, final_error, attempts, created_at, moved_at
                FROM dead_letters
                ORDER BY moved_at ASC
                """
            ).fetchall()
        return [
            DeadLetterEntry(
                id=row["id"],
                payload=json.loads(row["payload_json"]),
                final_error=row["final_error"],
                attempts=int(row["attempts"]),
                created_at=row["created_at"],
                moved_at=row["moved_at"],
            )
            for row in rows
        ]

    def _upsert_entry(self, entry: QueueEntry) -> None:
        self.connection.execute(
            """
            INSERT INTO queue_entries (
                id,
                payload_json,
                attempts,
                max_attempts,
                status,
                created_at,
                next_attempt_at,
                last_attempt_at,
                last_error
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                attempts = excluded.attempts,
                max_attempts = excluded.max_attempts,
                status = excluded.status,
                next_attempt_at = excluded.next_attempt_at,
                last_attempt_at = excluded.last_attempt_at,
                last_error = excluded.last_error
            """,
            (
                entry.id,
                json.dumps(entry.payload),
                entry.attempts,
                entry.max_attempts,
                entry.status.value,
                entry.created_at,
                entry.next_attempt_at,
                entry.last_attempt_at,
                entry.last_error,
            ),
        )
