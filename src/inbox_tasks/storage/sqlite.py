"""SQLite-backed task store implementation."""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utc_now
from ..core.errors import PersistenceConstraintError
from ..core.interfaces import TaskStore
from ..core.models import Priority, RawEmail, Task, TaskCategory

LOGGER = logging.getLogger(__name__)

# Substrings of SQLite integrity messages and the constraint kind they denote.
_CONSTRAINT_KINDS = (
    ("task_category_valid", "task_category"),
    ("task_priority_valid", "task_priority"),
    ("task_confidence_range", "task_confidence"),
    (
        "UNIQUE constraint failed: tasks.email_id, tasks.suggestion_key",
        "duplicate_task",
    ),
    ("FOREIGN KEY constraint failed", "foreign_key"),
)

_EMAIL_COLUMNS = """
    id,
    message_id,
    sender,
    recipients,
    subject,
    body_text,
    body_html,
    received_at,
    cleaned,
    metadata
"""

_TASK_COLUMNS = """
    id,
    email_id,
    title,
    description,
    priority,
    category,
    due_date,
    confidence,
    needs_review,
    ai_generated,
    ai_model,
    original_suggestion,
    source_snippet,
    actors,
    effort_minutes,
    is_recurring,
    reminder_text,
    created_at
"""


class SqliteTaskStore(TaskStore):
    """Persist emails and extracted tasks using SQLite."""

    def __init__(
        self,
        settings: StorageSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialise the store and apply migrations."""
        self._settings = settings
        self._clock = clock
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._enable_foreign_keys()
        self._apply_migrations()
        self._ensure_indexes()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteTaskStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Emails ------------------------------------------------------------------
    def persist_email(self, email: RawEmail) -> RawEmail:
        """Insert ``email`` and return it with its assigned identifier.

        Re-importing a message whose ``message_id`` is already stored leaves
        the existing row (and any cleaning applied to it) untouched.
        """
        with self._connection:
            cursor = self._connection.execute(
                """
                INSERT INTO emails (
                    message_id,
                    sender,
                    recipients,
                    subject,
                    body_text,
                    body_html,
                    received_at,
                    cleaned,
                    metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(message_id) DO NOTHING
                """,
                (
                    email.message_id,
                    email.sender,
                    json.dumps(list(email.recipients)),
                    email.subject,
                    email.body_text,
                    email.body_html,
                    serialize_datetime(email.received_at),
                    1 if email.cleaned else 0,
                    _dump_optional_json(email.metadata),
                ),
            )
        if cursor.rowcount:
            LOGGER.debug("Stored email %s as id %s", email.message_id, cursor.lastrowid)
            return replace(email, id=cursor.lastrowid)

        row = self._connection.execute(
            f"SELECT {_EMAIL_COLUMNS} FROM emails WHERE message_id = ?",
            (email.message_id,),
        ).fetchone()
        LOGGER.debug("Email %s already stored as id %s", email.message_id, row["id"])
        return _email_from_row(row)

    def fetch_email(self, email_id: int) -> RawEmail | None:
        """Retrieve a stored email."""
        row = self._connection.execute(
            f"SELECT {_EMAIL_COLUMNS} FROM emails WHERE id = ?",
            (email_id,),
        ).fetchone()
        if row is None:
            return None
        return _email_from_row(row)

    def update_email(
        self,
        email_id: int,
        *,
        body_text: str,
        metadata: dict[str, Any],
        cleaned: bool,
    ) -> None:
        """Rewrite the cleaned body, metadata and cleaned flag of an email."""
        with self._connection:
            cursor = self._connection.execute(
                """
                UPDATE emails
                SET body_text = ?, metadata = ?, cleaned = ?
                WHERE id = ?
                """,
                (body_text, json.dumps(metadata), 1 if cleaned else 0, email_id),
            )
        if cursor.rowcount == 0:
            LOGGER.warning("Cannot update email %s: no such row", email_id)

    def select_unprocessed_emails(
        self,
        limit: int,
        *,
        since: datetime | None = None,
        email_ids: Sequence[int] | None = None,
        unprocessed_only: bool = True,
    ) -> list[RawEmail]:
        """Return candidate emails for a batch, newest first.

        An explicit ``email_ids`` allow-list overrides both the unprocessed
        filter and the recency window.
        """
        clauses: list[str] = []
        parameters: list[object] = []
        if email_ids is not None:
            if not email_ids:
                return []
            placeholders = ", ".join("?" for _ in email_ids)
            clauses.append(f"id IN ({placeholders})")
            parameters.extend(email_ids)
        else:
            if unprocessed_only:
                clauses.append("tasks_processed_at IS NULL")
            if since is not None:
                clauses.append("received_at >= ?")
                parameters.append(serialize_datetime(since))

        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        parameters.append(limit)
        cursor = self._connection.execute(
            f"""
            SELECT {_EMAIL_COLUMNS}
            FROM emails
            {where_clause}
            ORDER BY
                CASE WHEN received_at IS NULL THEN 1 ELSE 0 END,
                received_at DESC,
                id DESC
            LIMIT ?
            """,
            tuple(parameters),
        )
        return [_email_from_row(row) for row in cursor.fetchall()]

    def mark_tasks_processed(
        self, email_id: int, *, classification: str, task_count: int
    ) -> None:
        """Record that task extraction finished for an email."""
        with self._connection:
            self._connection.execute(
                """
                UPDATE emails
                SET tasks_processed_at = ?, classification = ?, task_count = ?
                WHERE id = ?
                """,
                (
                    serialize_datetime(self._clock()),
                    classification,
                    task_count,
                    email_id,
                ),
            )

    def count_emails(self, *, unprocessed_only: bool = False) -> int:
        """Return the number of stored emails."""
        query = "SELECT COUNT(*) FROM emails"
        if unprocessed_only:
            query += " WHERE tasks_processed_at IS NULL"
        return int(self._connection.execute(query).fetchone()[0])

    # Tasks -------------------------------------------------------------------
    def insert_task(self, task: Task) -> Task:
        """Insert ``task`` and return it with its assigned identifier.

        Raises:
            PersistenceConstraintError: a schema constraint rejected the row or a
                value does not fit its column.
        """
        created_at = task.created_at or self._clock()
        try:
            with self._connection:
                cursor = self._connection.execute(
                    """
                    INSERT INTO tasks (
                        email_id,
                        title,
                        description,
                        priority,
                        category,
                        due_date,
                        confidence,
                        needs_review,
                        ai_generated,
                        ai_model,
                        original_suggestion,
                        suggestion_key,
                        source_snippet,
                        actors,
                        effort_minutes,
                        is_recurring,
                        reminder_text,
                        created_at
                    ) VALUES (
                        ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                    )
                    """,
                    (
                        task.email_id,
                        task.title,
                        task.description,
                        str(task.priority),
                        str(task.category) if task.category is not None else None,
                        serialize_datetime(task.due_date),
                        task.confidence,
                        1 if task.needs_review else 0,
                        1 if task.ai_generated else 0,
                        task.ai_model,
                        _dump_optional_json(task.original_suggestion),
                        _suggestion_key(task.original_suggestion),
                        task.source_snippet,
                        json.dumps(list(task.actors)),
                        task.effort_minutes,
                        1 if task.is_recurring else 0,
                        task.reminder_text,
                        serialize_datetime(created_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            kind = _constraint_kind(exc)
            LOGGER.debug(
                "Task %r for email %s rejected (%s): %s",
                task.title,
                task.email_id,
                kind,
                exc,
            )
            raise PersistenceConstraintError(
                f"Task {task.title!r} for email {task.email_id} rejected: {exc}",
                constraint=kind,
            ) from exc
        except OverflowError as exc:
            LOGGER.debug(
                "Task %r for email %s has an out-of-range value: %s",
                task.title,
                task.email_id,
                exc,
            )
            raise PersistenceConstraintError(
                f"Task {task.title!r} for email {task.email_id} rejected: {exc}",
                constraint="value_range",
            ) from exc
        return replace(task, id=cursor.lastrowid, created_at=created_at)

    def list_tasks(
        self,
        *,
        email_id: int | None = None,
        needs_review: bool | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """Return tasks ordered by due date, undated tasks last."""
        clauses: list[str] = []
        parameters: list[object] = []
        if email_id is not None:
            clauses.append("email_id = ?")
            parameters.append(email_id)
        if needs_review is not None:
            clauses.append("needs_review = ?")
            parameters.append(1 if needs_review else 0)
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_clause = ""
        if limit is not None:
            limit_clause = "LIMIT ?"
            parameters.append(limit)
        cursor = self._connection.execute(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM tasks
            {where_clause}
            ORDER BY
                CASE WHEN due_date IS NULL THEN 1 ELSE 0 END,
                due_date ASC,
                id ASC
            {limit_clause}
            """,
            tuple(parameters),
        )
        return [_task_from_row(row) for row in cursor.fetchall()]

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _enable_foreign_keys(self) -> None:
        with self._connection:
            self._connection.execute("PRAGMA foreign_keys = ON")

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)

    def _ensure_indexes(self) -> None:
        """Create supporting indexes that may be missing from older schemas."""
        index_statements = (
            (
                "CREATE INDEX IF NOT EXISTS idx_emails_processed_received "
                "ON emails(tasks_processed_at, received_at DESC)"
            ),
            (
                "CREATE INDEX IF NOT EXISTS idx_tasks_review_due "
                "ON tasks(needs_review, due_date)"
            ),
        )
        with self._connection:
            for statement in index_statements:
                self._connection.execute(statement)


def _constraint_kind(error: sqlite3.IntegrityError) -> str:
    message = str(error)
    for marker, kind in _CONSTRAINT_KINDS:
        if marker in message:
            return kind
    return "unknown"


def _dump_optional_json(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _suggestion_key(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _load_optional_json(value: str | None) -> Any:
    if value is None:
        return None
    return json.loads(value)


def _email_from_row(row: sqlite3.Row) -> RawEmail:
    return RawEmail(
        id=row["id"],
        sender=row["sender"],
        recipients=tuple(json.loads(row["recipients"] or "[]")),
        subject=row["subject"],
        body_text=row["body_text"],
        body_html=row["body_html"],
        received_at=parse_datetime(row["received_at"], assume_utc=True),
        cleaned=bool(row["cleaned"]),
        metadata=_load_optional_json(row["metadata"]),
        message_id=row["message_id"],
    )


def _task_from_row(row: sqlite3.Row) -> Task:
    category = row["category"]
    return Task(
        id=row["id"],
        email_id=row["email_id"],
        title=row["title"],
        description=row["description"],
        priority=Priority(row["priority"]),
        category=TaskCategory(category) if category is not None else None,
        due_date=parse_datetime(row["due_date"], assume_utc=True),
        confidence=row["confidence"],
        needs_review=bool(row["needs_review"]),
        ai_generated=bool(row["ai_generated"]),
        original_suggestion=_load_optional_json(row["original_suggestion"]),
        source_snippet=row["source_snippet"],
        actors=tuple(json.loads(row["actors"] or "[]")),
        effort_minutes=row["effort_minutes"],
        is_recurring=bool(row["is_recurring"]),
        reminder_text=row["reminder_text"],
        ai_model=row["ai_model"],
        created_at=parse_datetime(row["created_at"], assume_utc=True),
    )


__all__ = ["SqliteTaskStore"]
