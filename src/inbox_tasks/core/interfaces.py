"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from .models import ClassificationResult, RawEmail, Task


class LLMClient(Protocol):
    """Minimal chat-style client for the text-generation provider."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    def complete(self, system: str, user: str, *, temperature: float) -> str:
        """Return the raw JSON text produced for ``system``/``user``."""
        raise NotImplementedError


class Classifier(Protocol):
    """Turns cleaned email content into a classification result."""

    @property
    def provider_id(self) -> str:
        """Identifier of the model answering classification requests."""
        raise NotImplementedError

    def classify(
        self, subject: str | None, sender: str | None, canonical_text: str
    ) -> ClassificationResult:
        """Return a verdict or task list for the email."""
        raise NotImplementedError


class TaskStore(Protocol):
    """Persistence operations the extraction pipeline depends on."""

    def insert_task(self, task: Task) -> Task:
        """Insert ``task`` and return it with its assigned identifier."""
        raise NotImplementedError

    def update_email(
        self,
        email_id: int,
        *,
        body_text: str,
        metadata: dict[str, Any],
        cleaned: bool,
    ) -> None:
        """Rewrite the cleaned body, metadata and cleaned flag of an email."""
        raise NotImplementedError

    def select_unprocessed_emails(
        self,
        limit: int,
        *,
        since: datetime | None = None,
        email_ids: Sequence[int] | None = None,
        unprocessed_only: bool = True,
    ) -> list[RawEmail]:
        """Return candidate emails for a batch, newest first."""
        raise NotImplementedError

    def mark_tasks_processed(
        self, email_id: int, *, classification: str, task_count: int
    ) -> None:
        """Record that task extraction finished for an email."""
        raise NotImplementedError


__all__ = ["Classifier", "LLMClient", "TaskStore"]
