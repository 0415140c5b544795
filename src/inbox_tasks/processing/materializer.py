"""Persist validated tasks, recovering from known constraint rejections."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from ..core.errors import PersistenceConstraintError
from ..core.interfaces import TaskStore
from ..core.models import BatchTally, NonActionable, Task, ValidatedTask

LOGGER = logging.getLogger(__name__)

# Constraint kind for a suggestion already stored for the same email.
DUPLICATE_CONSTRAINT = "duplicate_task"
# Reported for store failures that are not schema constraints.
UNEXPECTED_CONSTRAINT = "unexpected"

# Constraint kind reported by the store -> task columns to null before one retry.
CONSTRAINT_RECOVERIES: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "task_category": ("category",),
    }
)


@dataclass(slots=True)
class CandidateFailure:
    """A validated task the store refused to persist."""

    title: str
    constraint: str
    message: str


@dataclass(slots=True)
class MaterializeOutcome:
    """Tasks created for one email and the candidates that were dropped."""

    created: list[Task] = field(default_factory=list)
    already_stored: list[str] = field(default_factory=list)
    failures: list[CandidateFailure] = field(default_factory=list)

    @property
    def stored_count(self) -> int:
        """Tasks now present for the email, whether new or from an earlier run."""
        return len(self.created) + len(self.already_stored)

    @property
    def all_failed(self) -> bool:
        """Return ``True`` when there were candidates and none is stored."""
        return bool(self.failures) and not self.stored_count


class TaskMaterializer:
    """Insert one :class:`Task` per validated candidate."""

    def __init__(
        self,
        store: TaskStore,
        *,
        review_threshold: int = 90,
        ai_model: str | None = None,
        recoveries: Mapping[str, tuple[str, ...]] = CONSTRAINT_RECOVERIES,
    ) -> None:
        self._store = store
        self._review_threshold = review_threshold
        self._ai_model = ai_model
        self._recoveries = recoveries

    def build_task(self, email_id: int, validated: ValidatedTask) -> Task:
        """Return the unsaved task row for ``validated``."""
        return Task(
            id=None,
            email_id=email_id,
            title=validated.title,
            description=validated.description,
            priority=validated.priority,
            category=validated.category,
            due_date=validated.due_date,
            confidence=validated.confidence,
            needs_review=validated.confidence < self._review_threshold,
            ai_generated=True,
            original_suggestion=validated.original_suggestion,
            source_snippet=validated.source_snippet,
            actors=validated.actors,
            effort_minutes=validated.effort_minutes,
            is_recurring=validated.is_recurring,
            reminder_text=validated.reminder_text,
            ai_model=self._ai_model,
        )

    def materialize(
        self,
        email_id: int,
        tasks: Iterable[ValidatedTask],
        tally: BatchTally,
    ) -> MaterializeOutcome:
        """Persist ``tasks`` for ``email_id``; one failure never stops the rest."""
        outcome = MaterializeOutcome()
        for validated in tasks:
            task = self.build_task(email_id, validated)
            try:
                stored = self._insert_with_recovery(task)
            except PersistenceConstraintError as exc:
                if exc.constraint == DUPLICATE_CONSTRAINT:
                    LOGGER.info(
                        "Task %r for email %s is already stored",
                        task.title,
                        email_id,
                    )
                    outcome.already_stored.append(task.title)
                    continue
                LOGGER.warning(
                    "Dropping task %r for email %s (%s): %s",
                    task.title,
                    email_id,
                    exc.constraint,
                    exc,
                )
                outcome.failures.append(
                    CandidateFailure(
                        title=task.title, constraint=exc.constraint, message=str(exc)
                    )
                )
                continue
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.error(
                    "Failed to store task %r for email %s",
                    task.title,
                    email_id,
                    exc_info=True,
                )
                outcome.failures.append(
                    CandidateFailure(
                        title=task.title,
                        constraint=UNEXPECTED_CONSTRAINT,
                        message=f"{type(exc).__name__}: {exc}",
                    )
                )
                continue
            outcome.created.append(stored)
            tally.tasks_created += 1
        return outcome

    def record_verdict(self, verdict: NonActionable, tally: BatchTally) -> None:
        """Count a non-actionable verdict; no tasks are created for it."""
        if verdict.is_marketing:
            tally.marketing_count += 1
        else:
            tally.non_actionable_count += 1

    def _insert_with_recovery(self, task: Task) -> Task:
        try:
            return self._store.insert_task(task)
        except PersistenceConstraintError as exc:
            columns = self._recoveries.get(exc.constraint)
            if not columns:
                raise
            LOGGER.info(
                "Retrying task %r for email %s without %s",
                task.title,
                task.email_id,
                ", ".join(columns),
            )
            return self._store.insert_task(
                replace(task, **{column: None for column in columns})
            )


__all__ = [
    "CONSTRAINT_RECOVERIES",
    "DUPLICATE_CONSTRAINT",
    "UNEXPECTED_CONSTRAINT",
    "CandidateFailure",
    "MaterializeOutcome",
    "TaskMaterializer",
]
