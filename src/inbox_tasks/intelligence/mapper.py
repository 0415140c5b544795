"""Validate model task suggestions and map them onto the task vocabulary."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from inbox_tasks.core.datetime_utils import utc_now
from inbox_tasks.core.models import (
    ClassificationResult,
    NonActionable,
    Priority,
    TaskCategory,
    ValidatedTask,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 85
DEFAULT_TITLE = "Task from email"
# Effort estimates beyond four working weeks are treated as noise.
MAX_EFFORT_MINUTES = 4 * 5 * 8 * 60

_ISO_DATE = re.compile(r"(?<!\d)(\d{4})-(\d{2})-(\d{2})(?!\d)")
_CATEGORY_VALUES = {category.value: category for category in TaskCategory}


class TaskCandidate(BaseModel):
    """One task suggestion as emitted by the model.

    Every field is repaired rather than rejected: values of the wrong type
    fall back to ``None`` (or an empty/false default), so validation of a
    JSON object never fails.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str | None = Field(default=None, alias="suggested_title")
    description: str | None = Field(default=None, alias="detailed_description")
    source_snippet: str | None = Field(default=None, alias="source_snippet")
    actors: list[str] = Field(default_factory=list, alias="actors_involved")
    priority_hint: str | None = Field(default=None, alias="suggested_priority_level")
    deadline_text: str | None = Field(default=None, alias="extracted_deadline_text")
    category: str | None = Field(default=None, alias="suggested_category")
    effort_minutes: int | None = Field(default=None, alias="estimated_effort_minutes")
    recurring_hint: bool = Field(default=False, alias="is_recurring_hint")
    reminder_hint: str | None = Field(default=None, alias="reminder_suggestion_text")
    confidence: float | None = Field(
        default=None, alias="confidence_in_task_extraction"
    )

    @field_validator(
        "title",
        "description",
        "source_snippet",
        "priority_hint",
        "deadline_text",
        "category",
        "reminder_hint",
        mode="before",
    )
    @classmethod
    def _text_or_none(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("actors", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [
            item.strip() for item in value if isinstance(item, str) and item.strip()
        ]

    @field_validator("effort_minutes", mode="before")
    @classmethod
    def _minutes(cls, value: Any) -> int | None:
        number = _finite_number(value)
        if number is None or not 0 <= number <= MAX_EFFORT_MINUTES:
            return None
        return int(round(number))

    @field_validator("recurring_hint", mode="before")
    @classmethod
    def _strict_bool(cls, value: Any) -> bool:
        return value if isinstance(value, bool) else False

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float | None:
        return _finite_number(value)


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def map_priority(label: str | None) -> Priority:
    """Map a model priority label onto one of the three tiers."""
    if not label:
        return Priority.MEDIUM
    if "P1" in label or "Critical" in label:
        return Priority.HIGH
    if "P2" in label or "High" in label:
        return Priority.HIGH
    if "P4" in label or "Low" in label:
        return Priority.LOW
    return Priority.MEDIUM


def map_confidence(raw: float | None, *, default: int = DEFAULT_CONFIDENCE) -> int:
    """Scale a 0.0-1.0 confidence to an integer percentage in [0, 100]."""
    if raw is None:
        return default
    return max(0, min(100, math.floor(raw * 100)))


def resolve_due_date(text: str | None, *, now: datetime) -> datetime | None:
    """Best-effort due date from deadline text.

    Only three shapes are recognised: ``tomorrow`` (+1 day), ``next week``
    (+7 days, whatever the weekday) and an ISO ``YYYY-MM-DD`` date. Phrases
    such as "next Friday" deliberately resolve to ``None``.
    """
    if not text:
        return None
    if "tomorrow" in text:
        return now + timedelta(days=1)
    if "next week" in text:
        return now + timedelta(days=7)
    match = _ISO_DATE.search(text)
    if match is None:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day, tzinfo=UTC)
    except ValueError:
        LOGGER.debug("Ignoring invalid ISO deadline %r", match.group(0))
        return None


def map_category(raw: str | None) -> TaskCategory | None:
    """Return the enum member for ``raw`` or ``None`` when it is not one."""
    if raw is None:
        return None
    category = _CATEGORY_VALUES.get(raw)
    if category is None:
        LOGGER.debug("Dropping unknown task category %r", raw)
    return category


class ResponseMapper:
    """Turn a decoded classification into a verdict or validated tasks."""

    def __init__(
        self,
        *,
        default_confidence: int = DEFAULT_CONFIDENCE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._default_confidence = default_confidence
        self._clock = clock

    def map(self, result: ClassificationResult) -> NonActionable | list[ValidatedTask]:
        """Map every suggestion of ``result``; verdicts pass through unchanged."""
        if isinstance(result, NonActionable):
            return result
        now = self._clock()
        return [self.map_candidate(raw, now=now) for raw in result.tasks]

    def map_candidate(self, raw: dict[str, Any], *, now: datetime) -> ValidatedTask:
        """Validate one raw suggestion, keeping it untouched as audit payload."""
        candidate = TaskCandidate.model_validate(raw)
        return ValidatedTask(
            title=candidate.title or DEFAULT_TITLE,
            description=candidate.description or "",
            priority=map_priority(candidate.priority_hint),
            category=map_category(candidate.category),
            due_date=resolve_due_date(candidate.deadline_text, now=now),
            confidence=map_confidence(
                candidate.confidence, default=self._default_confidence
            ),
            source_snippet=candidate.source_snippet,
            actors=tuple(candidate.actors),
            effort_minutes=candidate.effort_minutes,
            is_recurring=candidate.recurring_hint,
            reminder_text=candidate.reminder_hint,
            original_suggestion=raw,
        )


__all__ = [
    "DEFAULT_CONFIDENCE",
    "DEFAULT_TITLE",
    "MAX_EFFORT_MINUTES",
    "ResponseMapper",
    "TaskCandidate",
    "map_category",
    "map_confidence",
    "map_priority",
    "resolve_due_date",
]
