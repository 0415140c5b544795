"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Priority(StrEnum):
    """Priority tiers a stored task may carry."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskCategory(StrEnum):
    """Closed vocabulary of task categories accepted by the task store."""

    FOLLOW_UP_RESPONSE_NEEDED = "FollowUp_ResponseNeeded"
    REPORT_GENERATION_SUBMISSION = "Report_Generation_Submission"
    MEETING_COORDINATION_PREP = "Meeting_Coordination_Prep"
    REVIEW_APPROVAL_FEEDBACK = "Review_Approval_Feedback"
    RESEARCH_INVESTIGATION_ANALYSIS = "Research_Investigation_Analysis"
    PLANNING_STRATEGY_DEVELOPMENT = "Planning_Strategy_Development"
    CLIENT_VENDOR_COMMUNICATION = "Client_Vendor_Communication"
    INTERNAL_PROJECT_TASK = "Internal_Project_Task"
    ADMINISTRATIVE_LOGISTICS = "Administrative_Logistics"
    URGENT_ACTION_REQUIRED = "Urgent_Action_Required"
    INFORMATION_TO_DIGEST_REVIEW = "Information_To_Digest_Review"
    PERSONAL_REMINDER_APPT = "Personal_Reminder_Appt"


class Urgency(StrEnum):
    """Coarse urgency signal derived from keywords."""

    NORMAL = "normal"
    HIGH = "high"


class QuoteKind(StrEnum):
    """Kind of delimiter that introduced quoted or forwarded content."""

    REPLY = "reply"
    FORWARD = "forward"


class EmailState(StrEnum):
    """Per-email processing states within one batch run."""

    SELECTED = "selected"
    CLEANED = "cleaned"
    CLASSIFIED = "classified"
    NON_ACTIONABLE = "non_actionable"
    TASKS_CREATED = "tasks_created"
    FAILED = "failed"


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class RawEmail:
    """Email row as stored by ingestion and rewritten by cleaning."""

    id: int | None
    sender: str | None
    recipients: tuple[str, ...]
    subject: str | None
    body_text: str | None
    body_html: str | None
    received_at: datetime | None
    cleaned: bool = False
    metadata: dict[str, Any] | None = None
    message_id: str | None = None


@dataclass(slots=True, frozen=True)
class StructuralMetadata:
    """Lightweight rule-based signals extracted from a cleaned body."""

    is_forwarded: bool
    is_reply: bool
    urgency: Urgency
    topics: frozenset[str]
    cc_count: int

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation."""
        return {
            "is_forwarded": self.is_forwarded,
            "is_reply": self.is_reply,
            "urgency": self.urgency.value,
            "topics": sorted(self.topics),
            "cc_count": self.cc_count,
        }


@dataclass(slots=True, frozen=True)
class CleanedContent:
    """Canonical body and metadata written back onto a :class:`RawEmail`."""

    canonical_text: str
    metadata: StructuralMetadata


@dataclass(slots=True)
class ValidatedTask:
    """Model suggestion mapped onto the internal task vocabulary."""

    title: str
    description: str
    priority: Priority
    category: TaskCategory | None
    due_date: datetime | None
    confidence: int
    source_snippet: str | None
    actors: tuple[str, ...]
    effort_minutes: int | None
    is_recurring: bool
    reminder_text: str | None
    original_suggestion: dict[str, Any]


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Task:
    """Persisted action item linked back to its source email."""

    id: int | None
    email_id: int | None
    title: str
    description: str
    priority: Priority
    category: TaskCategory | None
    due_date: datetime | None
    confidence: int
    needs_review: bool
    ai_generated: bool
    original_suggestion: dict[str, Any] | None
    source_snippet: str | None = None
    actors: tuple[str, ...] = ()
    effort_minutes: int | None = None
    is_recurring: bool = False
    reminder_text: str | None = None
    ai_model: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class NonActionable:
    """Verdict that no tasks should be extracted from an email."""

    classification: str
    explanation: str

    @property
    def is_marketing(self) -> bool:
        """Return ``True`` for promotional verdicts."""
        return self.classification == "marketing_promotional"


@dataclass(slots=True, frozen=True)
class TaskList:
    """Task suggestions returned by the model, still unvalidated."""

    tasks: tuple[dict[str, Any], ...]


@dataclass(slots=True, frozen=True)
class Malformed:
    """Response that matched neither expected shape."""

    reason: str
    raw: str


ClassificationResult = NonActionable | TaskList


@dataclass(slots=True)
class BatchTally:
    """Counters accumulated over one batch run."""

    tasks_created: int = 0
    marketing_count: int = 0
    non_actionable_count: int = 0


@dataclass(slots=True)
class EmailOutcome:
    """Terminal result recorded for one email in a batch."""

    email_id: int
    state: EmailState
    tasks_created: int = 0
    classification: str | None = None
    error: str | None = None
    error_type: str | None = None
    diagnostics: str | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class BatchSummary:
    """Aggregate returned by one orchestrator invocation."""

    processed: int
    tasks_created: int
    marketing_count: int
    non_actionable_count: int
    results: list[EmailOutcome] = field(default_factory=list)
    timed_out: bool = False
    skipped: int = 0
    error: str | None = None

    @property
    def failed(self) -> int:
        """Number of emails that ended in the failed state."""
        return sum(1 for result in self.results if result.state is EmailState.FAILED)


__all__ = [
    "BatchSummary",
    "BatchTally",
    "ClassificationResult",
    "CleanedContent",
    "EmailOutcome",
    "EmailState",
    "Malformed",
    "NonActionable",
    "Priority",
    "QuoteKind",
    "RawEmail",
    "StructuralMetadata",
    "Task",
    "TaskCategory",
    "TaskList",
    "Urgency",
    "ValidatedTask",
]
