"""Tests for batch orchestration across cleaning, classification and storage."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from inbox_tasks.core.config import BatchSettings, StorageSettings
from inbox_tasks.core.errors import (
    BatchPreconditionError,
    PersistenceConstraintError,
    SchemaViolationError,
    UpstreamCallError,
)
from inbox_tasks.core.models import (
    BatchTally,
    ClassificationResult,
    EmailState,
    NonActionable,
    RawEmail,
    Task,
    TaskList,
)
from inbox_tasks.intelligence.mapper import MAX_EFFORT_MINUTES, ResponseMapper
from inbox_tasks.processing import (
    ACTIONABLE_LABEL,
    BatchOrchestrator,
    BatchRequest,
    TaskMaterializer,
)
from inbox_tasks.storage import SqliteTaskStore

NOW = datetime(2025, 6, 2, 8, 0, tzinfo=UTC)

Reply = ClassificationResult | Exception


class InMemoryTaskStore:
    """Minimal task store keeping emails and tasks in dictionaries."""

    def __init__(self, emails: Sequence[RawEmail]) -> None:
        self.emails: dict[int | None, RawEmail] = {email.id: email for email in emails}
        self.tasks: list[Task] = []
        self.updates: list[tuple[int, str, dict[str, Any]]] = []
        self.processed: dict[int, tuple[str, int]] = {}
        self.select_calls: list[dict[str, Any]] = []
        self.rejected_titles: set[str] = set()
        self.broken_titles: dict[str, Exception] = {}

    def select_unprocessed_emails(
        self,
        limit: int,
        *,
        since: datetime | None = None,
        email_ids: Sequence[int] | None = None,
        unprocessed_only: bool = True,
    ) -> list[RawEmail]:
        self.select_calls.append(
            {
                "limit": limit,
                "since": since,
                "email_ids": email_ids,
                "unprocessed_only": unprocessed_only,
            }
        )
        candidates = list(self.emails.values())
        if email_ids is not None:
            candidates = [email for email in candidates if email.id in email_ids]
        elif unprocessed_only:
            candidates = [
                email for email in candidates if email.id not in self.processed
            ]
        return [replace(email) for email in candidates[:limit]]

    def update_email(
        self, email_id: int, *, body_text: str, metadata: dict[str, Any], cleaned: bool
    ) -> None:
        assert cleaned is True
        self.updates.append((email_id, body_text, metadata))
        stored = self.emails[email_id]
        stored.body_text = body_text
        stored.metadata = metadata
        stored.cleaned = cleaned

    def insert_task(self, task: Task) -> Task:
        if task.title in self.broken_titles:
            raise self.broken_titles[task.title]
        if task.title in self.rejected_titles:
            raise PersistenceConstraintError("rejected", constraint="unknown")
        stored = replace(task, id=len(self.tasks) + 1)
        self.tasks.append(stored)
        return stored

    def mark_tasks_processed(
        self, email_id: int, *, classification: str, task_count: int
    ) -> None:
        self.processed[email_id] = (classification, task_count)


class ScriptedClassifier:
    """Return scripted replies per subject, consuming them in order."""

    def __init__(
        self,
        replies: dict[str, list[Reply]],
        on_call: Any = None,
    ) -> None:
        self.replies = replies
        self.calls: list[tuple[str | None, str]] = []
        self.on_call = on_call

    @property
    def provider_id(self) -> str:
        return "stub:model"

    def classify(
        self, subject: str | None, sender: str | None, canonical_text: str
    ) -> ClassificationResult:
        self.calls.append((subject, canonical_text))
        if self.on_call is not None:
            self.on_call()
        reply = self.replies[subject or ""].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    """Monotonic clock advanced explicitly by tests."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _email(
    email_id: int, subject: str, body: str | None, *, cleaned: bool = False
) -> RawEmail:
    return RawEmail(
        id=email_id,
        sender="sender@example.com",
        recipients=("me@example.com",),
        subject=subject,
        body_text=body,
        body_html=None,
        received_at=NOW - timedelta(hours=email_id),
        cleaned=cleaned,
    )


def _task(title: str, **extra: Any) -> dict[str, Any]:
    return {"suggested_title": title, **extra}


def _orchestrator(
    store: InMemoryTaskStore | SqliteTaskStore,
    classifier: ScriptedClassifier,
    clock: FakeClock | None = None,
    **settings: Any,
) -> BatchOrchestrator:
    fake = clock or FakeClock()
    return BatchOrchestrator(
        store,
        classifier,
        ResponseMapper(clock=lambda: NOW),
        TaskMaterializer(store, ai_model=classifier.provider_id),
        BatchSettings(**settings),
        clock=lambda: NOW,
        monotonic=fake.monotonic,
        sleep=fake.sleep,
    )


def test_one_failing_email_does_not_stop_the_batch() -> None:
    store = InMemoryTaskStore(
        [
            _email(1, "Report", "Please send the report by tomorrow."),
            _email(2, "Garbled", "Something odd"),
            _email(3, "Sale", "50% off everything!"),
        ]
    )
    classifier = ScriptedClassifier(
        {
            "Report": [
                TaskList(
                    tasks=(
                        _task("Send report", extracted_deadline_text="tomorrow"),
                        _task("Book review", confidence_in_task_extraction=0.5),
                    )
                )
            ],
            "Garbled": [SchemaViolationError("bad shape", raw_response="{}")],
            "Sale": [
                NonActionable(classification="marketing_promotional", explanation="ad")
            ],
        }
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=10))

    assert summary.processed == 3
    assert summary.tasks_created == 2
    assert summary.marketing_count == 1
    assert summary.non_actionable_count == 0
    assert summary.failed == 1
    assert [result.state for result in summary.results] == [
        EmailState.TASKS_CREATED,
        EmailState.FAILED,
        EmailState.NON_ACTIONABLE,
    ]
    failed = summary.results[1]
    assert failed.error_type == "SchemaViolationError"
    assert failed.diagnostics == "{}"
    assert store.processed == {
        1: (ACTIONABLE_LABEL, 2),
        3: ("marketing_promotional", 0),
    }
    assert [update[0] for update in store.updates] == [1, 2, 3]
    send, review = store.tasks
    assert send.due_date == NOW + timedelta(days=1)
    assert send.ai_model == "stub:model"
    assert review.confidence == 50
    assert review.needs_review is True


def test_marketing_email_creates_no_tasks() -> None:
    store = InMemoryTaskStore(
        [_email(1, "Deals", "Huge savings this weekend only! Unsubscribe here.")]
    )
    classifier = ScriptedClassifier(
        {
            "Deals": [
                NonActionable(
                    classification="marketing_promotional", explanation="promo"
                )
            ]
        }
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=5))

    assert summary.marketing_count == 1
    assert summary.tasks_created == 0
    assert store.tasks == []
    assert classifier.calls == [("Deals", "Huge savings this weekend only!")]
    (result,) = summary.results
    assert result.classification == "marketing_promotional"
    assert result.diagnostics == "promo"


def test_non_actionable_verdict_is_counted_separately() -> None:
    store = InMemoryTaskStore([_email(1, "FYI", "Office closed Monday.")])
    classifier = ScriptedClassifier(
        {"FYI": [NonActionable(classification="non_actionable", explanation="")]}
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=5))

    assert summary.non_actionable_count == 1
    assert summary.marketing_count == 0
    assert store.processed == {1: ("non_actionable", 0)}


def test_cleaning_is_persisted_before_classification() -> None:
    email = replace(
        _email(1, "Html", None),
        body_html=(
            "<html><body><p>URGENT: sign the contract</p>"
            '<a href="https://example.com">link</a></body></html>'
        ),
    )
    store = InMemoryTaskStore([email])

    def _assert_cleaned() -> None:
        assert store.updates, "cleaning must be stored before classifying"

    classifier = ScriptedClassifier({"Html": [TaskList(tasks=())]}, _assert_cleaned)

    _orchestrator(store, classifier).run(BatchRequest(limit=1))

    ((email_id, body_text, metadata),) = store.updates
    assert email_id == 1
    assert body_text == "URGENT: sign the contract\nlink"
    assert metadata["urgency"] == "high"
    assert metadata["topics"] == ["legal"]
    assert classifier.calls == [("Html", body_text)]
    assert store.emails[1].cleaned is True


def test_already_cleaned_email_is_not_cleaned_again() -> None:
    store = InMemoryTaskStore(
        [_email(1, "Clean", "Already canonical text", cleaned=True)]
    )
    classifier = ScriptedClassifier({"Clean": [TaskList(tasks=(_task("Do it"),))]})

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=1))

    assert store.updates == []
    assert classifier.calls == [("Clean", "Already canonical text")]
    assert summary.tasks_created == 1


def test_empty_task_list_still_marks_email_processed() -> None:
    store = InMemoryTaskStore([_email(1, "Empty", "Nothing here")])
    classifier = ScriptedClassifier({"Empty": [TaskList(tasks=())]})

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=1))

    assert summary.results[0].state is EmailState.TASKS_CREATED
    assert summary.results[0].tasks_created == 0
    assert store.processed == {1: (ACTIONABLE_LABEL, 0)}


def test_email_fails_when_no_task_could_be_stored() -> None:
    store = InMemoryTaskStore([_email(1, "Doomed", "Do things")])
    store.rejected_titles = {"A", "B"}
    classifier = ScriptedClassifier(
        {"Doomed": [TaskList(tasks=(_task("A"), _task("B")))]}
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=1))

    (result,) = summary.results
    assert result.state is EmailState.FAILED
    assert result.error_type == "PersistenceConstraintError"
    assert result.diagnostics == "'A': unknown; 'B': unknown"
    assert store.processed == {}


def test_partial_persistence_failure_keeps_created_tasks() -> None:
    store = InMemoryTaskStore([_email(1, "Mixed", "Do things")])
    store.rejected_titles = {"Bad"}
    classifier = ScriptedClassifier(
        {"Mixed": [TaskList(tasks=(_task("Bad"), _task("Good")))]}
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=1))

    (result,) = summary.results
    assert result.state is EmailState.TASKS_CREATED
    assert result.tasks_created == 1
    assert result.diagnostics == "'Bad': unknown"
    assert store.processed == {1: (ACTIONABLE_LABEL, 1)}


def test_upstream_errors_are_retried_with_backoff() -> None:
    store = InMemoryTaskStore([_email(1, "Flaky", "Please call Bob")])
    classifier = ScriptedClassifier(
        {
            "Flaky": [
                UpstreamCallError("429", kind="rate_limited"),
                UpstreamCallError("429", kind="rate_limited"),
                TaskList(tasks=(_task("Call Bob"),)),
            ]
        }
    )
    clock = FakeClock()

    summary = _orchestrator(
        store, classifier, clock, classification_attempts=3, retry_backoff_cap=1.5
    ).run(BatchRequest(limit=1))

    assert clock.sleeps == [1.0, 1.5]
    assert len(classifier.calls) == 3
    assert summary.tasks_created == 1


def test_exhausted_upstream_retries_fail_the_email_only() -> None:
    store = InMemoryTaskStore(
        [_email(1, "Down", "Text"), _email(2, "Up", "More text")]
    )
    classifier = ScriptedClassifier(
        {
            "Down": [
                UpstreamCallError("refused", kind="unreachable"),
                UpstreamCallError("refused", kind="unreachable"),
            ],
            "Up": [NonActionable(classification="non_actionable", explanation="")],
        }
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=5))

    down, up = summary.results
    assert down.state is EmailState.FAILED
    assert down.error_type == "UpstreamCallError"
    assert down.diagnostics == "unreachable"
    assert up.state is EmailState.NON_ACTIONABLE
    assert 1 not in store.processed


def test_retry_never_sleeps_past_the_deadline() -> None:
    store = InMemoryTaskStore([_email(1, "Slow", "Text")])
    classifier = ScriptedClassifier(
        {"Slow": [UpstreamCallError("timeout"), TaskList(tasks=())]}
    )
    clock = FakeClock()

    summary = _orchestrator(store, classifier, clock).run(
        BatchRequest(limit=1, timeout_seconds=0.5)
    )

    assert clock.sleeps == []
    assert summary.results[0].state is EmailState.FAILED


def test_unexpected_errors_are_isolated_per_email() -> None:
    store = InMemoryTaskStore([_email(1, "Boom", "x"), _email(2, "Fine", "y")])
    classifier = ScriptedClassifier(
        {
            "Boom": [RuntimeError("kaboom")],
            "Fine": [TaskList(tasks=(_task("Follow up"),))],
        }
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=5))

    boom, fine = summary.results
    assert boom.state is EmailState.FAILED
    assert boom.error_type == "RuntimeError"
    assert boom.error == "kaboom"
    assert fine.state is EmailState.TASKS_CREATED


def test_timeout_stops_starting_new_emails() -> None:
    clock = FakeClock()
    store = InMemoryTaskStore(
        [_email(1, "One", "a"), _email(2, "Two", "b"), _email(3, "Three", "c")]
    )

    def _advance() -> None:
        clock.now += 6.0

    classifier = ScriptedClassifier(
        {
            "One": [TaskList(tasks=(_task("First"),))],
            "Two": [TaskList(tasks=(_task("Second"),))],
            "Three": [TaskList(tasks=(_task("Third"),))],
        },
        _advance,
    )

    summary = _orchestrator(store, classifier, clock).run(
        BatchRequest(limit=10, timeout_seconds=10)
    )

    assert summary.timed_out is True
    assert summary.processed == 2
    assert summary.skipped == 1
    assert summary.tasks_created == 2
    assert summary.error is not None and "1 email(s) not started" in summary.error
    assert set(store.processed) == {1, 2}


@pytest.mark.parametrize(
    "request_",
    [
        BatchRequest(limit=0),
        BatchRequest(limit=5, days_back=-1),
        BatchRequest(limit=5, timeout_seconds=0),
    ],
)
def test_invalid_requests_raise_precondition_error(request_: BatchRequest) -> None:
    store = InMemoryTaskStore([])

    with pytest.raises(BatchPreconditionError):
        _orchestrator(store, ScriptedClassifier({})).run(request_)

    assert store.select_calls == []


def test_limit_is_clipped_and_filters_are_forwarded() -> None:
    store = InMemoryTaskStore([])

    summary = _orchestrator(store, ScriptedClassifier({}), max_batch_size=5).run(
        BatchRequest(limit=50, unprocessed_only=False, days_back=3, email_ids=[4, 2])
    )

    assert summary.processed == 0
    assert store.select_calls == [
        {
            "limit": 5,
            "since": NOW - timedelta(days=3),
            "email_ids": (4, 2),
            "unprocessed_only": False,
        }
    ]


def test_second_run_skips_processed_emails() -> None:
    store = InMemoryTaskStore([_email(1, "Once", "Please reply")])
    classifier = ScriptedClassifier({"Once": [TaskList(tasks=(_task("Reply"),))]})
    orchestrator = _orchestrator(store, classifier)

    first = orchestrator.run(BatchRequest(limit=5))
    second = orchestrator.run(BatchRequest(limit=5))

    assert first.tasks_created == 1
    assert second.processed == 0
    assert len(store.tasks) == 1


def test_store_error_outside_constraints_drops_only_that_task() -> None:
    store = InMemoryTaskStore([_email(1, "Mixed", "Do things")])
    store.broken_titles = {"Huge": OverflowError("int too large")}
    classifier = ScriptedClassifier(
        {"Mixed": [TaskList(tasks=(_task("Huge"), _task("Small")))]}
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=1))

    (result,) = summary.results
    assert result.state is EmailState.TASKS_CREATED
    assert result.tasks_created == 1
    assert result.diagnostics == "'Huge': unexpected"
    assert [task.title for task in store.tasks] == ["Small"]
    assert store.processed == {1: (ACTIONABLE_LABEL, 1)}


def test_email_fails_when_store_breaks_for_every_task() -> None:
    store = InMemoryTaskStore(
        [_email(1, "Broken", "Do things"), _email(2, "Later", "More things")]
    )
    store.broken_titles = {"A": OSError("disk full")}
    classifier = ScriptedClassifier(
        {
            "Broken": [TaskList(tasks=(_task("A"),))],
            "Later": [TaskList(tasks=(_task("B"),))],
        }
    )

    summary = _orchestrator(store, classifier).run(BatchRequest(limit=5))

    broken, later = summary.results
    assert broken.state is EmailState.FAILED
    assert broken.diagnostics == "'A': unexpected"
    assert later.state is EmailState.TASKS_CREATED
    assert store.processed == {2: (ACTIONABLE_LABEL, 1)}


def test_oversized_effort_estimate_does_not_abort_sibling_tasks(
    tmp_path: Path,
) -> None:
    with SqliteTaskStore(StorageSettings(db_path=tmp_path / "tasks.db")) as store:
        email = store.persist_email(_email(1, "Plan", "Plan the migration"))
        classifier = ScriptedClassifier(
            {
                "Plan": [
                    TaskList(
                        tasks=(
                            _task("A", estimated_effort_minutes=1e20),
                            _task("B", estimated_effort_minutes=MAX_EFFORT_MINUTES),
                        )
                    )
                ]
            }
        )

        summary = _orchestrator(store, classifier).run(BatchRequest(limit=1))

        assert summary.tasks_created == 2
        tasks = {task.title: task for task in store.list_tasks(email_id=email.id)}
        assert tasks["A"].effort_minutes is None
        assert tasks["B"].effort_minutes == MAX_EFFORT_MINUTES
        assert store.count_emails(unprocessed_only=True) == 0


def test_rerun_after_interrupted_batch_marks_email_processed(
    tmp_path: Path,
) -> None:
    with SqliteTaskStore(StorageSettings(db_path=tmp_path / "tasks.db")) as store:
        email = store.persist_email(_email(1, "Resume", "Please reply to Ana"))
        assert email.id is not None
        suggestion = _task("Reply to Ana")
        mapped = ResponseMapper(clock=lambda: NOW).map(TaskList(tasks=(suggestion,)))
        assert isinstance(mapped, list)
        # A previous run stored the task but stopped before marking the email.
        TaskMaterializer(store).materialize(email.id, mapped, BatchTally())
        classifier = ScriptedClassifier(
            {"Resume": [TaskList(tasks=(dict(suggestion),))]}
        )
        orchestrator = _orchestrator(store, classifier)

        first = orchestrator.run(BatchRequest(limit=5))
        second = orchestrator.run(BatchRequest(limit=5))

        (result,) = first.results
        assert result.state is EmailState.TASKS_CREATED
        assert result.tasks_created == 0
        assert first.tasks_created == 0
        assert [task.title for task in store.list_tasks()] == ["Reply to Ana"]
        assert store.count_emails(unprocessed_only=True) == 0
        assert second.processed == 0
