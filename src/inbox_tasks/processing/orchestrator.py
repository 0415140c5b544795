"""Batch orchestration of cleaning, classification and task materialization."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..core.config import BatchSettings
from ..core.datetime_utils import utc_now
from ..core.errors import (
    BatchPreconditionError,
    BatchTimeoutError,
    SchemaViolationError,
    UpstreamCallError,
)
from ..core.interfaces import Classifier, TaskStore
from ..core.models import (
    BatchSummary,
    BatchTally,
    ClassificationResult,
    EmailOutcome,
    EmailState,
    NonActionable,
    RawEmail,
)
from ..ingestion.metadata import clean_email
from ..intelligence.mapper import ResponseMapper
from .materializer import TaskMaterializer

LOGGER = logging.getLogger(__name__)

ACTIONABLE_LABEL = "actionable"
_DIAGNOSTIC_CHARS = 2000


@dataclass(slots=True)
class BatchRequest:
    """Selection parameters for one orchestrator run."""

    limit: int
    unprocessed_only: bool = True
    days_back: int | None = None
    email_ids: Sequence[int] | None = None
    timeout_seconds: float | None = None


# pylint: disable=too-many-instance-attributes
class BatchOrchestrator:
    """Drive each selected email from selection to a terminal state.

    Emails are handled strictly one after another. A failure while handling
    one email is recorded on its outcome and never stops the batch; only
    invalid selection parameters raise.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        store: TaskStore,
        classifier: Classifier,
        mapper: ResponseMapper,
        materializer: TaskMaterializer,
        settings: BatchSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._mapper = mapper
        self._materializer = materializer
        self._settings = settings
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    def run(self, request: BatchRequest) -> BatchSummary:
        """Process one batch and return its aggregate.

        Raises:
            BatchPreconditionError: the selection parameters are invalid.
        """
        limit = self._validate(request)
        deadline = None
        if request.timeout_seconds is not None:
            deadline = self._monotonic() + request.timeout_seconds

        since = None
        if request.days_back is not None:
            since = self._clock() - timedelta(days=request.days_back)
        email_ids = tuple(request.email_ids) if request.email_ids is not None else None
        emails = self._store.select_unprocessed_emails(
            limit,
            since=since,
            email_ids=email_ids,
            unprocessed_only=request.unprocessed_only,
        )
        LOGGER.info("Selected %d email(s) for task extraction", len(emails))

        tally = BatchTally()
        results: list[EmailOutcome] = []
        timeout_error: BatchTimeoutError | None = None
        for index, email in enumerate(emails):
            if deadline is not None and self._monotonic() >= deadline:
                remaining = len(emails) - index
                timeout_error = BatchTimeoutError(
                    f"Batch timeout of {request.timeout_seconds}s reached; "
                    f"{remaining} email(s) not started"
                )
                LOGGER.warning("%s", timeout_error)
                break
            results.append(self._process_email(email, tally, deadline))

        summary = BatchSummary(
            processed=len(results),
            tasks_created=tally.tasks_created,
            marketing_count=tally.marketing_count,
            non_actionable_count=tally.non_actionable_count,
            results=results,
            timed_out=timeout_error is not None,
            skipped=len(emails) - len(results),
            error=str(timeout_error) if timeout_error is not None else None,
        )
        LOGGER.info(
            "Batch finished: processed=%d tasks=%d marketing=%d non_actionable=%d "
            "failed=%d skipped=%d",
            summary.processed,
            summary.tasks_created,
            summary.marketing_count,
            summary.non_actionable_count,
            summary.failed,
            summary.skipped,
        )
        return summary

    def _validate(self, request: BatchRequest) -> int:
        if request.limit < 1:
            raise BatchPreconditionError(
                f"Batch limit must be at least 1, got {request.limit}"
            )
        if request.days_back is not None and request.days_back < 0:
            raise BatchPreconditionError(
                f"days_back must not be negative, got {request.days_back}"
            )
        if request.timeout_seconds is not None and request.timeout_seconds <= 0:
            raise BatchPreconditionError(
                f"Batch timeout must be positive, got {request.timeout_seconds}"
            )
        if request.limit > self._settings.max_batch_size:
            LOGGER.info(
                "Clipping batch limit %d to %d",
                request.limit,
                self._settings.max_batch_size,
            )
            return self._settings.max_batch_size
        return request.limit

    def _process_email(
        self, email: RawEmail, tally: BatchTally, deadline: float | None
    ) -> EmailOutcome:
        email_id = int(email.id) if email.id is not None else -1
        state = EmailState.SELECTED
        try:
            canonical_text = self._ensure_clean(email_id, email)
            state = EmailState.CLEANED
            result = self._classify(email, canonical_text, deadline)
            state = EmailState.CLASSIFIED
            return self._complete(email_id, result, tally)
        except SchemaViolationError as exc:
            LOGGER.warning("Email %s: %s", email_id, exc)
            return _failed(
                email_id,
                exc,
                diagnostics=(exc.raw_response or "")[:_DIAGNOSTIC_CHARS] or None,
            )
        except UpstreamCallError as exc:
            LOGGER.warning(
                "Email %s: classification unavailable (%s): %s", email_id, exc.kind, exc
            )
            return _failed(email_id, exc, diagnostics=exc.kind)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Email %s: unexpected error after state %s",
                email_id,
                state,
                exc_info=True,
            )
            return _failed(email_id, exc, diagnostics=f"last state: {state}")

    def _ensure_clean(self, email_id: int, email: RawEmail) -> str:
        if email.cleaned:
            LOGGER.debug("Email %s already cleaned; reusing stored body", email_id)
            return email.body_text or ""
        cleaned = clean_email(email)
        metadata = cleaned.metadata.to_dict()
        self._store.update_email(
            email_id,
            body_text=cleaned.canonical_text,
            metadata=metadata,
            cleaned=True,
        )
        email.body_text = cleaned.canonical_text
        email.metadata = metadata
        email.cleaned = True
        return cleaned.canonical_text

    def _classify(
        self, email: RawEmail, canonical_text: str, deadline: float | None
    ) -> ClassificationResult:
        attempts = max(1, self._settings.classification_attempts)
        attempt = 1
        while True:
            try:
                return self._classifier.classify(
                    email.subject, email.sender, canonical_text
                )
            except UpstreamCallError as exc:
                if attempt >= attempts:
                    raise
                delay = min(2.0 ** (attempt - 1), self._settings.retry_backoff_cap)
                if deadline is not None and self._monotonic() + delay >= deadline:
                    LOGGER.debug(
                        "Email %s: no time left to retry classification", email.id
                    )
                    raise
                LOGGER.warning(
                    "Email %s: classification attempt %d/%d failed (%s); "
                    "retrying in %.1fs",
                    email.id,
                    attempt,
                    attempts,
                    exc.kind,
                    delay,
                )
                self._sleep(delay)
                attempt += 1

    def _complete(
        self, email_id: int, result: ClassificationResult, tally: BatchTally
    ) -> EmailOutcome:
        mapped = self._mapper.map(result)
        if isinstance(mapped, NonActionable):
            self._materializer.record_verdict(mapped, tally)
            self._store.mark_tasks_processed(
                email_id, classification=mapped.classification, task_count=0
            )
            LOGGER.info("Email %s classified as %s", email_id, mapped.classification)
            return EmailOutcome(
                email_id=email_id,
                state=EmailState.NON_ACTIONABLE,
                classification=mapped.classification,
                diagnostics=mapped.explanation or None,
            )

        outcome = self._materializer.materialize(email_id, mapped, tally)
        failures = "; ".join(
            f"{failure.title!r}: {failure.constraint}" for failure in outcome.failures
        )
        if outcome.all_failed:
            LOGGER.warning(
                "Email %s: none of %d task(s) could be stored",
                email_id,
                len(outcome.failures),
            )
            return EmailOutcome(
                email_id=email_id,
                state=EmailState.FAILED,
                classification=ACTIONABLE_LABEL,
                error=f"none of {len(outcome.failures)} task(s) could be stored",
                error_type="PersistenceConstraintError",
                diagnostics=failures,
            )

        self._store.mark_tasks_processed(
            email_id,
            classification=ACTIONABLE_LABEL,
            task_count=outcome.stored_count,
        )
        LOGGER.info(
            "Email %s: created %d task(s), %d already stored",
            email_id,
            len(outcome.created),
            len(outcome.already_stored),
        )
        return EmailOutcome(
            email_id=email_id,
            state=EmailState.TASKS_CREATED,
            tasks_created=len(outcome.created),
            classification=ACTIONABLE_LABEL,
            diagnostics=failures or None,
        )


def _failed(
    email_id: int, exc: BaseException, *, diagnostics: str | None = None
) -> EmailOutcome:
    return EmailOutcome(
        email_id=email_id,
        state=EmailState.FAILED,
        error=str(exc),
        error_type=type(exc).__name__,
        diagnostics=diagnostics,
    )


__all__ = ["ACTIONABLE_LABEL", "BatchOrchestrator", "BatchRequest"]
