"""Classification invoker and the strict decoder guarding its trust boundary."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from inbox_tasks.core.errors import SchemaViolationError
from inbox_tasks.core.interfaces import LLMClient
from inbox_tasks.core.models import (
    ClassificationResult,
    Malformed,
    NonActionable,
    TaskList,
)

from .prompts import build_system_instruction, build_user_content

LOGGER = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


class _TaskListEnvelope(BaseModel):
    """Shape of an actionable response; items are validated by the mapper."""

    model_config = ConfigDict(extra="ignore")

    tasks: list[dict[str, Any]]


class _NonActionableEnvelope(BaseModel):
    """Shape of a verdict that no tasks should be extracted."""

    model_config = ConfigDict(extra="ignore")

    email_classification: Literal["marketing_promotional", "non_actionable"]
    explanation: str


def decode_classification(raw: str) -> NonActionable | TaskList | Malformed:
    """Decode model output into exactly one variant, or :class:`Malformed`.

    Partial structural matches (both keys, a non-list ``tasks``, non-object
    items, unknown labels, a missing explanation) are rejected outright.
    """
    fenced = _CODE_FENCE.match(raw)
    text = fenced.group(1) if fenced else raw
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return Malformed(reason="response is not valid JSON", raw=raw)
    if not isinstance(payload, dict):
        return Malformed(reason="response is not a JSON object", raw=raw)

    has_tasks = "tasks" in payload
    has_verdict = "email_classification" in payload
    if has_tasks and has_verdict:
        return Malformed(reason="response mixes tasks and a classification", raw=raw)

    if has_tasks:
        try:
            _TaskListEnvelope.model_validate(payload)
        except ValidationError as exc:
            return Malformed(
                reason=f"invalid task list ({exc.error_count()} error(s))", raw=raw
            )
        return TaskList(tasks=tuple(payload["tasks"]))

    if has_verdict:
        try:
            verdict = _NonActionableEnvelope.model_validate(payload)
        except ValidationError as exc:
            return Malformed(
                reason=f"invalid classification ({exc.error_count()} error(s))",
                raw=raw,
            )
        return NonActionable(
            classification=verdict.email_classification,
            explanation=verdict.explanation,
        )

    return Malformed(reason="response matches neither expected shape", raw=raw)


class EmailClassifier:
    """Ask the text-generation provider for tasks or a non-actionable verdict.

    The classifier performs exactly one provider call per invocation; retry
    policy belongs to the caller.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        *,
        temperature: float = 0.2,
        max_body_chars: int = 8000,
    ) -> None:
        self._llm_client = llm_client
        self._temperature = temperature
        self._max_body_chars = max_body_chars
        self._system_instruction = build_system_instruction()

    @property
    def provider_id(self) -> str:
        """Identifier of the model answering classification requests."""
        return self._llm_client.provider_id

    def classify(
        self, subject: str | None, sender: str | None, canonical_text: str
    ) -> ClassificationResult:
        """Classify one cleaned email.

        Raises:
            UpstreamCallError: the provider could not be reached or refused.
            SchemaViolationError: the response matched neither variant.
        """
        user_content = build_user_content(
            subject, sender, canonical_text, max_body_chars=self._max_body_chars
        )
        raw_output = self._llm_client.complete(
            self._system_instruction, user_content, temperature=self._temperature
        )
        decoded = decode_classification(raw_output)
        if isinstance(decoded, Malformed):
            LOGGER.debug("Rejected classification payload: %.500s", decoded.raw)
            raise SchemaViolationError(
                f"Classification response rejected: {decoded.reason}",
                raw_response=decoded.raw,
            )
        return decoded


__all__ = ["EmailClassifier", "decode_classification"]
