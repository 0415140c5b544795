"""Tests for the classification invoker and its response decoder."""

from __future__ import annotations

import json

import pytest

from inbox_tasks.core.errors import SchemaViolationError, UpstreamCallError
from inbox_tasks.core.models import Malformed, NonActionable, TaskList
from inbox_tasks.intelligence.classifier import EmailClassifier, decode_classification


class StubLLMClient:
    """Return a canned completion and remember the prompts it was sent."""

    def __init__(self, output: str | Exception) -> None:
        self.output = output
        self.calls: list[tuple[str, str, float]] = []

    @property
    def provider_id(self) -> str:
        return "stub:model"

    def complete(self, system: str, user: str, *, temperature: float) -> str:
        self.calls.append((system, user, temperature))
        if isinstance(self.output, Exception):
            raise self.output
        return self.output


def test_decodes_task_list_keeping_raw_items() -> None:
    item = {"suggested_title": "Send report", "unexpected": [1, 2]}

    result = decode_classification(json.dumps({"tasks": [item]}))

    assert result == TaskList(tasks=(item,))


def test_decodes_empty_task_list() -> None:
    assert decode_classification('{"tasks": []}') == TaskList(tasks=())


def test_decodes_marketing_verdict() -> None:
    raw = json.dumps(
        {"email_classification": "marketing_promotional", "explanation": "Sale!"}
    )

    result = decode_classification(raw)

    assert isinstance(result, NonActionable)
    assert result.is_marketing
    assert result.explanation == "Sale!"


def test_decodes_json_inside_code_fence() -> None:
    raw = (
        '```json\n'
        '{"email_classification": "non_actionable", "explanation": "FYI"}\n'
        "```"
    )

    result = decode_classification(raw)

    assert result == NonActionable(classification="non_actionable", explanation="FYI")


@pytest.mark.parametrize(
    "raw",
    [
        "Sure! Here are your tasks.",
        "[]",
        '{"tasks": [], "email_classification": "non_actionable", "explanation": "x"}',
        '{"tasks": "send the report"}',
        '{"tasks": ["send the report"]}',
        '{"email_classification": "spam", "explanation": "x"}',
        '{"email_classification": "non_actionable"}',
        '{"summary": "nothing to do"}',
    ],
)
def test_rejects_partial_or_foreign_shapes(raw: str) -> None:
    result = decode_classification(raw)

    assert isinstance(result, Malformed)
    assert result.raw == raw
    assert result.reason


def test_classifier_builds_prompt_and_returns_decoded_result() -> None:
    llm = StubLLMClient('{"tasks": [{"suggested_title": "Book room"}]}')
    classifier = EmailClassifier(llm, temperature=0.3, max_body_chars=200)

    result = classifier.classify("Offsite", "ceo@example.com", "x" * 500)

    assert result == TaskList(tasks=({"suggested_title": "Book room"},))
    assert classifier.provider_id == "stub:model"
    ((system, user, temperature),) = llm.calls
    assert temperature == 0.3
    assert "FollowUp_ResponseNeeded" in system
    assert '"email_classification"' in system
    assert "Subject: Offsite" in user
    assert "From: ceo@example.com" in user
    assert user.endswith("[truncated]")
    assert "x" * 201 not in user


def test_classifier_raises_schema_violation_with_raw_response() -> None:
    classifier = EmailClassifier(StubLLMClient('{"oops": true}'))

    with pytest.raises(SchemaViolationError) as excinfo:
        classifier.classify("s", "a@example.com", "body")

    assert excinfo.value.raw_response == '{"oops": true}'


def test_classifier_propagates_upstream_errors_without_retrying() -> None:
    llm = StubLLMClient(UpstreamCallError("down", kind="unreachable"))
    classifier = EmailClassifier(llm)

    with pytest.raises(UpstreamCallError):
        classifier.classify(None, None, "")

    assert len(llm.calls) == 1
    assert "(no subject)" in llm.calls[0][1]
    assert "(no content)" in llm.calls[0][1]
