"""Prompt templates for LLM-driven task extraction."""

from __future__ import annotations

from textwrap import dedent

from inbox_tasks.core.models import TaskCategory

_CATEGORY_HINTS = {
    TaskCategory.FOLLOW_UP_RESPONSE_NEEDED: "tasks requiring a reply or check-in",
    TaskCategory.REPORT_GENERATION_SUBMISSION: (
        "creating, completing or submitting reports/documents"
    ),
    TaskCategory.MEETING_COORDINATION_PREP: (
        "scheduling, organizing, or preparing for meetings"
    ),
    TaskCategory.REVIEW_APPROVAL_FEEDBACK: "reviewing materials or providing feedback",
    TaskCategory.RESEARCH_INVESTIGATION_ANALYSIS: (
        "researching topics or analyzing information"
    ),
    TaskCategory.PLANNING_STRATEGY_DEVELOPMENT: (
        "planning projects or developing strategies"
    ),
    TaskCategory.CLIENT_VENDOR_COMMUNICATION: "communication with external parties",
    TaskCategory.INTERNAL_PROJECT_TASK: "specific project-related action items",
    TaskCategory.ADMINISTRATIVE_LOGISTICS: "operational or administrative tasks",
    TaskCategory.URGENT_ACTION_REQUIRED: (
        "high-priority items needing immediate attention"
    ),
    TaskCategory.INFORMATION_TO_DIGEST_REVIEW: (
        "items requiring attention but not a discrete task"
    ),
    TaskCategory.PERSONAL_REMINDER_APPT: "personal appointments or reminders",
}


def _category_lines() -> str:
    return "\n".join(
        f"- {category.value} (for {_CATEGORY_HINTS[category]})"
        for category in TaskCategory
    )


def build_system_instruction() -> str:
    """Return the fixed instruction describing categories and the JSON contract."""
    categories = _category_lines()
    template = """
    You are an assistant specialized in analyzing emails to extract actionable
    tasks, requests, and follow-ups. Respond strictly with one JSON object.

    Task categories (choose exactly one from this list for each task):
    {categories}

    When the email contains actionable items, respond with:
    {{
      "tasks": [
        {{
          "suggested_title": string,           # concise, action-oriented, max 100 chars
          "detailed_description": string,      # key context relevant to this task
          "source_snippet": string,            # exact sentence(s) that triggered the task
          "actors_involved": [string, ...],    # people or teams related to the task
          "suggested_priority_level": "P1_Critical" | "P2_High" | "P3_Medium" | "P4_Low",
          "extracted_deadline_text": string | null,  # deadline exactly as written
          "suggested_category": string,        # one of the categories above
          "estimated_effort_minutes": number | null,
          "is_recurring_hint": boolean,
          "reminder_suggestion_text": string | null,
          "confidence_in_task_extraction": number    # between 0.0 and 1.0
        }}
      ]
    }}

    When the email is marketing/promotional or contains no actionable tasks,
    respond with:
    {{
      "email_classification": "marketing_promotional" | "non_actionable",
      "explanation": string
    }}

    Never include both "tasks" and "email_classification". Do not include any
    prose outside the JSON object.
    """
    return dedent(template).strip().format(categories=categories)


def build_user_content(
    subject: str | None,
    sender: str | None,
    body_text: str,
    *,
    max_body_chars: int,
) -> str:
    """Compose the per-email message sent alongside the system instruction."""
    subject_line = subject or "(no subject)"
    sender_line = sender or "(unknown sender)"
    body = body_text.strip() or "(no content)"
    if len(body) > max_body_chars:
        body = body[:max_body_chars].rstrip() + "\n[truncated]"

    return "\n".join(
        (
            "Please analyze this email and extract any actionable tasks.",
            "",
            f"Subject: {subject_line}",
            f"From: {sender_line}",
            "",
            "Email body:",
            body,
        )
    )


__all__ = ["build_system_instruction", "build_user_content"]
