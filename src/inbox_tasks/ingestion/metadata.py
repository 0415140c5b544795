"""Rule-based structural signals derived from a cleaned email body."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from types import MappingProxyType

from ..core.models import (
    CleanedContent,
    QuoteKind,
    RawEmail,
    StructuralMetadata,
    Urgency,
)
from .normalizer import normalize_body

LOGGER = logging.getLogger(__name__)

URGENCY_KEYWORDS: tuple[str, ...] = (
    "urgent",
    "asap",
    "immediately",
    "emergency",
    "critical",
    "right away",
    "deadline today",
    "high priority",
    "time sensitive",
)

TOPIC_KEYWORDS = MappingProxyType(
    {
        "work": (
            "project",
            "deadline",
            "presentation",
            "review",
            "agenda",
            "conference",
            "status update",
            "report",
        ),
        "meeting": (
            "meeting",
            "calendar",
            "schedule",
            "invite",
            "call",
            "zoom",
        ),
        "financial": (
            "invoice",
            "payment",
            "bill",
            "transaction",
            "receipt",
            "subscription",
            "expense",
            "credit",
            "finance",
        ),
        "personal": (
            "family",
            "friend",
            "personal",
            "vacation",
            "holiday",
            "weekend",
            "birthday",
            "celebration",
        ),
        "travel": (
            "travel",
            "flight",
            "hotel",
            "reservation",
            "booking",
            "itinerary",
            "trip",
        ),
        "legal": ("contract", "agreement", "legal", "compliance", "nda"),
        "support": ("support", "issue", "bug", "error", "incident", "ticket"),
    }
)


def extract_metadata(
    text: str,
    recipients: Sequence[str],
    *,
    quote_kind: QuoteKind | None = None,
) -> StructuralMetadata:
    """Derive forwarded/reply flags, urgency, topics and CC count."""
    lowered = text.lower()
    urgent = any(keyword in lowered for keyword in URGENCY_KEYWORDS)
    topics = frozenset(
        topic
        for topic, keywords in TOPIC_KEYWORDS.items()
        if any(keyword in lowered for keyword in keywords)
    )
    return StructuralMetadata(
        is_forwarded=quote_kind is QuoteKind.FORWARD,
        is_reply=quote_kind is QuoteKind.REPLY,
        urgency=Urgency.HIGH if urgent else Urgency.NORMAL,
        topics=topics,
        cc_count=max(0, len(recipients) - 1),
    )


def select_body(email: RawEmail) -> str | None:
    """Pick the body to clean: the text part when present, otherwise HTML."""
    if email.body_text and email.body_text.strip():
        return email.body_text
    return email.body_html


def clean_email(email: RawEmail) -> CleanedContent:
    """Normalise an email body and extract its structural metadata."""
    normalized = normalize_body(select_body(email))
    metadata = extract_metadata(
        normalized.text, email.recipients, quote_kind=normalized.quote_kind
    )
    LOGGER.debug(
        "Cleaned email %s: %s chars, forwarded=%s, reply=%s",
        email.id,
        len(normalized.text),
        metadata.is_forwarded,
        metadata.is_reply,
    )
    return CleanedContent(canonical_text=normalized.text, metadata=metadata)


__all__ = [
    "TOPIC_KEYWORDS",
    "URGENCY_KEYWORDS",
    "clean_email",
    "extract_metadata",
    "select_body",
]
