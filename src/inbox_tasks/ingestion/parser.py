"""Utilities for parsing raw RFC822 messages into stored email rows."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.models import RawEmail


class EmailParser:
    """Convert raw email payloads into :class:`RawEmail` rows."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(self, payload: bytes) -> RawEmail:
        """Parse raw RFC822 bytes into an uncleaned :class:`RawEmail`."""
        message = self._parser.parsebytes(payload)
        to_recipients = _extract_addresses(message.get_all("To", []))
        cc_recipients = _extract_addresses(message.get_all("Cc", []))
        body_text, body_html = _extract_bodies(message)

        return RawEmail(
            id=None,
            sender=_take_first_address(message.get("From")),
            recipients=tuple(dict.fromkeys([*to_recipients, *cc_recipients])),
            subject=message.get("Subject"),
            body_text=body_text,
            body_html=body_html,
            received_at=_try_parse_datetime(message.get("Date")),
            cleaned=False,
            metadata=None,
            message_id=message.get("Message-ID"),
        )


def _extract_addresses(headers: Iterable[str]) -> list[str]:
    return [address for _, address in getaddresses(list(headers)) if address]


def _take_first_address(header_value: str | None) -> str | None:
    if header_value is None:
        return None
    addresses = _extract_addresses([header_value])
    return addresses[0] if addresses else None


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except (LookupError, UnicodeDecodeError):
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    text = _collapse_chunks(plain_chunks, "\n\n")
    html = _collapse_chunks(html_chunks, "\n")
    return text, html


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return parsedate_to_datetime(header_value)
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser"]
