"""Convert raw email bodies into canonical, marker-free plain text.

The pipeline runs in five ordered stages:

1. structural strip of HTML (BeautifulSoup, with a regex-only fallback),
2. footer and boilerplate truncation,
3. quote/forward truncation,
4. marker and URL eradication (bounded fixed-point loop),
5. entity, angle-bracket and whitespace canonicalisation.

Stages 2-5 are repeated until the text stops changing, so the output of
:func:`normalize` is a fixed point of the function itself.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup, Comment, Tag

from ..core.errors import InputError
from ..core.models import QuoteKind

LOGGER = logging.getLogger(__name__)

MAX_MARKER_PASSES = 50
MAX_NORMALIZE_PASSES = 12

_HTML_HINT = re.compile(
    r"<!doctype\s+html|</?(?:html|head|body|div|p|br|span|table|tbody|tr|td|th|a"
    r"|img|font|b|i|u|strong|em|ul|ol|li|h[1-6]|style|script|center|blockquote"
    r"|hr|meta|title|section|article|header|footer)\b[^>]*>",
    re.IGNORECASE,
)

# Structural stage ------------------------------------------------------------
_DROP_TAGS = (
    "script",
    "style",
    "head",
    "title",
    "meta",
    "link",
    "noscript",
    "template",
    "svg",
)
_BLOCK_TAGS = (
    "p",
    "div",
    "table",
    "tr",
    "ul",
    "ol",
    "li",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "blockquote",
    "section",
    "article",
    "header",
    "footer",
    "center",
    "pre",
    "hr",
)
_HIDDEN_STYLE = re.compile(
    r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE
)
_PIXEL_STYLE = re.compile(r"(?:width|height)\s*:\s*[01]px", re.IGNORECASE)
_LEADING_INT = re.compile(r"\s*(\d+)")

_FALLBACK_DROP = re.compile(
    r"<(script|style|head|title)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL
)
_FALLBACK_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_FALLBACK_BREAK = re.compile(
    r"<\s*(?:br|hr|/p|/div|/tr|/li|/h[1-6]|/table|/blockquote)\b[^>]*>",
    re.IGNORECASE,
)
_FALLBACK_TAG = re.compile(r"</?[a-zA-Z!][^>]*>")

# Boilerplate stage -----------------------------------------------------------
_FOOTER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"(?:\bclick\s+here\s+to\s+|\bto\s+|\bor\s+)?\bunsubscribe\b", re.IGNORECASE
    ),
    re.compile(
        r"\b(?:manage|update)\s+(?:your\s+)?(?:e-?mail\s+)?"
        r"(?:preferences|subscriptions?)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\bconfidentiality\s+notice\b|\bthis\s+(?:e-?mail|message|communication)"
        r"(?:\s+and\s+any\s+(?:files|attachments)(?:\s+transmitted\s+with\s+it)?)?"
        r"\s+(?:is|are|may\s+contain|contains)\s+(?:strictly\s+)?"
        r"(?:confidential|privileged)",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:follow|connect\s+with|find|like)\s+us\s+on\b", re.IGNORECASE
    ),
    re.compile(
        r"(?:©|\(c\)|\bcopyright\b)(?:\s*(?:©|\(c\)))?\s*\d{4}", re.IGNORECASE
    ),
    re.compile(r"\ball\s+rights\s+reserved\b", re.IGNORECASE),
    re.compile(r"^[ \t]*Sent from my \w+", re.IGNORECASE | re.MULTILINE),
)

# Quote/forward stage ---------------------------------------------------------
_QUOTE_DELIMITERS: tuple[tuple[re.Pattern[str], QuoteKind], ...] = (
    (
        re.compile(
            r"^[ \t]*-{2,}[ \t]*Forwarded message[ \t]*-{2,}",
            re.IGNORECASE | re.MULTILINE,
        ),
        QuoteKind.FORWARD,
    ),
    (
        re.compile(r"^[ \t]*Begin forwarded message:", re.IGNORECASE | re.MULTILINE),
        QuoteKind.FORWARD,
    ),
    (
        re.compile(
            r"^[ \t]*-{2,}[ \t]*Original Message[ \t]*-{2,}",
            re.IGNORECASE | re.MULTILINE,
        ),
        QuoteKind.REPLY,
    ),
    (
        re.compile(
            r"^[ \t]*On\b[^\n]{0,300}?(?:\n[^\n]{0,300}?)?\bwrote:[ \t]*$",
            re.IGNORECASE | re.MULTILINE,
        ),
        QuoteKind.REPLY,
    ),
    (
        re.compile(
            r"^[ \t]*From:[^\n]*\n(?:[^\n]*\n){0,4}?[ \t]*Sent:",
            re.IGNORECASE | re.MULTILINE,
        ),
        QuoteKind.REPLY,
    ),
    (re.compile(r"^[ \t]*>", re.MULTILINE), QuoteKind.REPLY),
)

# Marker stage ----------------------------------------------------------------
_URL = re.compile(r"(?:https?://|mailto:|www\.)[^\s<>\"')\]]*", re.IGNORECASE)
_REMOVED_MARKER = re.compile(r"\[[^\[\]]*\bREMOVED\b[^\[\]]*\]", re.IGNORECASE)
_EMPTY_SHELL = re.compile(r"\"\"\s*<\s*>|\[\s*\]|\(\s*\)|<\s*>")

# Canonical stage -------------------------------------------------------------
_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\u2060\ufeff\u00ad\u034f]")
_ANGLE = re.compile(r"[<>]")
_HORIZONTAL_SPACE = re.compile(r"[^\S\n]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass(slots=True, frozen=True)
class NormalizedBody:
    """Canonical text plus the quoting delimiter found before truncation."""

    text: str
    quote_kind: QuoteKind | None


def looks_like_html(raw: str) -> bool:
    """Return ``True`` when ``raw`` contains recognisable HTML markup."""
    return _HTML_HINT.search(raw) is not None


def normalize(raw: str | bytes | None) -> str:
    """Return the canonical plain-text form of ``raw``."""
    return normalize_body(raw).text


def normalize_body(raw: str | bytes | None) -> NormalizedBody:
    """Normalise ``raw`` and report whether it carried a reply or forward."""
    text = _coerce_text(raw)
    if not text:
        return NormalizedBody(text="", quote_kind=None)

    if looks_like_html(text):
        try:
            text = _structural_strip(text)
        except InputError as exc:
            LOGGER.debug("Falling back to regex HTML stripping: %s", exc)
            text = _regex_strip(text)

    quote_kind: QuoteKind | None = None
    for _ in range(MAX_NORMALIZE_PASSES):
        candidate = _strip_boilerplate(text)
        candidate, detected = _truncate_quoted(candidate)
        if quote_kind is None:
            quote_kind = detected
        candidate = _strip_markers(candidate)
        candidate = _canonicalize(candidate)
        if candidate == text:
            break
        text = candidate
    else:
        LOGGER.debug(
            "Normalisation did not settle after %s passes", MAX_NORMALIZE_PASSES
        )

    return NormalizedBody(text=text, quote_kind=quote_kind)


def _coerce_text(raw: str | bytes | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


def _structural_strip(markup: str) -> str:
    """Flatten HTML into text, dropping non-content nodes and link targets."""
    try:
        soup = BeautifulSoup(markup, "html.parser")
        for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
            comment.extract()
        _decompose_all(soup.find_all(_DROP_TAGS))
        _decompose_all(soup.find_all(style=_HIDDEN_STYLE))

        for image in soup.find_all("img"):
            if image.decomposed:
                continue
            alt = str(image.get("alt") or "").strip()
            if _is_tracking_pixel(image) or not alt:
                image.decompose()
            else:
                image.replace_with(f"[IMAGE: {alt}]")

        for link in soup.find_all("a"):
            link.unwrap()
        for line_break in soup.find_all("br"):
            line_break.replace_with("\n")
        for block in soup.find_all(_BLOCK_TAGS):
            block.insert_before("\n")
            block.insert_after("\n")
        for cell in soup.find_all(["td", "th"]):
            cell.insert_after(" ")

        return soup.get_text()
    except Exception as exc:  # pylint: disable=broad-except
        raise InputError(f"Unparseable HTML body: {exc}") from exc


def _decompose_all(tags: list[Tag]) -> None:
    for tag in tags:
        # Children of an already removed parent are flagged as decomposed too.
        if not tag.decomposed:
            tag.decompose()


def _is_tracking_pixel(image: Tag) -> bool:
    width = _pixel_size(image.get("width"))
    height = _pixel_size(image.get("height"))
    if width is not None and height is not None and width <= 1 and height <= 1:
        return True
    style = str(image.get("style") or "")
    return len(_PIXEL_STYLE.findall(style)) >= 2


def _pixel_size(value: object) -> int | None:
    if value is None:
        return None
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


def _regex_strip(markup: str) -> str:
    text = _FALLBACK_COMMENT.sub("", markup)
    text = _FALLBACK_DROP.sub("", text)
    text = _FALLBACK_BREAK.sub("\n", text)
    return _FALLBACK_TAG.sub("", text)


def _strip_boilerplate(text: str) -> str:
    for pattern in _FOOTER_PATTERNS:
        match = pattern.search(text)
        if match is not None:
            text = text[: match.start()]
    return text


def _truncate_quoted(text: str) -> tuple[str, QuoteKind | None]:
    cut: int | None = None
    kind: QuoteKind | None = None
    for pattern, candidate_kind in _QUOTE_DELIMITERS:
        match = pattern.search(text)
        if match is not None and (cut is None or match.start() < cut):
            cut = match.start()
            kind = candidate_kind
    if cut is None:
        return text, None
    return text[:cut], kind


def _strip_markers(text: str) -> str:
    for _ in range(MAX_MARKER_PASSES):
        stripped = _URL.sub("", text)
        stripped = _REMOVED_MARKER.sub("", stripped)
        stripped = _EMPTY_SHELL.sub("", stripped)
        if stripped == text:
            return stripped
        text = stripped
    LOGGER.debug("Marker removal hit the %s pass cap", MAX_MARKER_PASSES)
    return text


def _canonicalize(text: str) -> str:
    # Every effective unescape shortens the text, so this terminates.
    while (unescaped := html.unescape(text)) != text:
        text = unescaped
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _ZERO_WIDTH.sub("", text)
    text = _ANGLE.sub(" ", text)
    text = _HORIZONTAL_SPACE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


__all__ = [
    "MAX_MARKER_PASSES",
    "MAX_NORMALIZE_PASSES",
    "NormalizedBody",
    "looks_like_html",
    "normalize",
    "normalize_body",
]
