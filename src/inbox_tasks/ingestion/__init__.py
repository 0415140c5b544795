"""Ingestion-side components: RFC822 parsing, body normalisation, metadata."""

from .metadata import clean_email, extract_metadata, select_body
from .normalizer import NormalizedBody, normalize, normalize_body
from .parser import EmailParser

__all__ = [
    "EmailParser",
    "NormalizedBody",
    "clean_email",
    "extract_metadata",
    "normalize",
    "normalize_body",
    "select_body",
]
