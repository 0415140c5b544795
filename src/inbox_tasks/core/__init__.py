"""Core utilities for configuration, logging, models and error types."""

from .config import AppSettings, BatchSettings, load_app_settings
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "BatchSettings",
    "configure_logging",
    "load_app_settings",
]
