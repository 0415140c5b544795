"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class LlmSettings(BaseModel):
    """Settings for the text-generation provider used for classification."""

    provider: Literal["ollama", "openai"] = Field(
        default="ollama", description="HTTP dialect spoken by the provider"
    )
    base_url: str = Field(
        default="http://localhost:11434", description="Provider base URL"
    )
    model: str = Field(default="gpt-oss:20b", description="Model identifier")
    api_key: str | None = Field(
        default=None, description="Bearer token for OpenAI-compatible providers"
    )
    timeout_seconds: int = Field(
        default=60, ge=1, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for classification requests",
    )
    max_output_tokens: int | None = Field(
        default=2048,
        ge=32,
        description="Maximum tokens to request from the provider",
    )
    max_body_chars: int = Field(
        default=8000,
        ge=200,
        description="Canonical body characters forwarded to the model",
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./inbox_tasks.db"), description="SQLite database path"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle brace-style structured logging"
    )


class BatchSettings(BaseModel):
    """Settings bounding a single orchestrator run."""

    default_limit: int = Field(
        default=10, ge=1, description="Emails selected when no limit is given"
    )
    max_batch_size: int = Field(
        default=100, ge=1, description="Upper clip applied to requested limits"
    )
    unprocessed_only: bool = Field(
        default=True, description="Select only emails not yet classified"
    )
    days_back: int | None = Field(
        default=None, ge=0, description="Optional recency window in days"
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Cooperative batch deadline"
    )
    classification_attempts: int = Field(
        default=2, ge=1, description="Total attempts per email on upstream errors"
    )
    retry_backoff_cap: float = Field(
        default=8.0, ge=0.0, description="Maximum seconds slept between attempts"
    )


class ExtractionSettings(BaseModel):
    """Settings applied while mapping model suggestions onto tasks."""

    default_confidence: int = Field(
        default=85, ge=0, le=100, description="Confidence used when none is given"
    )
    review_threshold: int = Field(
        default=90,
        ge=0,
        le=101,
        description="Tasks below this confidence are flagged for review",
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    llm: LlmSettings = Field(default_factory=LlmSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)


ENV_PREFIX = "INBOX_TASKS_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values: dict[str, str] = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(
        env_file, include_environment=include_environment
    )
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "BatchSettings",
    "ExtractionSettings",
    "LlmSettings",
    "LoggingSettings",
    "StorageSettings",
    "load_app_settings",
]
