"""HTTP clients for the text-generation provider used during classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

import httpx

from inbox_tasks.core.config import LlmSettings
from inbox_tasks.core.errors import UpstreamCallError
from inbox_tasks.core.interfaces import LLMClient

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class OllamaClient:
    """Thin synchronous client for the Ollama chat API in JSON mode."""

    settings: LlmSettings
    http_client: httpx.Client | None = None

    def complete(self, system: str, user: str, *, temperature: float) -> str:
        """Send a chat request and return the assistant message content."""
        endpoint = _resolve_endpoint(self.settings.base_url, "api/chat")
        options: dict[str, object] = {"temperature": temperature}
        if self.settings.max_output_tokens is not None:
            options["num_predict"] = self.settings.max_output_tokens
        payload: dict[str, object] = {
            "model": self.settings.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "stream": False,
            "format": "json",
            "options": options,
        }
        data = _post_json(
            self.http_client,
            endpoint,
            payload,
            timeout=self.settings.timeout_seconds,
        )
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise UpstreamCallError(
                "LLM response missing 'message.content'", kind="bad_response"
            )
        return content

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"ollama:{self.settings.model}"


@dataclass(slots=True)
class OpenAICompatibleClient:
    """Client for ``/chat/completions`` endpoints speaking the OpenAI dialect."""

    settings: LlmSettings
    http_client: httpx.Client | None = None

    def complete(self, system: str, user: str, *, temperature: float) -> str:
        """Send a chat completion request with JSON object output enforced."""
        endpoint = _resolve_endpoint(self.settings.base_url, "chat/completions")
        payload: dict[str, object] = {
            "model": self.settings.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        if self.settings.max_output_tokens is not None:
            payload["max_tokens"] = self.settings.max_output_tokens
        headers = {}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        data = _post_json(
            self.http_client,
            endpoint,
            payload,
            timeout=self.settings.timeout_seconds,
            headers=headers,
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise UpstreamCallError(
                "LLM response missing 'choices[0].message.content'",
                kind="bad_response",
            ) from exc
        if not isinstance(content, str):
            raise UpstreamCallError(
                "LLM response content is not text", kind="bad_response"
            )
        return content

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"openai:{self.settings.model}"


def build_llm_client(
    settings: LlmSettings, *, http_client: httpx.Client | None = None
) -> LLMClient:
    """Return the client matching ``settings.provider``."""
    if settings.provider == "openai":
        return OpenAICompatibleClient(settings, http_client=http_client)
    return OllamaClient(settings, http_client=http_client)


def _post_json(
    client: httpx.Client | None,
    endpoint: str,
    payload: dict[str, object],
    *,
    timeout: float,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    sender = client.post if client is not None else httpx.post
    try:
        response = sender(endpoint, json=payload, timeout=timeout, headers=headers)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        raise UpstreamCallError(
            f"LLM provider returned HTTP {status}", kind=_status_kind(status)
        ) from exc
    except httpx.HTTPError as exc:
        raise UpstreamCallError(
            f"LLM provider unreachable: {exc}", kind="unreachable"
        ) from exc
    except ValueError as exc:
        raise UpstreamCallError(
            "LLM provider returned invalid JSON", kind="bad_response"
        ) from exc

    if not isinstance(data, dict):
        raise UpstreamCallError(
            "LLM provider returned a non-object payload", kind="bad_response"
        )
    LOGGER.debug("LLM call to %s succeeded", endpoint)
    return data


def _status_kind(status: int) -> str:
    if status in (401, 403):
        return "unauthorized"
    if status == 429:
        return "rate_limited"
    return "unreachable"


def _resolve_endpoint(base_url: str, path: str) -> str:
    trimmed = base_url.rstrip("/") + "/"
    return urljoin(trimmed, path)


__all__ = [
    "OllamaClient",
    "OpenAICompatibleClient",
    "build_llm_client",
]
