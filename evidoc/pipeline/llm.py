"""Chat-model completion providers used by classification, parties and summaries."""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

from ..errors import ConfigurationError, ExternalServiceError


class CompletionProvider(ABC):
    """A blocking text-in, text-out chat completion."""

    name: str = "base"
    model: str = ""

    @abstractmethod
    def complete(self, prompt: str, max_tokens: int = 1024) -> str:
        ...


class AnthropicProvider(CompletionProvider):
    name = "anthropic"

    def __init__(
        self,
        model: str = "claude-3-5-haiku-latest",
        api_key: str | None = None,
        temperature: float = 0.1,
    ):
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def complete(self, prompt: str, max_tokens: int = 1024) -> str:
        response = self._get_client().messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )


class OpenAIProvider(CompletionProvider):
    name = "openai"

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.1,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            import openai
            self._client = openai.OpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    def complete(self, prompt: str, max_tokens: int = 1024) -> str:
        response = self._get_client().chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""


def create_completion_provider(
    provider: str,
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.1,
) -> CompletionProvider | None:
    """Build the configured provider, or None when AI is disabled."""
    if provider in ("", "none", None):
        return None
    if provider == "anthropic":
        kwargs = {"model": model} if model else {}
        return AnthropicProvider(api_key=api_key, temperature=temperature, **kwargs)
    if provider == "openai":
        kwargs = {"model": model} if model else {}
        return OpenAIProvider(api_key=api_key, base_url=base_url, temperature=temperature, **kwargs)
    raise ConfigurationError(f"Unknown AI provider: {provider}")


def parse_json_response(content: str, stage: str) -> dict[str, Any]:
    """Pull the JSON object out of a model response.

    Handles fenced code blocks and leading prose.
    """
    json_match = re.search(r"\{[\s\S]*\}", content or "")
    if not json_match:
        raise ExternalServiceError(f"Model returned no JSON object: {content[:200]!r}", stage=stage)
    try:
        data = json.loads(json_match.group())
    except json.JSONDecodeError as e:
        raise ExternalServiceError(f"Model returned invalid JSON: {e}", stage=stage, original_error=e) from e
    if not isinstance(data, dict):
        raise ExternalServiceError("Model returned a non-object JSON value", stage=stage)
    return data
