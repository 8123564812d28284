from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel

from taskmaster.config import ProviderSettings
from taskmaster.llm_anthropic import AnthropicJSONClient
from taskmaster.llm_ollama import OllamaJSONClient
from taskmaster.llm_openai import OpenAIJSONClient, Usage
from taskmaster.model_refs import split_provider_model

TModel = TypeVar("TModel", bound=BaseModel)

_MISSING_CLIENT_HINTS = {
    "openai": "missing OpenAI client (set OPENAI_API_KEY)",
    "anthropic": "missing Anthropic client (set ANTHROPIC_API_KEY)",
    "ollama": "missing Ollama client (set OLLAMA_BASE_URL)",
}


@dataclass(frozen=True)
class LLMRouter:
    openai: OpenAIJSONClient | None = None
    anthropic: AnthropicJSONClient | None = None
    ollama: OllamaJSONClient | None = None

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "LLMRouter":
        openai = (
            OpenAIJSONClient(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
            if settings.openai_api_key
            else None
        )
        anthropic = (
            AnthropicJSONClient(
                api_key=settings.anthropic_api_key, base_url=settings.anthropic_base_url
            )
            if settings.anthropic_api_key
            else None
        )
        ollama = OllamaJSONClient(base_url=settings.ollama_base_url)
        return cls(openai=openai, anthropic=anthropic, ollama=ollama)

    def _client_for(self, model_ref: str) -> tuple[Any, str]:
        provider, model = split_provider_model(model_ref)
        if provider not in _MISSING_CLIENT_HINTS:
            raise ValueError(f"unsupported provider {provider!r} for model_ref={model_ref!r}")
        client = getattr(self, provider)
        if client is None:
            raise ValueError(_MISSING_CLIENT_HINTS[provider])
        return client, model

    def call_text(
        self,
        *,
        model_ref: str,
        system: str,
        user: str,
        images: Sequence[str] = (),
        temperature: float = 0.0,
        max_output_tokens: int = 3000,
        max_retries: int = 3,
    ) -> tuple[str, Usage]:
        client, model = self._client_for(model_ref)
        return client.call_text(
            model=model,
            system=system,
            user=user,
            images=images,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            max_retries=max_retries,
        )

    def call_json(
        self,
        *,
        model_ref: str,
        system: str,
        user: str,
        schema: type[TModel],
        images: Sequence[str] = (),
        temperature: float = 0.0,
        max_output_tokens: int = 1500,
        max_retries: int = 3,
    ) -> tuple[TModel, Usage, str]:
        client, model = self._client_for(model_ref)
        resp, usage, raw = client.call_json(
            model=model,
            system=system,
            user=user,
            schema=schema,
            images=images,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            max_retries=max_retries,
        )
        return resp, usage, raw
