from __future__ import annotations

SUPPORTED_PROVIDERS = ("openai", "anthropic", "ollama")


def split_provider_model(model_ref: str) -> tuple[str, str]:
    """Split `provider:model` into its parts; a bare model name is an OpenAI model."""
    model_ref = (model_ref or "").strip()
    if not model_ref:
        raise ValueError("model_ref must be a non-empty string")
    if ":" not in model_ref:
        return "openai", model_ref
    provider, model = model_ref.split(":", 1)
    provider = provider.strip().lower()
    if provider in {"local", "ollama"}:
        provider = "ollama"
    if provider in {"claude"}:
        provider = "anthropic"
    return provider, model.strip()
