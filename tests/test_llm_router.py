from __future__ import annotations

import pytest
from pydantic import BaseModel

from taskmaster.errors import OracleError
from taskmaster.llm_openai import Usage
from taskmaster.llm_router import LLMRouter
from taskmaster.model_refs import split_provider_model
from taskmaster.oracle import RouterOracle


class _DummySchema(BaseModel):
    ok: bool


class _OtherSchema(BaseModel):
    value: int = 0


class _FakeClient:
    def __init__(self, *, fail: Exception | None = None) -> None:
        self.last_model: str | None = None
        self.last_images: tuple[str, ...] = ()
        self._fail = fail

    def call_text(self, **kwargs):
        self.last_model = str(kwargs["model"])
        return "pong", Usage(calls=1, input_tokens=2, output_tokens=3)

    def call_json(self, **kwargs):
        self.last_model = str(kwargs["model"])
        self.last_images = tuple(kwargs.get("images") or ())
        if self._fail is not None:
            raise self._fail
        return (
            _DummySchema.model_validate({"ok": True}),
            Usage(calls=1, input_tokens=1, output_tokens=1),
            '{"ok":true}',
        )


def test_split_provider_model_aliases() -> None:
    assert split_provider_model("gpt-4o") == ("openai", "gpt-4o")
    assert split_provider_model("local:qwen3:3b") == ("ollama", "qwen3:3b")
    assert split_provider_model("Claude:claude-sonnet-4-5") == ("anthropic", "claude-sonnet-4-5")
    with pytest.raises(ValueError):
        split_provider_model("  ")


def test_router_routes_ollama_calls() -> None:
    ollama = _FakeClient()
    router = LLMRouter(ollama=ollama)

    text, usage = router.call_text(model_ref="ollama:qwen3:8b", system="s", user="u")
    assert text == "pong"
    assert usage.calls == 1
    assert ollama.last_model == "qwen3:8b"

    parsed, _usage, raw = router.call_json(
        model_ref="local:qwen3:3b",
        system="s",
        user="u",
        schema=_DummySchema,
    )
    assert parsed.ok is True
    assert raw == '{"ok":true}'
    assert ollama.last_model == "qwen3:3b"


def test_router_routes_openai_and_anthropic_calls() -> None:
    openai = _FakeClient()
    anthropic = _FakeClient()
    router = LLMRouter(openai=openai, anthropic=anthropic)

    router.call_json(model_ref="openai:gpt-4o", system="s", user="u", schema=_DummySchema, images=["u1"])
    assert openai.last_model == "gpt-4o"
    assert openai.last_images == ("u1",)

    text, _usage = router.call_text(model_ref="anthropic:claude-sonnet-4-5", system="s", user="u")
    assert text == "pong"
    assert anthropic.last_model == "claude-sonnet-4-5"


def test_router_requires_client_for_provider() -> None:
    router = LLMRouter()
    with pytest.raises(ValueError, match="missing Anthropic client"):
        router.call_text(model_ref="claude:claude-sonnet-4-5", system="s", user="u")
    with pytest.raises(ValueError, match="missing OpenAI client"):
        router.call_text(model_ref="gpt-4o", system="s", user="u")
    with pytest.raises(ValueError, match="unsupported provider"):
        router.call_text(model_ref="gemini:gemini-2.5-pro", system="s", user="u")


def test_oracle_wraps_provider_failures() -> None:
    oracle = RouterOracle(router=LLMRouter(openai=_FakeClient(fail=RuntimeError("503"))), model_ref="openai:gpt-4o")
    with pytest.raises(OracleError, match="_DummySchema: 503"):
        oracle.call_json(system="s", user="u", schema=_DummySchema)


def test_oracle_rejects_response_of_wrong_schema() -> None:
    oracle = RouterOracle(router=LLMRouter(openai=_FakeClient()), model_ref="gpt-4o")
    with pytest.raises(OracleError, match="returned _DummySchema"):
        oracle.call_json(system="s", user="u", schema=_OtherSchema)


def test_oracle_passes_images_through() -> None:
    client = _FakeClient()
    oracle = RouterOracle(router=LLMRouter(openai=client), model_ref="gpt-4o")
    parsed, usage, _raw = oracle.call_json(system="s", user="u", schema=_DummySchema, images=["a", "b"])
    assert parsed.ok is True
    assert usage.calls == 1
    assert client.last_images == ("a", "b")
