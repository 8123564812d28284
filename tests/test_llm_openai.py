from __future__ import annotations

import pytest
from pydantic import BaseModel

from taskmaster.llm_openai import (
    OpenAIJSONClient,
    resolve_max_retries,
)


class _FakeUsage:
    def __init__(self, *, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens


class _FakeResponse:
    def __init__(self, *, output_text: str, input_tokens: int, output_tokens: int) -> None:
        self.output_text = output_text
        self.usage = _FakeUsage(input_tokens=input_tokens, output_tokens=output_tokens)


class _FakeResponses:
    def __init__(self, outcomes: list[object]) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0
        self.last_kwargs: dict = {}

    def create(self, **kwargs) -> object:
        self.last_kwargs = kwargs
        self.calls += 1
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _FakeClient:
    def __init__(self, outcomes: list[object]) -> None:
        self.responses = _FakeResponses(outcomes)


class _Scores(BaseModel):
    authenticity_score: float


def _make_client(*, outcomes: list[object]) -> tuple[OpenAIJSONClient, _FakeResponses]:
    client = OpenAIJSONClient(api_key="test-key", base_url=None)
    fake = _FakeClient(outcomes)
    client._client = fake  # type: ignore[assignment]
    return client, fake.responses


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("taskmaster.llm_openai.backoff_sleep", lambda attempt: None)


def test_resolve_max_retries_rejects_invalid_and_too_high_values() -> None:
    with pytest.raises(ValueError, match="must be an int"):
        resolve_max_retries(requested=3, env_retries_raw="abc")
    with pytest.raises(ValueError, match=r"<= 3"):
        resolve_max_retries(requested=3, env_retries_raw="4")
    with pytest.raises(ValueError, match=r"<= 3"):
        resolve_max_retries(requested=9, env_retries_raw=None)
    with pytest.raises(ValueError, match="> 0"):
        resolve_max_retries(requested=0, env_retries_raw=None)
    assert resolve_max_retries(requested=3, env_retries_raw=" 2 ") == 2


def test_call_text_retries_only_transient_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKMASTER_OPENAI_MAX_RETRIES", "3")
    monkeypatch.setattr(
        "taskmaster.llm_openai._is_transient_error",
        lambda err: isinstance(err, TimeoutError),
    )
    client, fake_responses = _make_client(
        outcomes=[
            TimeoutError("t1"),
            TimeoutError("t2"),
            _FakeResponse(output_text="ok", input_tokens=11, output_tokens=7),
        ]
    )

    text, usage = client.call_text(model="x", system="s", user="u")

    assert text == "ok"
    assert usage.calls == 1
    assert usage.input_tokens == 11
    assert usage.output_tokens == 7
    assert fake_responses.calls == 3


def test_call_text_gives_up_after_max_transient_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKMASTER_OPENAI_MAX_RETRIES", "2")
    client, fake_responses = _make_client(outcomes=[TimeoutError("t1"), TimeoutError("t2")])

    with pytest.raises(RuntimeError, match="after 2 attempts"):
        client.call_text(model="x", system="s", user="u")
    assert fake_responses.calls == 2


def test_call_text_fails_fast_on_deterministic_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKMASTER_OPENAI_MAX_RETRIES", raising=False)
    monkeypatch.setattr("taskmaster.llm_openai._is_transient_error", lambda err: False)
    client, fake_responses = _make_client(outcomes=[ValueError("schema fail")])

    with pytest.raises(ValueError, match="schema fail"):
        client.call_text(model="x", system="s", user="u", max_retries=3)
    assert fake_responses.calls == 1


def test_call_json_attaches_images_and_parses_fenced_output(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKMASTER_OPENAI_MAX_RETRIES", raising=False)
    client, fake_responses = _make_client(
        outcomes=[
            _FakeResponse(
                output_text='```json\n{"authenticity_score": 0.8}\n```', input_tokens=5, output_tokens=3
            )
        ]
    )

    parsed, usage, raw = client.call_json(
        model="gpt-4o",
        system="s",
        user="u",
        schema=_Scores,
        images=["https://gw.test/ipfs/a.jpg"],
    )

    assert parsed.authenticity_score == 0.8
    assert "authenticity_score" in raw
    user_content = fake_responses.last_kwargs["input"][1]["content"]
    assert user_content[1] == {"type": "input_image", "image_url": "https://gw.test/ipfs/a.jpg"}
