from __future__ import annotations

import os
from collections.abc import Sequence
from typing import Any

from anthropic import Anthropic
from pydantic import BaseModel

from taskmaster.json_extract import extract_json_object
from taskmaster.llm_openai import (
    DEFAULT_TIMEOUT_S,
    ZERO_USAGE,
    Usage,
    backoff_sleep,
    resolve_max_retries,
    status_code_from_error,
)

_TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504, 529}


def _is_transient_anthropic_error(err: Exception) -> bool:
    if isinstance(err, TimeoutError):
        return True
    status = status_code_from_error(err)
    if status is not None:
        return status in _TRANSIENT_STATUS_CODES
    name = type(err).__name__.lower()
    return "ratelimit" in name or "timeout" in name or "connection" in name


def _usage_from_response(resp: Any) -> Usage:
    usage = getattr(resp, "usage", None)
    if usage is None:
        return Usage(calls=1, input_tokens=0, output_tokens=0)
    return Usage(
        calls=1,
        input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
    )


def _text_from_blocks(resp: Any) -> str:
    parts: list[str] = []
    for block in list(getattr(resp, "content", []) or []):
        btype = getattr(block, "type", None)
        if btype is None and isinstance(block, dict):
            btype = block.get("type")
        if btype != "text":
            continue
        value = getattr(block, "text", None)
        if value is None and isinstance(block, dict):
            value = block.get("text")
        if value:
            parts.append(str(value))
    return "".join(parts).strip()


class AnthropicJSONClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._client = Anthropic(api_key=api_key, base_url=base_url, timeout=timeout_s)

    def call_text(
        self,
        *,
        model: str,
        system: str,
        user: str,
        images: Sequence[str] = (),
        temperature: float = 0.0,
        max_output_tokens: int = 3000,
        max_retries: int = 3,
    ) -> tuple[str, Usage]:
        max_retries = resolve_max_retries(
            requested=max_retries,
            env_retries_raw=os.getenv("TASKMASTER_ANTHROPIC_MAX_RETRIES"),
        )

        last_err: Exception | None = None
        total = ZERO_USAGE
        for attempt in range(max_retries):
            try:
                text, usage = self._call_text_once(
                    model=model,
                    system=system,
                    user=user,
                    images=images,
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                )
                return text, total + usage
            except Exception as e:
                if not _is_transient_anthropic_error(e):
                    raise
                last_err = e
                if attempt == max_retries - 1:
                    break
                backoff_sleep(attempt)

        raise RuntimeError(
            f"Anthropic transient request failed after {max_retries} attempts: {last_err}"
        ) from last_err

    def call_json(
        self,
        *,
        model: str,
        system: str,
        user: str,
        schema: type[BaseModel],
        images: Sequence[str] = (),
        temperature: float = 0.0,
        max_output_tokens: int = 1500,
        max_retries: int = 3,
    ) -> tuple[BaseModel, Usage, str]:
        text, usage = self.call_text(
            model=model,
            system=system,
            user=user,
            images=images,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            max_retries=max_retries,
        )
        parsed = extract_json_object(text)
        return schema.model_validate(parsed), usage, text

    def _call_text_once(
        self,
        *,
        model: str,
        system: str,
        user: str,
        images: Sequence[str],
        temperature: float,
        max_output_tokens: int,
    ) -> tuple[str, Usage]:
        content: list[dict[str, Any]] = [
            {"type": "image", "source": {"type": "url", "url": url}} for url in images
        ]
        content.append({"type": "text", "text": user})
        resp = self._client.messages.create(
            model=model,
            system=system,
            messages=[{"role": "user", "content": content}],
            max_tokens=int(max_output_tokens),
            temperature=float(temperature),
        )
        text = _text_from_blocks(resp) or str(getattr(resp, "content", "") or "")
        return text, _usage_from_response(resp)
