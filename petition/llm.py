"""Async LLM client used by every agent (verification, analyses, denial risk, imports)."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, AsyncIterator

from petition.config import get_settings

log = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def extract_json_text(text: str) -> str:
    """Pull the JSON object out of a model reply that may wrap it in prose or fences."""
    text = text.strip()
    m = _FENCED_JSON_RE.search(text)
    if m:
        return m.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start:end + 1]
    return text


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model
        self.max_tokens = settings.llm_max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        settings = get_settings()
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-sonnet-4-20250514"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or settings.anthropic_api_key or None
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or settings.openai_api_key
            if key:
                kwargs["api_key"] = key
            url = self._base_url or settings.openai_base_url
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(self, system: str, user: str, max_tokens: int | None = None) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens or self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = extract_json_text(response.content[0].text)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens or self.max_tokens,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(
                f"LLM returned invalid JSON: {text[:200]}", retryable=False,
            ) from exc
        if not isinstance(data, dict):
            raise LLMCallError(f"LLM returned {type(data).__name__}, expected object", retryable=False)
        return data

    async def complete(self, system: str, user: str, max_tokens: int | None = None) -> str:
        """Plain-text reply (no JSON parsing)."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens or self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return response.content[0].text.strip()
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens or self.max_tokens,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def stream_text(self, system: str, user: str, max_tokens: int | None = None) -> AsyncIterator[str]:
        """Yield raw text deltas as the model produces them."""
        try:
            if self.provider == "anthropic":
                async with self._client.messages.stream(
                    model=self.model,
                    max_tokens=max_tokens or self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                ) as stream:
                    async for delta in stream.text_stream:
                        yield delta
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens or self.max_tokens,
                    response_format={"type": "json_object"},
                    stream=True,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                async for chunk in response:
                    if chunk.choices and chunk.choices[0].delta.content:
                        yield chunk.choices[0].delta.content
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM stream failed: {exc}", retryable=True) from exc
