"""Completion backends: one thin async wrapper per vendor SDK."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from anthropic import AsyncAnthropic
from anthropic.types import TextBlock
from openai import AsyncOpenAI

from mailpilot.config import Settings
from mailpilot.llm.registry import Backend

logger = logging.getLogger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

_JSON_INSTRUCTION = "Respond with a single JSON object and nothing else."


@dataclass(frozen=True)
class CompletionRequest:
    """Chat messages (``{"role", "content"}`` dicts) plus sampling settings."""

    messages: list[dict[str, str]] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: int = 1024
    json_mode: bool = False


@dataclass(frozen=True)
class Completion:
    text: str
    token_count: int | None = None


class ModelBackend(Protocol):
    async def complete(self, model_id: str, request: CompletionRequest) -> Completion: ...


class OpenAIChatBackend:
    """OpenAI chat completions; also serves Groq through its compatible base URL.

    SDK-level retries are disabled since the fallback client owns retry policy.
    """

    def __init__(self, api_key: str, base_url: str | None = None, timeout: float = 30.0) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    async def complete(self, model_id: str, request: CompletionRequest) -> Completion:
        extra: dict[str, Any] = {}
        if request.json_mode:
            extra["response_format"] = {"type": "json_object"}
        response = await self._client.chat.completions.create(
            model=model_id,
            messages=request.messages,  # type: ignore[arg-type]
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            **extra,
        )
        text = response.choices[0].message.content or ""
        usage = response.usage
        return Completion(text=text, token_count=usage.total_tokens if usage else None)


class AnthropicBackend:
    """Claude via the Messages API; system turns are merged into ``system``."""

    def __init__(self, api_key: str, timeout: float = 30.0) -> None:
        self._client = AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    async def complete(self, model_id: str, request: CompletionRequest) -> Completion:
        system_parts = [m["content"] for m in request.messages if m["role"] == "system"]
        if request.json_mode:
            system_parts.append(_JSON_INSTRUCTION)
        turns = [m for m in request.messages if m["role"] != "system"]

        extra: dict[str, Any] = {}
        if system_parts:
            extra["system"] = "\n\n".join(system_parts)
        response = await self._client.messages.create(
            model=model_id,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            messages=turns,  # type: ignore[arg-type]
            **extra,
        )
        text = "".join(block.text for block in response.content if isinstance(block, TextBlock))
        usage = response.usage
        token_count = usage.input_tokens + usage.output_tokens if usage else None
        return Completion(text=text, token_count=token_count)


def build_backends(settings: Settings) -> dict[Backend, ModelBackend]:
    """Instantiate every backend that has an API key configured."""
    backends: dict[Backend, ModelBackend] = {}
    if settings.openai_api_key:
        backends[Backend.OPENAI] = OpenAIChatBackend(settings.openai_api_key, timeout=settings.http_timeout)
    if settings.groq_api_key:
        backends[Backend.GROQ] = OpenAIChatBackend(
            settings.groq_api_key, base_url=GROQ_BASE_URL, timeout=settings.http_timeout
        )
    if settings.anthropic_api_key:
        backends[Backend.ANTHROPIC] = AnthropicBackend(settings.anthropic_api_key, timeout=settings.http_timeout)
    if not backends:
        logger.warning("No model API keys configured; every model call will be skipped")
    return backends
