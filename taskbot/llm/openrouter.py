"""OpenRouter implementation of LLMProvider."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from taskbot.config import Settings
from taskbot.llm.base import LLMProvider
from taskbot.models import ChatMessage, LLMResponse, ToolCall

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [5, 15, 45]


class OpenRouterProvider(LLMProvider):
    """LLM provider using OpenRouter's OpenAI-compatible chat endpoint."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def generate(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": self._settings.openrouter_model,
            "messages": [message.to_openai() for message in messages],
            "max_tokens": self._settings.openrouter_max_tokens,
        }
        if tools:
            payload["tools"] = tools

        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.openrouter_base_url, timeout=timeout) as client:
            for attempt in range(_MAX_RETRIES + 1):
                response = await client.post(
                    "/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self._settings.openrouter_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                if response.status_code == 429 and attempt < _MAX_RETRIES:
                    wait = _RETRY_BACKOFF_SECONDS[attempt]
                    _LOGGER.warning(
                        "OpenRouter rate limited (429), retrying in %ds (attempt %d/%d)",
                        wait,
                        attempt + 1,
                        _MAX_RETRIES,
                    )
                    await asyncio.sleep(wait)
                    continue
                response.raise_for_status()
                break
            data = response.json()

        return parse_chat_completion(data)


def parse_chat_completion(data: dict[str, Any]) -> LLMResponse:
    """Convert an OpenAI-style completion body into an LLMResponse."""

    choices = data.get("choices") or []
    if not choices:
        error = data.get("error") or "response contained no choices"
        raise RuntimeError(f"Model returned no choices: {error}")

    choice = choices[0].get("message", {})
    finish_reason = choices[0].get("finish_reason")
    content = choice.get("content")
    tool_calls = [ToolCall.from_openai(tc) for tc in choice.get("tool_calls") or []]
    _LOGGER.info(
        "LLM response: finish_reason=%r content=%r tool_calls=%d",
        finish_reason,
        content[:200] if content else "",
        len(tool_calls),
    )
    return LLMResponse(content=content, tool_calls=tool_calls, raw=data)
