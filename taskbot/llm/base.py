"""LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from taskbot.models import ChatMessage, LLMResponse


class LLMProvider(ABC):
    """Abstract model provider used by the agent runtime.

    Transport failures are raised to the caller; they are turn-level errors.
    """

    @abstractmethod
    async def generate(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        """Generate a model response."""
