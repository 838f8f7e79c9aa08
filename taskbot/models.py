"""Core domain models used across layers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]
TriggerType = Literal["one_shot", "recurring"]
TaskStatus = Literal["active", "completed", "cancelled", "failed"]


@dataclass(slots=True)
class IncomingMessage:
    """Message normalized by adapters for runtime usage."""

    platform: str
    user_id: str
    chat_id: str
    text: str
    user_name: str = ""


@dataclass(slots=True)
class ToolCall:
    """Tool invocation requested by the model."""

    call_id: str
    name: str
    arguments_json: str = "{}"

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_openai(cls, payload: dict[str, Any]) -> ToolCall:
        function_data = payload.get("function", {})
        arguments = function_data.get("arguments") or "{}"
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            call_id=str(payload.get("id") or ""),
            name=function_data.get("name", ""),
            arguments_json=arguments,
        )


@dataclass(slots=True)
class ChatMessage:
    """One entry of a conversation, as persisted and as sent to the model."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    def to_openai(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    raw: dict[str, Any] | None = None

    def to_message(self) -> ChatMessage:
        return ChatMessage(
            role="assistant",
            content=self.content,
            tool_calls=list(self.tool_calls) or None,
        )


@dataclass(slots=True)
class ScheduledTask:
    """Represents a persisted scheduled task.

    ``timer_job_id`` is set exactly while the task is ``active`` and a live
    timer job is armed for it.
    """

    id: str
    user_id: str
    chat_id: str
    platform: str
    trigger_type: TriggerType
    trigger_value: str
    prompt: str
    description: str
    status: TaskStatus
    created_at: str
    next_run_at: str | None = None
    timer_job_id: str | None = None

    @property
    def is_recurring(self) -> bool:
        return self.trigger_type == "recurring"


@dataclass(slots=True)
class KnowledgeEntry:
    """A piece of knowledge the agent has been asked to remember."""

    id: str
    category: str
    key: str
    value: str
    source: str | None = None


@dataclass(slots=True)
class ToolContext:
    """Who a tool call is being executed on behalf of."""

    user_id: str
    chat_id: str
    platform: str = "signal"
