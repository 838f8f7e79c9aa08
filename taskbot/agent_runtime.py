"""Core agent runtime: the bounded tool-calling loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from taskbot.db import Database
from taskbot.embeddings import EmbeddingClient
from taskbot.events import EventChannel, ToolStarted
from taskbot.llm.base import LLMProvider
from taskbot.models import ChatMessage, IncomingMessage, LLMResponse, ToolCall, ToolContext
from taskbot.skills import SkillCatalog
from taskbot.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from taskbot.scheduler import TaskScheduler

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
MAX_ITERATIONS_REPLY = (
    "I've reached the maximum number of tool call iterations. Please try rephrasing your request."
)


class AgentRuntime:
    """Drives one conversation turn through the model and its tools.

    Callers must serialize turns for the same (platform, user) pair; turns
    for different users may run concurrently.
    """

    def __init__(
        self,
        db: Database,
        llm: LLMProvider,
        tool_registry: ToolRegistry,
        skills: SkillCatalog,
        system_prompt: str,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        user_location: str | None = None,
        embeddings: EmbeddingClient | None = None,
        request_timeout_seconds: float | None = None,
    ) -> None:
        self._db = db
        self._llm = llm
        self._tool_registry = tool_registry
        self._skills = skills
        self._system_prompt = system_prompt
        self._max_iterations = max_iterations
        self._user_location = user_location
        self._embeddings = embeddings
        self._request_timeout_seconds = request_timeout_seconds
        self.scheduler: TaskScheduler | None = None
        self._user_locks: dict[tuple[str, str], asyncio.Lock] = {}

    @property
    def skills(self) -> SkillCatalog:
        return self._skills

    @property
    def tool_registry(self) -> ToolRegistry:
        return self._tool_registry

    def build_system_prompt(self) -> str:
        """Instructions + active skills + current time + optional location."""

        prompt = self._system_prompt
        skill_context = self._skills.current.build_context()
        if skill_context:
            prompt += f"\n\n# Available Skills\n\n{skill_context}"
        now = datetime.now().astimezone()
        prompt += f"\n\nCurrent date and time: {now:%Y-%m-%d %H:%M:%S} (UTC{now:%z})"
        if self._user_location:
            prompt += f"\nUser location: {self._user_location}"
        return prompt

    async def process_turn(
        self,
        incoming: IncomingMessage,
        event_sink: EventChannel | None = None,
    ) -> str:
        """Handle one inbound message and return the final answer.

        Model transport failures propagate; tool failures are fed back to the
        model as result text. Persisted messages are never rolled back.
        """
        conversation_id = self._db.get_or_create_conversation(incoming.platform, incoming.user_id)
        messages = self._db.load_messages(conversation_id)

        system_message = ChatMessage(role="system", content=self.build_system_prompt())
        if not messages:
            self._db.add_message(conversation_id, system_message)
            messages.append(system_message)
        elif messages[0].role == "system":
            # In-memory only: the persisted historical system message stays untouched.
            messages[0] = system_message
        else:
            messages.insert(0, system_message)

        user_message = ChatMessage(role="user", content=incoming.text)
        await self._persist(conversation_id, user_message)
        messages.append(user_message)

        context = ToolContext(
            user_id=incoming.user_id,
            chat_id=incoming.chat_id,
            platform=incoming.platform,
        )

        for iteration in range(self._max_iterations):
            response = await self._generate(messages)

            if response.tool_calls:
                LOGGER.info(
                    "LLM requested %d tool call(s) (iteration %d)",
                    len(response.tool_calls),
                    iteration,
                )
                assistant_message = response.to_message()
                self._db.add_message(conversation_id, assistant_message)
                messages.append(assistant_message)

                if event_sink is not None:
                    for tool_call in response.tool_calls:
                        event_sink.send(ToolStarted(name=tool_call.name))

                tool_messages = await asyncio.gather(
                    *(
                        self._run_tool_call(conversation_id, tool_call, context)
                        for tool_call in response.tool_calls
                    )
                )
                messages.extend(tool_messages)
                continue

            reply = response.content or ""
            await self._persist(conversation_id, ChatMessage(role="assistant", content=reply))
            return reply

        LOGGER.warning(
            "Turn for %s:%s hit the %d iteration cap",
            incoming.platform,
            incoming.user_id,
            self._max_iterations,
        )
        return MAX_ITERATIONS_REPLY

    def user_lock(self, platform: str, user_id: str) -> asyncio.Lock:
        """Lock that serializes turns for one (platform, user) pair."""

        return self._user_locks.setdefault((platform, user_id), asyncio.Lock())

    def clear_conversation(self, platform: str, user_id: str) -> None:
        self._db.clear_conversation(platform, user_id)

    def tool_definitions(self) -> list[dict[str, Any]]:
        return self._tool_registry.definitions()

    async def _generate(self, messages: list[ChatMessage]) -> LLMResponse:
        call = self._llm.generate(list(messages), tools=self._tool_registry.definitions())
        if self._request_timeout_seconds is None:
            return await call
        return await asyncio.wait_for(call, timeout=self._request_timeout_seconds)

    async def _run_tool_call(
        self,
        conversation_id: str,
        tool_call: ToolCall,
        context: ToolContext,
    ) -> ChatMessage:
        result = await self._tool_registry.execute(tool_call.name, tool_call.arguments_json, context)
        LOGGER.info("Tool '%s' result length: %d chars", tool_call.name, len(result))
        tool_message = ChatMessage(role="tool", content=result, tool_call_id=tool_call.call_id)
        self._db.add_message(conversation_id, tool_message)
        return tool_message

    async def _persist(self, conversation_id: str, message: ChatMessage) -> None:
        embedding = None
        if self._embeddings is not None and message.content:
            embedding = await self._embeddings.try_embed(message.content)
        self._db.add_message(conversation_id, message, embedding=embedding)
