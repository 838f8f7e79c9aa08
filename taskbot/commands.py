"""Command dispatcher for @-prefixed messages.

Commands bypass the LLM. An unrecognised @command returns None, letting it
fall through to the LLM.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskbot.models import IncomingMessage

if TYPE_CHECKING:
    from taskbot.agent_runtime import AgentRuntime

LOGGER = logging.getLogger(__name__)

HELP_TEXT = (
    "Available commands:\n"
    "@clear - clear the conversation history\n"
    "@tools - list the tools the assistant can use\n"
    "@skills - list the loaded skills\n"
    "@help - show this message"
)


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split an @-prefixed message into (command, args).

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid @command.
    """
    text = text.strip()
    if not text.startswith("@"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class CommandDispatcher:
    """Routes @-prefixed messages to runtime handlers, bypassing the LLM.

    Returns None for unrecognised commands so the caller can fall through.
    """

    def __init__(self, runtime: AgentRuntime) -> None:
        self._runtime = runtime

    async def dispatch(self, message: IncomingMessage) -> str | None:
        """Dispatch a message to a command handler.

        Returns:
            A reply string for recognised commands, or None for unknown ones.
        """
        parsed = parse_command(message.text)
        if parsed is None:
            return None
        command, args = parsed
        LOGGER.info("Command dispatch: command=%r args=%r", command, args)
        if command == "clear":
            return self._handle_clear(message)
        if command == "tools":
            return self._handle_tools()
        if command == "skills":
            return self._handle_skills()
        if command == "help":
            return HELP_TEXT
        return None

    def _handle_clear(self, message: IncomingMessage) -> str:
        self._runtime.clear_conversation(message.platform, message.user_id)
        return "Conversation history cleared."

    def _handle_tools(self) -> str:
        tools = self._runtime.tool_registry.tools()
        if not tools:
            return "No tools available."
        lines = [f"Available tools ({len(tools)}):"]
        lines.extend(f"- {tool.name} [{tool.category.value}]" for tool in tools)
        return "\n".join(lines)

    def _handle_skills(self) -> str:
        skills = self._runtime.skills.current.list_skills()
        if not skills:
            return "No skills loaded."
        lines = [f"Loaded skills ({len(skills)}):"]
        lines.extend(f"- {skill.name}: {skill.description}" for skill in skills)
        return "\n".join(lines)
