"""Long-term memory tools backed by the knowledge table and message search."""

from __future__ import annotations

from typing import Any

from taskbot.db import Database
from taskbot.embeddings import EmbeddingClient
from taskbot.models import ToolContext
from taskbot.tools.base import Tool, ToolCategory


class _MemoryTool(Tool):
    category = ToolCategory.MEMORY

    def __init__(self, db: Database, embeddings: EmbeddingClient | None = None) -> None:
        self._db = db
        self._embeddings = embeddings

    async def _embed(self, text: str) -> list[float] | None:
        if self._embeddings is None:
            return None
        return await self._embeddings.try_embed(text)


class RememberTool(_MemoryTool):
    name = "remember"
    description = (
        "Store a piece of knowledge for long-term memory. Use this to remember user "
        "preferences, facts, or anything useful."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "description": "Category (e.g., 'user_preference', 'fact', 'project').",
            },
            "key": {"type": "string", "description": "Short identifier for this knowledge."},
            "value": {"type": "string", "description": "The knowledge to remember."},
        },
        "required": ["category", "key", "value"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        category, key, value = kwargs["category"], kwargs["key"], kwargs["value"]
        embedding = await self._embed(f"{key}: {value}")
        self._db.remember(category, key, value, source=f"{context.platform}:{context.user_id}", embedding=embedding)
        return f"Remembered: [{category}] {key} = {value}"


class RecallTool(_MemoryTool):
    name = "recall"
    description = "Retrieve a specific piece of remembered knowledge."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "category": {"type": "string", "description": "Category to search in."},
            "key": {
                "type": "string",
                "description": "The key to look up. Omit to list everything in the category.",
            },
        },
        "required": ["category"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        category, key = kwargs["category"], kwargs.get("key")
        if not key:
            entries = self._db.list_knowledge(category)
            if not entries:
                return f"No knowledge stored under [{category}]"
            return "\n".join(f"{entry.key} = {entry.value}" for entry in entries)
        value = self._db.recall(category, key)
        if value is None:
            return f"No knowledge found for [{category}] {key}"
        return value


class ForgetTool(_MemoryTool):
    name = "forget"
    description = "Delete a piece of remembered knowledge that is wrong or no longer wanted."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "category": {"type": "string", "description": "Category of the entry."},
            "key": {"type": "string", "description": "The key to delete."},
        },
        "required": ["category", "key"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        category, key = kwargs["category"], kwargs["key"]
        if not self._db.forget(category, key):
            return f"No knowledge found for [{category}] {key}"
        return f"Forgot: [{category}] {key}"


class SearchMemoryTool(_MemoryTool):
    name = "search_memory"
    description = (
        "Search through past conversations and remembered knowledge. Combines full-text "
        "search with semantic similarity when available."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query (natural language)."},
            "limit": {"type": "integer", "description": "Max results (default 5)."},
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        query: str = kwargs["query"]
        limit = max(1, int(kwargs.get("limit") or 5))
        query_embedding = await self._embed(query)

        results = [
            f"[{message.role}]: {message.content}"
            for message in self._db.search_messages(query, limit, query_embedding)
            if message.content
        ]
        results.extend(
            f"[knowledge:{entry.category}] {entry.key} = {entry.value}"
            for entry in self._db.search_knowledge(query, limit, query_embedding)
        )
        return "\n\n".join(results) if results else "No results found."


def memory_tools(db: Database, embeddings: EmbeddingClient | None = None) -> list[Tool]:
    return [
        RememberTool(db, embeddings),
        RecallTool(db, embeddings),
        ForgetTool(db, embeddings),
        SearchMemoryTool(db, embeddings),
    ]
