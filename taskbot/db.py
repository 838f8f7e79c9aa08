"""SQLite persistence layer: conversations, messages and knowledge."""

from __future__ import annotations

import json
import math
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Sequence

from taskbot.models import ChatMessage, KnowledgeEntry, ToolCall

SCHEMA_VERSION = 1

# Reciprocal Rank Fusion constant used when merging full-text and vector rankings.
_RRF_K = 60


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                platform TEXT NOT NULL,
                user_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_user
                ON conversations(platform, user_id, updated_at);

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT,
                tool_calls TEXT,
                tool_call_id TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id, created_at);

            CREATE TABLE IF NOT EXISTS knowledge (
                id TEXT PRIMARY KEY,
                category TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                source TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_knowledge_key
                ON knowledge(category, key);

            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                timer_job_id TEXT,
                user_id TEXT NOT NULL,
                chat_id TEXT NOT NULL,
                platform TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_value TEXT NOT NULL,
                prompt TEXT NOT NULL,
                description TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                next_run_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_user_status
                ON scheduled_tasks(user_id, status);

            CREATE TABLE IF NOT EXISTS message_embeddings (
                message_rowid INTEGER PRIMARY KEY,
                vector TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS knowledge_embeddings (
                knowledge_rowid INTEGER PRIMARY KEY,
                vector TEXT NOT NULL
            );

            CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
                content,
                content=messages,
                content_rowid=rowid
            );

            CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_fts USING fts5(
                key,
                value,
                content=knowledge,
                content_rowid=rowid
            );

            CREATE TRIGGER IF NOT EXISTS messages_fts_insert AFTER INSERT ON messages
            WHEN NEW.content IS NOT NULL BEGIN
                INSERT INTO messages_fts(rowid, content) VALUES (NEW.rowid, NEW.content);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_fts_delete AFTER DELETE ON messages
            WHEN OLD.content IS NOT NULL BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, content)
                    VALUES ('delete', OLD.rowid, OLD.content);
            END;

            CREATE TRIGGER IF NOT EXISTS knowledge_fts_insert AFTER INSERT ON knowledge BEGIN
                INSERT INTO knowledge_fts(rowid, key, value) VALUES (NEW.rowid, NEW.key, NEW.value);
            END;

            CREATE TRIGGER IF NOT EXISTS knowledge_fts_delete AFTER DELETE ON knowledge BEGIN
                INSERT INTO knowledge_fts(knowledge_fts, rowid, key, value)
                    VALUES ('delete', OLD.rowid, OLD.key, OLD.value);
            END;

            CREATE TRIGGER IF NOT EXISTS knowledge_fts_update AFTER UPDATE ON knowledge BEGIN
                INSERT INTO knowledge_fts(knowledge_fts, rowid, key, value)
                    VALUES ('delete', OLD.rowid, OLD.key, OLD.value);
                INSERT INTO knowledge_fts(rowid, key, value) VALUES (NEW.rowid, NEW.key, NEW.value);
            END;
            """
        )

    # -- conversations -------------------------------------------------------

    def get_or_create_conversation(self, platform: str, user_id: str) -> str:
        """Return the active conversation id for a user, creating one lazily."""

        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT id FROM conversations
                WHERE platform = ? AND user_id = ?
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (platform, user_id),
            ).fetchone()
            if row is not None:
                return str(row["id"])
            conversation_id = str(uuid.uuid4())
            now = utc_now_iso()
            conn.execute(
                "INSERT INTO conversations(id, platform, user_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (conversation_id, platform, user_id, now, now),
            )
            return conversation_id

    def add_message(
        self,
        conversation_id: str,
        message: ChatMessage,
        embedding: Sequence[float] | None = None,
    ) -> str:
        """Append a message to a conversation and bump its ``updated_at``."""

        message_id = str(uuid.uuid4())
        tool_calls_json = (
            json.dumps([tc.to_openai() for tc in message.tool_calls]) if message.tool_calls else None
        )
        now = utc_now_iso()
        with self.connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO messages(id, conversation_id, role, content, tool_calls, tool_call_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    conversation_id,
                    message.role,
                    message.content,
                    tool_calls_json,
                    message.tool_call_id,
                    now,
                ),
            )
            if embedding:
                conn.execute(
                    "INSERT INTO message_embeddings(message_rowid, vector) VALUES (?, ?)",
                    (cur.lastrowid, json.dumps(list(embedding))),
                )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id),
            )
        return message_id

    def load_messages(self, conversation_id: str) -> list[ChatMessage]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content, tool_calls, tool_call_id
                FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def clear_conversation(self, platform: str, user_id: str) -> None:
        """Delete every conversation of a user together with its messages."""

        with self.connect() as conn:
            conn.execute(
                """
                DELETE FROM message_embeddings WHERE message_rowid IN (
                    SELECT m.rowid FROM messages m
                    JOIN conversations c ON m.conversation_id = c.id
                    WHERE c.platform = ? AND c.user_id = ?
                )
                """,
                (platform, user_id),
            )
            conn.execute(
                """
                DELETE FROM messages WHERE conversation_id IN (
                    SELECT id FROM conversations WHERE platform = ? AND user_id = ?
                )
                """,
                (platform, user_id),
            )
            conn.execute(
                "DELETE FROM conversations WHERE platform = ? AND user_id = ?",
                (platform, user_id),
            )

    def search_messages(
        self,
        query: str,
        limit: int = 5,
        query_embedding: Sequence[float] | None = None,
    ) -> list[ChatMessage]:
        """Full-text search over messages, fused with vector ranking when available."""

        with self.connect() as conn:
            fts_rowids = _fts_rowids(conn, "messages_fts", query, limit * 3)
            vec_rowids = (
                _vector_rowids(conn, "message_embeddings", "message_rowid", query_embedding, limit * 3)
                if query_embedding
                else []
            )
            ranked = _fuse_rankings(fts_rowids, vec_rowids)[:limit]
            messages: list[ChatMessage] = []
            for rowid in ranked:
                row = conn.execute(
                    "SELECT role, content, tool_calls, tool_call_id FROM messages WHERE rowid = ?",
                    (rowid,),
                ).fetchone()
                if row is not None:
                    messages.append(_row_to_message(row))
        return messages

    # -- knowledge -----------------------------------------------------------

    def remember(
        self,
        category: str,
        key: str,
        value: str,
        source: str | None = None,
        embedding: Sequence[float] | None = None,
    ) -> None:
        """Insert or update a knowledge entry keyed by ``(category, key)``."""

        now = utc_now_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO knowledge(id, category, key, value, source, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(category, key) DO UPDATE SET
                    value=excluded.value,
                    source=excluded.source,
                    updated_at=excluded.updated_at
                """,
                (str(uuid.uuid4()), category, key, value, source, now, now),
            )
            rowid = conn.execute(
                "SELECT rowid FROM knowledge WHERE category = ? AND key = ?", (category, key)
            ).fetchone()[0]
            conn.execute("DELETE FROM knowledge_embeddings WHERE knowledge_rowid = ?", (rowid,))
            if embedding:
                conn.execute(
                    "INSERT INTO knowledge_embeddings(knowledge_rowid, vector) VALUES (?, ?)",
                    (rowid, json.dumps(list(embedding))),
                )

    def recall(self, category: str, key: str) -> str | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT value FROM knowledge WHERE category = ? AND key = ?", (category, key)
            ).fetchone()
        return row["value"] if row else None

    def forget(self, category: str, key: str) -> bool:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT rowid FROM knowledge WHERE category = ? AND key = ?", (category, key)
            ).fetchone()
            if row is None:
                return False
            conn.execute("DELETE FROM knowledge_embeddings WHERE knowledge_rowid = ?", (row[0],))
            conn.execute("DELETE FROM knowledge WHERE rowid = ?", (row[0],))
        return True

    def list_knowledge(self, category: str) -> list[KnowledgeEntry]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT id, category, key, value, source FROM knowledge WHERE category = ? ORDER BY key",
                (category,),
            ).fetchall()
        return [KnowledgeEntry(**dict(row)) for row in rows]

    def search_knowledge(
        self,
        query: str,
        limit: int = 5,
        query_embedding: Sequence[float] | None = None,
    ) -> list[KnowledgeEntry]:
        with self.connect() as conn:
            fts_rowids = _fts_rowids(conn, "knowledge_fts", query, limit * 3)
            vec_rowids = (
                _vector_rowids(conn, "knowledge_embeddings", "knowledge_rowid", query_embedding, limit * 3)
                if query_embedding
                else []
            )
            entries: list[KnowledgeEntry] = []
            for rowid in _fuse_rankings(fts_rowids, vec_rowids)[:limit]:
                row = conn.execute(
                    "SELECT id, category, key, value, source FROM knowledge WHERE rowid = ?",
                    (rowid,),
                ).fetchone()
                if row is not None:
                    entries.append(KnowledgeEntry(**dict(row)))
        return entries


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_message(row: sqlite3.Row) -> ChatMessage:
    tool_calls = None
    if row["tool_calls"]:
        try:
            tool_calls = [ToolCall.from_openai(tc) for tc in json.loads(row["tool_calls"])]
        except (json.JSONDecodeError, TypeError, AttributeError):
            tool_calls = None
    return ChatMessage(
        role=row["role"],
        content=row["content"],
        tool_calls=tool_calls,
        tool_call_id=row["tool_call_id"],
    )


def _fts_query(query: str) -> str:
    # Quote each term so punctuation in user text cannot break FTS5 syntax.
    terms = re.findall(r"\w+", query)
    return " OR ".join(f'"{term}"' for term in terms)


def _fts_rowids(conn: sqlite3.Connection, table: str, query: str, limit: int) -> list[int]:
    match = _fts_query(query)
    if not match:
        return []
    rows = conn.execute(
        f"SELECT rowid FROM {table} WHERE {table} MATCH ? ORDER BY rank LIMIT ?",
        (match, limit),
    ).fetchall()
    return [int(row[0]) for row in rows]


def _vector_rowids(
    conn: sqlite3.Connection,
    table: str,
    rowid_column: str,
    query_embedding: Sequence[float],
    limit: int,
) -> list[int]:
    scored: list[tuple[float, int]] = []
    for row in conn.execute(f"SELECT {rowid_column}, vector FROM {table}"):
        scored.append((_cosine(query_embedding, json.loads(row[1])), int(row[0])))
    scored.sort(reverse=True)
    return [rowid for _, rowid in scored[:limit]]


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def _fuse_rankings(fts: list[int], vec: list[int]) -> list[int]:
    scores: dict[int, float] = {}
    for ranking in (fts, vec):
        for rank, rowid in enumerate(ranking, start=1):
            scores[rowid] = scores.get(rowid, 0.0) + 0.5 / (_RRF_K + rank)
    return sorted(scores, key=lambda rowid: scores[rowid], reverse=True)
