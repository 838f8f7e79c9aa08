"""Durable CRUD over scheduled task records."""

from __future__ import annotations

import sqlite3

from taskbot.db import Database
from taskbot.models import ScheduledTask, TaskStatus

_COLUMNS = (
    "id, timer_job_id, user_id, chat_id, platform, trigger_type, "
    "trigger_value, prompt, description, status, created_at, next_run_at"
)


class ScheduledTaskStore:
    """Scheduled task persistence. Holds no scheduling logic."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create(self, task: ScheduledTask) -> None:
        with self._db.connect() as conn:
            conn.execute(
                f"INSERT INTO scheduled_tasks({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    task.id,
                    task.timer_job_id,
                    task.user_id,
                    task.chat_id,
                    task.platform,
                    task.trigger_type,
                    task.trigger_value,
                    task.prompt,
                    task.description,
                    task.status,
                    task.created_at,
                    task.next_run_at,
                ),
            )

    def get(self, task_id: str) -> ScheduledTask | None:
        with self._db.connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM scheduled_tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return _row_to_task(row) if row else None

    def list_active_for_user(self, user_id: str) -> list[ScheduledTask]:
        return self._query("WHERE user_id = ? AND status = 'active'", (user_id,))

    def list_all_active(self) -> list[ScheduledTask]:
        return self._query("WHERE status = 'active'", ())

    def set_status(self, task_id: str, status: TaskStatus) -> None:
        """Update status; leaving ``active`` also clears the timer job id."""

        with self._db.connect() as conn:
            if status == "active":
                conn.execute("UPDATE scheduled_tasks SET status = ? WHERE id = ?", (status, task_id))
            else:
                conn.execute(
                    "UPDATE scheduled_tasks SET status = ?, timer_job_id = NULL WHERE id = ?",
                    (status, task_id),
                )

    def transition(self, task_id: str, from_status: TaskStatus, to_status: TaskStatus) -> bool:
        """Move a task between states only if it is still in ``from_status``.

        Returns False when another caller already moved it.
        """
        with self._db.connect() as conn:
            cur = conn.execute(
                "UPDATE scheduled_tasks SET status = ?, timer_job_id = NULL WHERE id = ? AND status = ?",
                (to_status, task_id, from_status),
            )
            return cur.rowcount == 1

    def set_timer_job_id(self, task_id: str, job_id: str | None) -> None:
        with self._db.connect() as conn:
            conn.execute(
                "UPDATE scheduled_tasks SET timer_job_id = ? WHERE id = ?", (job_id, task_id)
            )

    def set_next_run_at(self, task_id: str, next_run_at: str | None) -> None:
        with self._db.connect() as conn:
            conn.execute(
                "UPDATE scheduled_tasks SET next_run_at = ? WHERE id = ?", (next_run_at, task_id)
            )

    def _query(self, where_clause: str, params: tuple[str, ...]) -> list[ScheduledTask]:
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM scheduled_tasks {where_clause} ORDER BY created_at ASC",
                params,
            ).fetchall()
        return [_row_to_task(row) for row in rows]


def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
    return ScheduledTask(**dict(row))
