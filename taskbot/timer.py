"""In-process timer engine for one-shot and cron jobs."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable

from croniter import croniter

LOGGER = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[None]]


def next_cron_fire(cron_expr: str, after: datetime | None = None) -> datetime:
    """Return the next fire time of a six-field (seconds-first) cron expression.

    Raises ValueError when croniter rejects the expression.
    """
    base = (after or datetime.now(timezone.utc)).astimezone()
    try:
        itr = croniter(cron_expr, base, second_at_beginning=True)
        return itr.get_next(datetime).astimezone(timezone.utc)
    except (ValueError, KeyError) as exc:
        raise ValueError(f"Invalid cron expression '{cron_expr}': {exc}") from exc


class TimerEngine:
    """Arms asyncio tasks that await their fire time and invoke a callback.

    The engine knows nothing about what a job means. Callbacks run in their
    own task so a slow callback never delays the next cron fire.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, asyncio.Task[None]] = {}
        self._running: set[asyncio.Task[None]] = set()
        self._stopped = False

    def add_one_shot(self, delay_seconds: float, name: str, callback: JobCallback) -> str:
        self._ensure_running()
        job_id = str(uuid.uuid4())
        self._jobs[job_id] = asyncio.create_task(
            self._run_one_shot(job_id, max(delay_seconds, 0.0), name, callback),
            name=f"timer-one-shot-{name}",
        )
        LOGGER.info("One-shot job '%s' (%s) armed in %.1fs", name, job_id, delay_seconds)
        return job_id

    def add_cron(self, cron_expr: str, name: str, callback: JobCallback) -> str:
        self._ensure_running()
        next_cron_fire(cron_expr)
        job_id = str(uuid.uuid4())
        self._jobs[job_id] = asyncio.create_task(
            self._run_cron(cron_expr, name, callback),
            name=f"timer-cron-{name}",
        )
        LOGGER.info("Cron job '%s' (%s) armed with '%s'", name, job_id, cron_expr)
        return job_id

    def remove(self, job_id: str) -> None:
        """Disarm a job. Raises KeyError if it is not armed."""

        task = self._jobs.pop(job_id)
        task.cancel()
        LOGGER.info("Timer job %s removed", job_id)

    def has_job(self, job_id: str) -> bool:
        return job_id in self._jobs

    def job_count(self) -> int:
        return len(self._jobs)

    async def shutdown(self) -> None:
        self._stopped = True
        pending = [*self._jobs.values(), *self._running]
        self._jobs.clear()
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        LOGGER.info("Timer engine stopped")

    def _ensure_running(self) -> None:
        if self._stopped:
            raise RuntimeError("Timer engine has been shut down")

    async def _run_one_shot(self, job_id: str, delay: float, name: str, callback: JobCallback) -> None:
        await asyncio.sleep(delay)
        self._jobs.pop(job_id, None)
        current = asyncio.current_task()
        if current is not None:
            self._running.add(current)
        LOGGER.info("Running one-shot job: %s", name)
        try:
            await self._invoke(name, callback)
        finally:
            self._running.discard(current)

    async def _run_cron(self, cron_expr: str, name: str, callback: JobCallback) -> None:
        last_fire: datetime | None = None
        while True:
            now = datetime.now(timezone.utc)
            # A sleep that wakes slightly early must not yield the same slot twice.
            fire_at = next_cron_fire(cron_expr, max(now, last_fire) if last_fire else now)
            await asyncio.sleep(max((fire_at - now).total_seconds(), 0.0))
            last_fire = fire_at
            LOGGER.info("Running cron job: %s", name)
            task = asyncio.create_task(self._invoke(name, callback), name=f"timer-fire-{name}")
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    async def _invoke(self, name: str, callback: JobCallback) -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            LOGGER.exception("Timer job '%s' failed", name)
