"""Scheduler façade: bridges the task store and the timer engine."""

from __future__ import annotations

import logging
import uuid
import weakref
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

from taskbot.db import utc_now_iso
from taskbot.models import IncomingMessage, ScheduledTask, ToolContext, TriggerType
from taskbot.task_store import ScheduledTaskStore
from taskbot.timer import TimerEngine, next_cron_fire

if TYPE_CHECKING:
    from taskbot.agent_runtime import AgentRuntime

LOGGER = logging.getLogger(__name__)

DEFAULT_MISSED_TASK_GRACE_SECONDS = 3600.0

# Delay used to fire a recently missed one-shot task right after startup.
_MISSED_FIRE_DELAY_SECONDS = 0.5

Notifier = Callable[[str, str], Awaitable[None]]


class TriggerError(ValueError):
    """A trigger value that cannot be scheduled."""


def parse_one_shot_time(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are interpreted in local time.
    """
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise TriggerError(
            f"Could not parse '{value}' as an ISO 8601 datetime (e.g. '2026-03-05T12:00:00')"
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed.astimezone(timezone.utc)


def validate_one_shot(value: str, now: datetime | None = None) -> datetime:
    fire_at = parse_one_shot_time(value)
    if fire_at <= (now or datetime.now(timezone.utc)):
        raise TriggerError(
            f"That time has already passed ({value}). Please provide a future datetime."
        )
    return fire_at


def validate_cron_expr(expr: str) -> datetime:
    """Check a six-field cron expression and return its next fire time."""

    fields = expr.split()
    if len(fields) != 6:
        raise TriggerError(
            "Cron expression must have 6 fields (sec min hour day month weekday), "
            f"got {len(fields)}: '{expr}'"
        )
    try:
        return next_cron_fire(expr)
    except ValueError as exc:
        raise TriggerError(str(exc)) from exc


class TaskScheduler:
    """Owns the mapping from scheduled task ids to live timer jobs.

    Timer callbacks only capture the scheduler. The runtime is held through a
    weak reference and re-acquired at fire time; a fire after the runtime is
    gone does nothing.
    """

    def __init__(
        self,
        store: ScheduledTaskStore,
        timer: TimerEngine,
        missed_task_grace_seconds: float = DEFAULT_MISSED_TASK_GRACE_SECONDS,
    ) -> None:
        self._store = store
        self._timer = timer
        self._grace_seconds = missed_task_grace_seconds
        self._runtime_ref: weakref.ReferenceType[AgentRuntime] | None = None
        self._notifier: Notifier | None = None

    @property
    def store(self) -> ScheduledTaskStore:
        return self._store

    def attach(self, runtime: AgentRuntime, notifier: Notifier) -> None:
        """Wire fire callbacks to the runtime and the chat-platform notifier."""

        self._runtime_ref = weakref.ref(runtime)
        self._notifier = notifier
        runtime.scheduler = self

    def schedule(
        self,
        context: ToolContext,
        trigger_type: TriggerType,
        trigger_value: str,
        prompt: str,
        description: str,
    ) -> ScheduledTask:
        """Validate, persist and arm a new task.

        Raises TriggerError before any write when the trigger is invalid, and
        RuntimeError (after marking the task failed) when arming fails.
        """
        trigger_value = trigger_value.strip()
        if trigger_type == "one_shot":
            next_run = validate_one_shot(trigger_value)
        elif trigger_type == "recurring":
            next_run = validate_cron_expr(trigger_value)
        else:
            raise TriggerError(f"Unknown trigger_type '{trigger_type}'. Use 'one_shot' or 'recurring'.")

        task = ScheduledTask(
            id=str(uuid.uuid4()),
            user_id=context.user_id,
            chat_id=context.chat_id,
            platform=context.platform,
            trigger_type=trigger_type,
            trigger_value=trigger_value,
            prompt=prompt,
            description=description,
            status="active",
            created_at=utc_now_iso(),
            next_run_at=next_run.isoformat(),
        )
        self._store.create(task)

        try:
            job_id = self._arm(task, self._delay_until(next_run))
        except Exception as exc:
            self._store.set_status(task.id, "failed")
            LOGGER.exception("Failed to arm scheduled task %s", task.id)
            raise RuntimeError(f"Failed to register task with scheduler: {exc}") from exc

        self._store.set_timer_job_id(task.id, job_id)
        task.timer_job_id = job_id
        LOGGER.info("Task scheduled: %s (%s, %s '%s')", task.id, description, trigger_type, trigger_value)
        return task

    def cancel(self, task_id: str) -> ScheduledTask | None:
        """Disarm and cancel an active task.

        Returns None when the task does not exist; inactive tasks are returned
        unchanged.
        """

        task = self._store.get(task_id)
        if task is None or task.status != "active":
            return task
        if task.timer_job_id:
            try:
                self._timer.remove(task.timer_job_id)
            except KeyError:
                LOGGER.warning("Timer job %s for task %s was not armed", task.timer_job_id, task_id)
        self._store.set_status(task_id, "cancelled")
        task.status = "cancelled"
        task.timer_job_id = None
        LOGGER.info("Task cancelled: %s (%s)", task_id, task.description)
        return task

    def list_for_user(self, user_id: str) -> list[ScheduledTask]:
        return self._store.list_active_for_user(user_id)

    def restore_all(self, now: datetime | None = None) -> int:
        """Re-arm every active task after a restart.

        One-shot tasks overdue by at most the grace period fire right away;
        older ones are completed without firing. Tasks with unusable triggers
        are logged and skipped. Returns the number of armed tasks.
        """
        now = now or datetime.now(timezone.utc)
        restored = 0
        for task in self._store.list_all_active():
            try:
                if task.is_recurring:
                    next_run = validate_cron_expr(task.trigger_value)
                    self._store.set_next_run_at(task.id, next_run.isoformat())
                    delay = 0.0
                else:
                    fire_at = (
                        datetime.fromisoformat(task.next_run_at)
                        if task.next_run_at
                        else parse_one_shot_time(task.trigger_value)
                    )
                    if fire_at.tzinfo is None:
                        fire_at = fire_at.replace(tzinfo=timezone.utc)
                    delay = (fire_at - now).total_seconds()
                    if delay < 0:
                        overdue = -delay
                        if overdue > self._grace_seconds:
                            self._store.transition(task.id, "active", "completed")
                            LOGGER.info(
                                "Task %s (%s) missed by %.0fs; completed without firing",
                                task.id,
                                task.description,
                                overdue,
                            )
                            continue
                        LOGGER.info("Task %s (%s) missed by %.0fs; firing now", task.id, task.description, overdue)
                        delay = _MISSED_FIRE_DELAY_SECONDS
                job_id = self._arm(task, delay)
            except ValueError as exc:
                self._store.set_timer_job_id(task.id, None)
                LOGGER.warning("Skipping restore of task %s (%s): %s", task.id, task.description, exc)
                continue
            self._store.set_timer_job_id(task.id, job_id)
            restored += 1
            LOGGER.info("Restored scheduled task: %s (%s)", task.id, task.description)

        if restored:
            LOGGER.info("Restored %d scheduled task(s) from the database", restored)
        return restored

    async def fire(self, task_id: str) -> None:
        """Run one occurrence of a task. This is the timer callback body."""

        runtime = self._runtime_ref() if self._runtime_ref is not None else None
        if runtime is None:
            LOGGER.info("Runtime is gone; ignoring fire of task %s", task_id)
            return

        task = self._store.get(task_id)
        if task is None:
            LOGGER.warning("Fired task %s no longer exists", task_id)
            return

        if task.is_recurring:
            if task.status != "active":
                return
            self._store.set_next_run_at(task_id, next_cron_fire(task.trigger_value).isoformat())
        elif not self._store.transition(task_id, "active", "completed"):
            # Already completed or cancelled by another path.
            return

        LOGGER.info("Firing scheduled task %s (%s)", task_id, task.description)
        incoming = IncomingMessage(
            platform=task.platform,
            user_id=task.user_id,
            chat_id=task.chat_id,
            text=task.prompt,
        )
        try:
            async with runtime.user_lock(task.platform, task.user_id):
                reply = await runtime.process_turn(incoming)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Scheduled task %s failed", task_id)
            if not task.is_recurring:
                self._store.transition(task_id, "completed", "failed")
            await self._notify(task.chat_id, f"Scheduled task '{task.description}' failed: {exc}")
            return

        await self._notify(task.chat_id, reply)

    async def shutdown(self) -> None:
        await self._timer.shutdown()

    def _arm(self, task: ScheduledTask, delay_seconds: float) -> str:
        task_id = task.id

        async def callback() -> None:
            await self.fire(task_id)

        if task.is_recurring:
            return self._timer.add_cron(task.trigger_value, task.description, callback)
        return self._timer.add_one_shot(delay_seconds, task.description, callback)

    @staticmethod
    def _delay_until(fire_at: datetime) -> float:
        return max((fire_at - datetime.now(timezone.utc)).total_seconds(), 0.0)

    async def _notify(self, chat_id: str, text: str) -> None:
        if self._notifier is None or not text:
            return
        try:
            await self._notifier(chat_id, text)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to deliver scheduled task output to %s", chat_id)
