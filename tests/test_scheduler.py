"""Tests for the scheduler façade: validation, firing, cancellation and recovery."""

from __future__ import annotations

import asyncio
import gc
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from taskbot.db import Database
from taskbot.models import ScheduledTask, ToolContext
from taskbot.scheduler import (
    TaskScheduler,
    TriggerError,
    parse_one_shot_time,
    validate_cron_expr,
    validate_one_shot,
)
from taskbot.task_store import ScheduledTaskStore
from taskbot.timer import TimerEngine

CONTEXT = ToolContext(user_id="user-1", chat_id="chat-1", platform="signal")


class FakeRuntime:
    def __init__(self, reply: str = "scheduled reply") -> None:
        self.process_turn = AsyncMock(return_value=reply)
        self.scheduler = None
        self._lock = asyncio.Lock()

    def user_lock(self, platform: str, user_id: str) -> asyncio.Lock:
        return self._lock


def _scheduler(tmp_path, grace_seconds: float = 3600) -> tuple[TaskScheduler, ScheduledTaskStore, TimerEngine]:
    db = Database(tmp_path / "taskbot.db")
    db.initialize()
    store = ScheduledTaskStore(db)
    timer = TimerEngine()
    return TaskScheduler(store, timer, missed_task_grace_seconds=grace_seconds), store, timer


def _stored_task(task_id: str, **overrides) -> ScheduledTask:
    values = {
        "id": task_id,
        "user_id": "user-1",
        "chat_id": "chat-1",
        "platform": "signal",
        "trigger_type": "one_shot",
        "trigger_value": "2026-01-01T09:00:00",
        "prompt": "Remind me to stretch",
        "description": "stretch",
        "status": "active",
        "created_at": datetime.now(timezone.utc).isoformat(),
        "next_run_at": None,
    }
    values.update(overrides)
    return ScheduledTask(**values)


def _in(seconds: float) -> str:
    return (datetime.now().astimezone() + timedelta(seconds=seconds)).isoformat()


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


# ---------------------------------------------------------------------------
# Trigger validation
# ---------------------------------------------------------------------------


class TestTriggerValidation:
    def test_five_field_cron_is_rejected(self):
        with pytest.raises(TriggerError, match="must have 6 fields"):
            validate_cron_expr("0 9 * * *")

    def test_six_field_cron_is_accepted(self):
        next_fire = validate_cron_expr("0 0 9 * * MON")
        assert next_fire > datetime.now(timezone.utc)

    def test_garbage_cron_with_six_fields_is_rejected(self):
        with pytest.raises(TriggerError):
            validate_cron_expr("a b c d e f")

    def test_past_one_shot_is_rejected(self):
        with pytest.raises(TriggerError, match="already passed"):
            validate_one_shot("2000-01-01T00:00:00")

    def test_unparseable_one_shot_is_rejected(self):
        with pytest.raises(TriggerError, match="ISO 8601"):
            validate_one_shot("tomorrow at noon")

    def test_offset_qualified_timestamp_is_honoured(self):
        parsed = parse_one_shot_time("2030-05-01T12:00:00+02:00")
        assert parsed == datetime(2030, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_naive_timestamp_is_local_time(self):
        parsed = parse_one_shot_time("2030-05-01T12:00:00")
        assert parsed == datetime(2030, 5, 1, 12, 0).astimezone().astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Scheduling and firing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_past_one_shot_creates_no_row(tmp_path):
    scheduler, store, timer = _scheduler(tmp_path)

    with pytest.raises(TriggerError):
        scheduler.schedule(CONTEXT, "one_shot", "2000-01-01T00:00:00", "prompt", "old")

    assert store.list_all_active() == []
    assert timer.job_count() == 0
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_schedule_persists_and_arms(tmp_path):
    scheduler, store, timer = _scheduler(tmp_path)

    task = scheduler.schedule(CONTEXT, "recurring", "0 0 9 * * MON", "Weekly summary", "weekly")

    stored = store.get(task.id)
    assert stored.status == "active"
    assert stored.timer_job_id == task.timer_job_id
    assert timer.has_job(task.timer_job_id)
    assert stored.next_run_at is not None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_one_shot_fires_once_and_completes(tmp_path):
    scheduler, store, _ = _scheduler(tmp_path)
    runtime = FakeRuntime()
    notifier = AsyncMock()
    scheduler.attach(runtime, notifier)

    task = scheduler.schedule(CONTEXT, "one_shot", _in(0.3), "Say hi", "greeting")
    await _wait_for(lambda: notifier.await_count == 1)

    incoming = runtime.process_turn.await_args.args[0]
    assert incoming.text == "Say hi"
    assert incoming.user_id == "user-1"
    notifier.assert_awaited_once_with("chat-1", "scheduled reply")
    stored = store.get(task.id)
    assert stored.status == "completed"
    assert stored.timer_job_id is None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_duplicate_fire_of_one_shot_delivers_once(tmp_path):
    scheduler, store, _ = _scheduler(tmp_path)
    runtime = FakeRuntime()
    notifier = AsyncMock()
    scheduler.attach(runtime, notifier)
    store.create(_stored_task("t1"))

    await scheduler.fire("t1")
    await scheduler.fire("t1")

    assert runtime.process_turn.await_count == 1
    assert notifier.await_count == 1
    assert store.get("t1").status == "completed"
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_recurring_fire_stays_active_and_advances(tmp_path):
    scheduler, store, _ = _scheduler(tmp_path)
    runtime = FakeRuntime()
    scheduler.attach(runtime, AsyncMock())
    store.create(_stored_task("r1", trigger_type="recurring", trigger_value="0 0 9 * * *", next_run_at=None))

    await scheduler.fire("r1")
    await scheduler.fire("r1")

    assert runtime.process_turn.await_count == 2
    stored = store.get("r1")
    assert stored.status == "active"
    assert datetime.fromisoformat(stored.next_run_at) > datetime.now(timezone.utc)
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_failed_one_shot_is_marked_failed_and_user_notified(tmp_path):
    scheduler, store, _ = _scheduler(tmp_path)
    runtime = FakeRuntime()
    runtime.process_turn.side_effect = RuntimeError("model down")
    notifier = AsyncMock()
    scheduler.attach(runtime, notifier)
    store.create(_stored_task("t1"))

    await scheduler.fire("t1")

    assert store.get("t1").status == "failed"
    chat_id, text = notifier.await_args.args
    assert chat_id == "chat-1"
    assert "stretch" in text and "model down" in text
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_failed_recurring_stays_active(tmp_path):
    scheduler, store, _ = _scheduler(tmp_path)
    runtime = FakeRuntime()
    runtime.process_turn.side_effect = RuntimeError("model down")
    scheduler.attach(runtime, AsyncMock())
    store.create(_stored_task("r1", trigger_type="recurring", trigger_value="0 0 9 * * *"))

    await scheduler.fire("r1")

    assert store.get("r1").status == "active"
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_notifier_failure_does_not_escape_fire(tmp_path):
    scheduler, store, _ = _scheduler(tmp_path)
    runtime = FakeRuntime()
    scheduler.attach(runtime, AsyncMock(side_effect=RuntimeError("signal down")))
    store.create(_stored_task("t1"))

    await scheduler.fire("t1")

    runtime.process_turn.assert_awaited_once()
    assert store.get("t1").status == "completed"
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_arming_failure_marks_task_failed(tmp_path):
    scheduler, store, timer = _scheduler(tmp_path)
    await timer.shutdown()

    with pytest.raises(RuntimeError, match="Failed to register task"):
        scheduler.schedule(CONTEXT, "one_shot", _in(60), "prompt", "never armed")

    assert store.list_all_active() == []
    with store._db.connect() as conn:
        statuses = [row["status"] for row in conn.execute("SELECT status FROM scheduled_tasks")]
    assert statuses == ["failed"]


# ---------------------------------------------------------------------------
# Cancellation and teardown
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_removes_timer_and_later_fire_is_inert(tmp_path):
    scheduler, store, timer = _scheduler(tmp_path)
    runtime = FakeRuntime()
    notifier = AsyncMock()
    scheduler.attach(runtime, notifier)
    task = scheduler.schedule(CONTEXT, "one_shot", _in(3600), "later", "later")

    cancelled = scheduler.cancel(task.id)
    await scheduler.fire(task.id)

    assert cancelled.status == "cancelled"
    assert not timer.has_job(task.timer_job_id)
    assert timer.job_count() == 0
    runtime.process_turn.assert_not_awaited()
    notifier.assert_not_awaited()
    stored = store.get(task.id)
    assert stored.status == "cancelled"
    assert stored.timer_job_id is None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_cancel_unknown_task_returns_none(tmp_path):
    scheduler, _, _ = _scheduler(tmp_path)
    assert scheduler.cancel("nope") is None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_fire_after_runtime_teardown_is_a_noop(tmp_path):
    scheduler, store, _ = _scheduler(tmp_path)
    notifier = AsyncMock()
    runtime = FakeRuntime()
    scheduler.attach(runtime, notifier)
    store.create(_stored_task("t1"))

    del runtime
    gc.collect()
    await scheduler.fire("t1")

    notifier.assert_not_awaited()
    assert store.get("t1").status == "active"
    await scheduler.shutdown()


# ---------------------------------------------------------------------------
# Startup recovery
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_restore_fires_recently_missed_one_shot(tmp_path):
    scheduler, store, _ = _scheduler(tmp_path)
    runtime = FakeRuntime()
    notifier = AsyncMock()
    scheduler.attach(runtime, notifier)
    missed_at = datetime.now(timezone.utc) - timedelta(minutes=30)
    store.create(_stored_task("t1", next_run_at=missed_at.isoformat()))

    restored = scheduler.restore_all()
    await _wait_for(lambda: notifier.await_count == 1)

    assert restored == 1
    runtime.process_turn.assert_awaited_once()
    assert store.get("t1").status == "completed"
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_restore_completes_stale_one_shot_without_firing(tmp_path):
    scheduler, store, timer = _scheduler(tmp_path)
    runtime = FakeRuntime()
    scheduler.attach(runtime, AsyncMock())
    missed_at = datetime.now(timezone.utc) - timedelta(hours=2)
    store.create(_stored_task("t1", next_run_at=missed_at.isoformat(), timer_job_id="stale-job"))

    restored = scheduler.restore_all()
    await asyncio.sleep(0.1)

    assert restored == 0
    assert timer.job_count() == 0
    runtime.process_turn.assert_not_awaited()
    stored = store.get("t1")
    assert stored.status == "completed"
    assert stored.timer_job_id is None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_grace_period_is_configurable(tmp_path):
    scheduler, store, timer = _scheduler(tmp_path, grace_seconds=60)
    runtime = FakeRuntime()
    scheduler.attach(runtime, AsyncMock())
    missed_at = datetime.now(timezone.utc) - timedelta(minutes=5)
    store.create(_stored_task("t1", next_run_at=missed_at.isoformat()))

    assert scheduler.restore_all() == 0
    assert store.get("t1").status == "completed"
    runtime.process_turn.assert_not_awaited()
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_restore_rearms_future_and_recurring_tasks(tmp_path):
    scheduler, store, timer = _scheduler(tmp_path)
    future = datetime.now(timezone.utc) + timedelta(hours=1)
    store.create(_stored_task("t1", next_run_at=future.isoformat(), timer_job_id="old-job"))
    store.create(_stored_task("r1", trigger_type="recurring", trigger_value="0 30 8 * * *"))

    restored = scheduler.restore_all()

    assert restored == 2
    assert timer.job_count() == 2
    for task_id in ("t1", "r1"):
        stored = store.get(task_id)
        assert stored.status == "active"
        assert timer.has_job(stored.timer_job_id)
    assert store.get("r1").next_run_at is not None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_restore_skips_malformed_tasks(tmp_path):
    scheduler, store, timer = _scheduler(tmp_path)
    store.create(_stored_task("bad-cron", trigger_type="recurring", trigger_value="every day"))
    store.create(_stored_task("bad-time", trigger_value="not a time"))
    store.create(_stored_task("r1", trigger_type="recurring", trigger_value="0 0 9 * * *"))

    restored = scheduler.restore_all()

    assert restored == 1
    assert timer.job_count() == 1
    assert store.get("bad-cron").status == "active"
    assert store.get("bad-time").status == "active"
    await scheduler.shutdown()
