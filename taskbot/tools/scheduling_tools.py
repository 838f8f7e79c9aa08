"""Tools that let the model register, list and cancel future turns."""

from __future__ import annotations

from typing import Any

from taskbot.models import ToolContext
from taskbot.scheduler import TaskScheduler, TriggerError
from taskbot.tools.base import Tool, ToolCategory

_SCHEDULE_DESCRIPTION = (
    "Schedule a task to run at a future time. The prompt will be executed by the AI agent "
    "at the scheduled time (full agentic loop). "
    "For one_shot: trigger_value is ISO 8601 datetime e.g. '2026-03-05T12:00:00'. "
    "For recurring: trigger_value is a 6-field cron expression "
    "(sec min hour day month weekday) e.g. '0 0 9 * * MON' for every Monday at 9am.\n\n"
    "TIME INFERENCE RULES (follow these strictly, do not ask unnecessary questions):\n"
    "- The current date and time is in your system prompt. Always use it as the reference.\n"
    "- Time only, no date (e.g. '5:20', '9:30am'): assume TODAY. If the time is in the past today, "
    "use tomorrow.\n"
    "- The user's AM/PM intent is usually clear from context: if it is currently 5:15pm and they say "
    "'5:20', that is 5:20pm today.\n"
    "- '12:00' or 'noon' = 12:00pm. 'midnight' = 00:00.\n"
    "- Only ask for AM/PM clarification when it is genuinely ambiguous.\n"
    "- Day of week only (e.g. 'Friday'): assume the NEXT occurrence of that day.\n"
    "- Never ask for information you can infer. Prefer acting over asking."
)


class _SchedulingTool(Tool):
    category = ToolCategory.SCHEDULING

    def __init__(self, scheduler: TaskScheduler) -> None:
        self._scheduler = scheduler


class ScheduleTaskTool(_SchedulingTool):
    name = "schedule_task"
    description = _SCHEDULE_DESCRIPTION
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "trigger_type": {"type": "string", "enum": ["one_shot", "recurring"]},
            "trigger_value": {
                "type": "string",
                "description": "ISO 8601 datetime (one_shot) or 6-field cron expression (recurring)",
            },
            "prompt": {"type": "string", "description": "The message the agent will process at trigger time"},
            "description": {"type": "string", "description": "Human-readable label for this task"},
        },
        "required": ["trigger_type", "trigger_value", "prompt", "description"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        trigger_type = kwargs["trigger_type"]
        try:
            task = self._scheduler.schedule(
                context,
                trigger_type=trigger_type,
                trigger_value=kwargs["trigger_value"],
                prompt=kwargs["prompt"],
                description=kwargs["description"],
            )
        except TriggerError as exc:
            if trigger_type == "recurring":
                return f"Invalid cron expression: {exc}"
            return f"Invalid trigger: {exc}"
        except RuntimeError as exc:
            return str(exc)
        return f"Task scheduled! ID: {task.id} ({task.description}, {task.trigger_value})"


class ListScheduledTasksTool(_SchedulingTool):
    name = "list_scheduled_tasks"
    description = "List all active scheduled tasks for the current user."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}, "additionalProperties": False}

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        tasks = self._scheduler.list_for_user(context.user_id)
        if not tasks:
            return "No active scheduled tasks."
        lines = [f"Active scheduled tasks ({len(tasks)}):", ""]
        for task in tasks:
            lines.extend(
                [
                    f"ID: {task.id}",
                    f"Description: {task.description}",
                    f"Type: {task.trigger_type} | Trigger: {task.trigger_value}",
                    f"Prompt: {task.prompt}",
                    "",
                ]
            )
        return "\n".join(lines).rstrip()


class CancelScheduledTaskTool(_SchedulingTool):
    name = "cancel_scheduled_task"
    description = "Cancel an active scheduled task by its ID."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "task_id": {"type": "string", "description": "The task ID from list_scheduled_tasks"},
        },
        "required": ["task_id"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        task_id = kwargs["task_id"].strip()
        existing = self._scheduler.store.get(task_id)
        if existing is None or existing.user_id != context.user_id:
            return f"Task '{task_id}' not found."
        if existing.status != "active":
            return f"Task '{task_id}' is not active (status: {existing.status})."
        task = self._scheduler.cancel(task_id)
        description = task.description if task else existing.description
        return f"Task '{task_id}' ({description}) cancelled."


def scheduling_tools(scheduler: TaskScheduler) -> list[Tool]:
    return [
        ScheduleTaskTool(scheduler),
        ListScheduledTasksTool(scheduler),
        CancelScheduledTaskTool(scheduler),
    ]
