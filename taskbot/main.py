"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from taskbot.agent_runtime import AgentRuntime
from taskbot.commands import CommandDispatcher
from taskbot.config import Settings, allowed_senders, load_settings
from taskbot.db import Database
from taskbot.embeddings import EmbeddingClient
from taskbot.events import EventChannel
from taskbot.llm.openrouter import OpenRouterProvider
from taskbot.mcp_manager import McpManager
from taskbot.models import IncomingMessage
from taskbot.scheduler import TaskScheduler
from taskbot.signal_adapter import SignalAdapter, StatusIndicator
from taskbot.skills import SkillCatalog, load_skills_from_dir
from taskbot.task_store import ScheduledTaskStore
from taskbot.timer import TimerEngine
from taskbot.tools.memory_tools import memory_tools
from taskbot.tools.registry import ToolRegistry
from taskbot.tools.sandbox_tools import sandbox_tools
from taskbot.tools.scheduling_tools import scheduling_tools
from taskbot.tools.skill_tools import skill_tools

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)

ERROR_REPLY = "Sorry, something went wrong while handling your message. Please try again."


def build_tool_registry(
    settings: Settings,
    db: Database,
    embeddings: EmbeddingClient | None,
    skills: SkillCatalog,
    scheduler: TaskScheduler,
    mcp: McpManager,
) -> ToolRegistry:
    tools = ToolRegistry()
    for tool in [
        *scheduling_tools(scheduler),
        *memory_tools(db, embeddings),
        *mcp.tools(),
        *sandbox_tools(settings.sandbox_directory),
        *skill_tools(skills),
    ]:
        tools.register(tool)
    LOGGER.info("Registered %d tools", len(tools.tools()))
    return tools


async def handle_message(
    message: IncomingMessage,
    runtime: AgentRuntime,
    commands: CommandDispatcher,
    adapter: SignalAdapter,
) -> None:
    """Run one inbound message to completion and send the reply."""

    async with runtime.user_lock(message.platform, message.user_id):
        reply = await commands.dispatch(message)
        if reply is None:
            channel = EventChannel()
            indicator = StatusIndicator(adapter, message.chat_id)
            follower = asyncio.create_task(indicator.follow(channel), name="status-indicator")
            try:
                reply = await runtime.process_turn(message, channel)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Turn failed for %s:%s", message.platform, message.user_id)
                reply = ERROR_REPLY
            finally:
                channel.close()
                await follower

    if reply:
        try:
            await adapter.send_text(message.chat_id, reply)
        except (RuntimeError, OSError):
            LOGGER.exception("Failed to send reply to %s", message.chat_id)


async def run() -> None:
    """Initialize app layers and start processing loop."""

    settings = load_settings()

    db = Database(settings.database_path)
    db.initialize()

    embeddings = EmbeddingClient.from_settings(settings)
    settings.sandbox_directory.mkdir(parents=True, exist_ok=True)
    skills = SkillCatalog(
        settings.skills_directory,
        await asyncio.to_thread(load_skills_from_dir, settings.skills_directory),
    )

    mcp = McpManager()
    await mcp.connect_all(settings.mcp_servers)

    timer = TimerEngine()
    scheduler = TaskScheduler(
        ScheduledTaskStore(db),
        timer,
        missed_task_grace_seconds=settings.missed_task_grace_seconds,
    )
    tools = build_tool_registry(settings, db, embeddings, skills, scheduler, mcp)

    runtime = AgentRuntime(
        db=db,
        llm=OpenRouterProvider(settings),
        tool_registry=tools,
        skills=skills,
        system_prompt=settings.system_prompt,
        max_iterations=settings.max_iterations,
        user_location=settings.user_location,
        embeddings=embeddings,
        request_timeout_seconds=settings.request_timeout_seconds,
    )

    signal_adapter = SignalAdapter(
        signal_cli_path=settings.signal_cli_path,
        account=settings.signal_account,
        poll_interval_seconds=settings.signal_poll_interval_seconds,
        owner_number=settings.signal_owner_number,
        allowed_senders=allowed_senders(settings),
        chunk_size=settings.message_chunk_size,
    )
    commands = CommandDispatcher(runtime)

    scheduler.attach(runtime, signal_adapter.send_text)
    scheduler.restore_all()

    in_flight: set[asyncio.Task[None]] = set()
    try:
        async for message in signal_adapter.poll_messages():
            task = asyncio.create_task(
                handle_message(message, runtime, commands, signal_adapter),
                name=f"turn-{message.user_id}",
            )
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
    except asyncio.CancelledError:
        raise
    finally:
        for task in in_flight:
            task.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        await scheduler.shutdown()
        await mcp.shutdown()
        LOGGER.info("Assistant shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
