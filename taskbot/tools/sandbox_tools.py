"""Filesystem and shell tools confined to the sandbox directory."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from taskbot.models import ToolContext
from taskbot.tools.base import Tool

LOGGER = logging.getLogger(__name__)

_COMMAND_TIMEOUT_SECONDS = 60.0
_MAX_OUTPUT_CHARS = 30_000


def resolve_sandbox_path(sandbox_dir: Path, requested: str) -> Path:
    """Resolve ``requested`` and ensure it stays inside ``sandbox_dir``.

    Raises ValueError for paths escaping the sandbox.
    """
    root = sandbox_dir.resolve()
    candidate = Path(requested).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()
    if resolved != root and root not in resolved.parents:
        raise ValueError(
            f"Access denied: path '{requested}' is outside the sandbox directory '{sandbox_dir}'"
        )
    return resolved


class _SandboxTool(Tool):
    def __init__(self, sandbox_dir: Path) -> None:
        self._sandbox_dir = sandbox_dir


class ReadFileTool(_SandboxTool):
    name = "read_file"
    description = "Read the contents of a file within the sandbox directory."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The file path (relative to sandbox or absolute within sandbox).",
            },
        },
        "required": ["path"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        path = resolve_sandbox_path(self._sandbox_dir, kwargs["path"])
        LOGGER.info("Reading file: %s", path)
        return await asyncio.to_thread(path.read_text, encoding="utf-8")


class WriteFileTool(_SandboxTool):
    name = "write_file"
    description = (
        "Write content to a file within the sandbox directory. Creates parent directories if needed."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The file path (relative to sandbox or absolute within sandbox).",
            },
            "content": {"type": "string", "description": "The content to write to the file."},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        path = resolve_sandbox_path(self._sandbox_dir, kwargs["path"])
        path.parent.mkdir(parents=True, exist_ok=True)
        LOGGER.info("Writing file: %s", path)
        await asyncio.to_thread(path.write_text, kwargs["content"], encoding="utf-8")
        return f"File written successfully: {path}"


class ListFilesTool(_SandboxTool):
    name = "list_files"
    description = "List files and directories within a path in the sandbox directory."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Directory path inside the sandbox. Defaults to the sandbox root.",
            },
        },
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        path = resolve_sandbox_path(self._sandbox_dir, kwargs.get("path") or ".")
        LOGGER.info("Listing files: %s", path)
        entries = sorted(
            f"{'[DIR]' if entry.is_dir() else '[FILE]'} {entry.name}" for entry in path.iterdir()
        )
        return "\n".join(entries) if entries else "Directory is empty"


class ExecuteCommandTool(_SandboxTool):
    name = "execute_command"
    description = (
        "Execute a shell command within the sandbox directory. "
        "The working directory is set to the sandbox."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The shell command to execute."},
        },
        "required": ["command"],
        "additionalProperties": False,
    }

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        command: str = kwargs["command"]
        LOGGER.info("Executing command in sandbox: %s", command)
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=self._sandbox_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=_COMMAND_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return f"Command timed out after {_COMMAND_TIMEOUT_SECONDS:.0f}s"

        parts = []
        if stdout:
            parts.append(f"STDOUT:\n{stdout.decode(errors='replace')}")
        if stderr:
            parts.append(f"STDERR:\n{stderr.decode(errors='replace')}")
        parts.append(f"Exit code: {process.returncode}")
        return "\n".join(parts)[:_MAX_OUTPUT_CHARS]


def sandbox_tools(sandbox_dir: Path) -> list[Tool]:
    return [
        ReadFileTool(sandbox_dir),
        WriteFileTool(sandbox_dir),
        ListFilesTool(sandbox_dir),
        ExecuteCommandTool(sandbox_dir),
    ]
