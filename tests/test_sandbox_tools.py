import json

import pytest

from taskbot.models import ToolContext
from taskbot.tools.registry import ToolRegistry
from taskbot.tools.sandbox_tools import resolve_sandbox_path, sandbox_tools

CONTEXT = ToolContext(user_id="user-1", chat_id="chat-1")


def _registry(sandbox) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in sandbox_tools(sandbox):
        registry.register(tool)
    return registry


def test_resolve_rejects_escapes(tmp_path):
    sandbox = tmp_path / "sandbox"
    sandbox.mkdir()

    assert resolve_sandbox_path(sandbox, "notes/a.txt") == (sandbox / "notes" / "a.txt").resolve()
    assert resolve_sandbox_path(sandbox, str(sandbox)) == sandbox.resolve()
    with pytest.raises(ValueError, match="outside the sandbox"):
        resolve_sandbox_path(sandbox, "../secrets.txt")
    with pytest.raises(ValueError):
        resolve_sandbox_path(sandbox, "/etc/passwd")


@pytest.mark.asyncio
async def test_write_read_and_list(tmp_path):
    registry = _registry(tmp_path)

    written = await registry.execute(
        "write_file", json.dumps({"path": "docs/todo.md", "content": "- stretch"}), CONTEXT
    )
    content = await registry.execute("read_file", json.dumps({"path": "docs/todo.md"}), CONTEXT)
    root_listing = await registry.execute("list_files", "{}", CONTEXT)
    docs_listing = await registry.execute("list_files", json.dumps({"path": "docs"}), CONTEXT)

    assert written.startswith("File written successfully")
    assert content == "- stretch"
    assert root_listing == "[DIR] docs"
    assert docs_listing == "[FILE] todo.md"


@pytest.mark.asyncio
async def test_escaping_path_becomes_tool_error(tmp_path):
    registry = _registry(tmp_path / "sandbox")
    (tmp_path / "sandbox").mkdir()

    result = await registry.execute("read_file", json.dumps({"path": "../outside.txt"}), CONTEXT)

    assert result.startswith("Tool error: Access denied")


@pytest.mark.asyncio
async def test_execute_command_runs_in_sandbox(tmp_path):
    registry = _registry(tmp_path)
    (tmp_path / "marker.txt").write_text("x")

    result = await registry.execute("execute_command", json.dumps({"command": "ls && echo oops >&2"}), CONTEXT)

    assert "STDOUT:\nmarker.txt" in result
    assert "STDERR:\noops" in result
    assert result.endswith("Exit code: 0")


@pytest.mark.asyncio
async def test_execute_command_reports_failure_exit_code(tmp_path):
    registry = _registry(tmp_path)

    result = await registry.execute("execute_command", json.dumps({"command": "exit 3"}), CONTEXT)

    assert result == "Exit code: 3"
