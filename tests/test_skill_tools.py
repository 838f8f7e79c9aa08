import json

import pytest

from taskbot.models import ToolContext
from taskbot.skills import SkillCatalog
from taskbot.tools.registry import ToolRegistry
from taskbot.tools.skill_tools import skill_tools, validate_skill_name, validate_skill_path

CONTEXT = ToolContext(user_id="user-1", chat_id="chat-1")


def _registry(catalog: SkillCatalog) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in skill_tools(catalog):
        registry.register(tool)
    return registry


class TestValidation:
    @pytest.mark.parametrize("name", ["weather", "daily-report-2", "a" * 64])
    def test_valid_names(self, name):
        validate_skill_name(name)

    @pytest.mark.parametrize("name", ["", "Weather", "has space", "under_score", "a" * 65, "../up"])
    def test_invalid_names(self, name):
        with pytest.raises(ValueError):
            validate_skill_name(name)

    @pytest.mark.parametrize("path", ["", "/etc/passwd", "../SKILL.md", "docs/../../x"])
    def test_invalid_paths(self, path):
        with pytest.raises(ValueError):
            validate_skill_path(path)

    def test_nested_relative_path_is_allowed(self):
        validate_skill_path("scripts/helper.py")


@pytest.mark.asyncio
async def test_write_then_reload_activates_skill(tmp_path):
    catalog = SkillCatalog(tmp_path)
    registry = _registry(catalog)

    written = await registry.execute(
        "write_skill_file",
        json.dumps(
            {
                "skill_name": "morning-brief",
                "relative_path": "SKILL.md",
                "content": "---\nname: morning-brief\ndescription: Daily brief\n---\nSummarize the day.",
            }
        ),
        CONTEXT,
    )
    reloaded = await registry.execute("reload_skills", "{}", CONTEXT)

    assert written == f"Written: {tmp_path / 'morning-brief' / 'SKILL.md'}"
    assert reloaded == "Skills reloaded. 1 skill(s) now active."
    assert catalog.current.get("morning-brief").description == "Daily brief"


@pytest.mark.asyncio
async def test_invalid_skill_name_writes_nothing(tmp_path):
    registry = _registry(SkillCatalog(tmp_path))

    result = await registry.execute(
        "write_skill_file",
        json.dumps({"skill_name": "Bad Name", "relative_path": "SKILL.md", "content": "x"}),
        CONTEXT,
    )

    assert result.startswith("Invalid skill_name:")
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_traversal_path_writes_nothing(tmp_path):
    registry = _registry(SkillCatalog(tmp_path))

    result = await registry.execute(
        "write_skill_file",
        json.dumps({"skill_name": "ok", "relative_path": "../escape.md", "content": "x"}),
        CONTEXT,
    )

    assert result == "Invalid relative_path: Path traversal ('..') is not allowed"
    assert list(tmp_path.iterdir()) == []
