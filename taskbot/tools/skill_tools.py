"""Tools that let the model author and activate skills."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import PurePosixPath
from typing import Any

from taskbot.models import ToolContext
from taskbot.skills import SkillCatalog
from taskbot.tools.base import Tool

LOGGER = logging.getLogger(__name__)

_SKILL_NAME_RE = re.compile(r"^[a-z0-9-]{1,64}$")


def validate_skill_name(name: str) -> None:
    if not name:
        raise ValueError("Skill name must not be empty")
    if len(name) > 64:
        raise ValueError(f"Skill name too long ({len(name)} chars, max 64)")
    if not _SKILL_NAME_RE.match(name):
        raise ValueError("Skill name must contain only lowercase letters, numbers, and hyphens")


def validate_skill_path(path: str) -> None:
    if not path:
        raise ValueError("Relative path must not be empty")
    if path.startswith("/"):
        raise ValueError("Relative path must not be absolute")
    if ".." in PurePosixPath(path).parts:
        raise ValueError("Path traversal ('..') is not allowed")


class WriteSkillFileTool(Tool):
    name = "write_skill_file"
    description = (
        "Write a file into a skill directory under the configured skills folder. "
        "Use this to create SKILL.md and any supporting files (reference docs, templates, scripts). "
        "Call reload_skills after ALL files for the skill are written."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "skill_name": {
                "type": "string",
                "description": (
                    "Skill directory name: lowercase letters, numbers, hyphens only, "
                    "max 64 chars (e.g. 'creating-reports')."
                ),
            },
            "relative_path": {
                "type": "string",
                "description": "Path within the skill directory, e.g. 'SKILL.md' or 'scripts/helper.py'.",
            },
            "content": {"type": "string", "description": "Full file content to write."},
        },
        "required": ["skill_name", "relative_path", "content"],
        "additionalProperties": False,
    }

    def __init__(self, catalog: SkillCatalog) -> None:
        self._catalog = catalog

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        skill_name: str = kwargs["skill_name"]
        relative_path: str = kwargs["relative_path"]
        try:
            validate_skill_name(skill_name)
        except ValueError as exc:
            return f"Invalid skill_name: {exc}"
        try:
            validate_skill_path(relative_path)
        except ValueError as exc:
            return f"Invalid relative_path: {exc}"

        target = self._catalog.directory / skill_name / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_text, kwargs["content"], encoding="utf-8")
        LOGGER.info("Skill file written: %s", target)
        return f"Written: {target}"


class ReloadSkillsTool(Tool):
    name = "reload_skills"
    description = (
        "Reload all skills from the skills directory into memory. Call this after writing "
        "skill files to make the new skill immediately active without a restart."
    )
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}, "additionalProperties": False}

    def __init__(self, catalog: SkillCatalog) -> None:
        self._catalog = catalog

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        registry = await self._catalog.reload()
        return f"Skills reloaded. {len(registry)} skill(s) now active."


def skill_tools(catalog: SkillCatalog) -> list[Tool]:
    return [WriteSkillFileTool(catalog), ReloadSkillsTool(catalog)]
