"""Markdown skill catalog with hot reload.

Skills live in the skills directory either as ``<name>.md`` or as
``<name>/SKILL.md``. A file may start with YAML frontmatter::

    ---
    name: my-skill
    description: What this skill does
    tags: [coding, review]
    ---
    # Instructions here...

Without frontmatter the name comes from the path and the description from
the first heading or line of the body.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Skill:
    name: str
    description: str
    content: str
    tags: list[str] = field(default_factory=list)


class SkillRegistry:
    """Immutable-by-convention snapshot of loaded skills."""

    def __init__(self, skills: list[Skill] | None = None) -> None:
        self._skills: dict[str, Skill] = {}
        for skill in skills or []:
            self.register(skill)

    def register(self, skill: Skill) -> None:
        LOGGER.info("Registered skill: %s - %s", skill.name, skill.description)
        self._skills[skill.name] = skill

    def get(self, name: str) -> Skill | None:
        return self._skills.get(name)

    def list_skills(self) -> list[Skill]:
        return sorted(self._skills.values(), key=lambda s: s.name)

    def __len__(self) -> int:
        return len(self._skills)

    def build_context(self) -> str:
        """Render the skills section of the system prompt."""

        if not self._skills:
            return ""
        parts = ["You have the following skills available. When relevant, follow these instructions:\n"]
        for skill in self.list_skills():
            parts.append(f"## Skill: {skill.name}\n{skill.content}\n")
        return "\n".join(parts)


class SkillCatalog:
    """Holds the current registry; reloads swap it out wholesale."""

    def __init__(self, directory: Path, registry: SkillRegistry | None = None) -> None:
        self._directory = directory
        self._registry = registry or SkillRegistry()
        self._reload_lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def current(self) -> SkillRegistry:
        return self._registry

    def replace(self, registry: SkillRegistry) -> None:
        self._registry = registry

    async def reload(self) -> SkillRegistry:
        async with self._reload_lock:
            registry = await asyncio.to_thread(load_skills_from_dir, self._directory)
            self._registry = registry
        LOGGER.info("Skills reloaded: %d skill(s) active", len(registry))
        return registry


def load_skills_from_dir(directory: Path) -> SkillRegistry:
    registry = SkillRegistry()
    if not directory.exists():
        LOGGER.info("Skills directory not found: %s, skipping", directory)
        return registry

    for path in sorted(directory.iterdir()):
        if path.is_dir():
            skill_path = path / "SKILL.md"
            if not skill_path.exists():
                continue
        elif path.suffix == ".md":
            skill_path = path
        else:
            continue
        try:
            registry.register(parse_skill_file(skill_path))
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Failed to load skill from %s: %s", skill_path, exc)

    LOGGER.info("Loaded %d skills", len(registry))
    return registry


def parse_skill_file(path: Path) -> Skill:
    raw = path.read_text(encoding="utf-8")
    metadata, body = _split_frontmatter(raw)
    name = str(metadata.get("name") or _name_from_path(path))
    description = str(metadata.get("description") or _first_line_or_heading(body))
    tags = metadata.get("tags") or []
    if not isinstance(tags, list):
        tags = [tags]
    return Skill(name=name, description=description, content=body, tags=[str(t) for t in tags])


def _split_frontmatter(raw: str) -> tuple[dict[str, Any], str]:
    if raw.startswith("---"):
        parts = raw.split("---", 2)
        if len(parts) >= 3:
            try:
                metadata = yaml.safe_load(parts[1]) or {}
            except yaml.YAMLError as exc:
                LOGGER.warning("Ignoring malformed skill frontmatter: %s", exc)
            else:
                if isinstance(metadata, dict):
                    return metadata, parts[2].strip()
    return {}, raw.strip()


def _name_from_path(path: Path) -> str:
    if path.name == "SKILL.md":
        return path.parent.name
    return path.stem or "unnamed"


def _first_line_or_heading(content: str) -> str:
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        return line.lstrip("#").strip()
    return "No description"
