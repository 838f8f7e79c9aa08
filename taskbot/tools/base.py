"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from taskbot.models import ToolContext


class ToolCategory(Enum):
    """Tool families, listed in dispatch precedence order."""

    SCHEDULING = "scheduling"
    MEMORY = "memory"
    EXTERNAL = "external"
    LOCAL = "local"


class Tool(ABC):
    """Base class for all assistant tools."""

    name: str
    description: str
    parameters_schema: dict[str, Any]
    category: ToolCategory = ToolCategory.LOCAL

    @abstractmethod
    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        """Execute tool with validated arguments and return the result text."""
