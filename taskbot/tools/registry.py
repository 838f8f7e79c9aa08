"""Registry for tool registration and failure-proof dispatch."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import ValidationError, create_model

from taskbot.models import ToolContext
from taskbot.tools.base import Tool, ToolCategory

LOGGER = logging.getLogger(__name__)


class ToolRegistry:
    """Flat catalog of tools, one lookup table per category.

    Lookups walk the categories in ``ToolCategory`` order and the first match
    wins, so scheduling tools shadow memory tools, which shadow externally
    hosted tools, which shadow local tools.
    """

    def __init__(self) -> None:
        self._tables: dict[ToolCategory, dict[str, Tool]] = {category: {} for category in ToolCategory}

    def register(self, tool: Tool) -> None:
        table = self._tables[tool.category]
        if tool.name in table:
            raise ValueError(f"Tool '{tool.name}' is already registered in {tool.category.value}")
        for category, other in self._tables.items():
            if category is not tool.category and tool.name in other:
                LOGGER.warning(
                    "Tool name '%s' exists in both %s and %s; %s wins",
                    tool.name,
                    category.value,
                    tool.category.value,
                    self._winner(tool.category, category).value,
                )
        table[tool.name] = tool

    def lookup(self, name: str) -> Tool | None:
        for category in ToolCategory:
            tool = self._tables[category].get(name)
            if tool is not None:
                return tool
        return None

    def tools(self) -> list[Tool]:
        seen: set[str] = set()
        ordered: list[Tool] = []
        for category in ToolCategory:
            for tool in self._tables[category].values():
                if tool.name not in seen:
                    seen.add(tool.name)
                    ordered.append(tool)
        return ordered

    def definitions(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                },
            }
            for tool in self.tools()
        ]

    async def execute(self, name: str, arguments_json: str, context: ToolContext) -> str:
        """Run a tool and return its result text. Never raises."""

        tool = self.lookup(name)
        if tool is None:
            return f"Unknown tool: {name}"

        try:
            arguments = _parse_arguments(arguments_json)
            validated = _validate_json_schema(tool.parameters_schema, arguments)
        except ValueError as exc:
            LOGGER.info("Rejected arguments for tool '%s': %s", name, exc)
            return f"Invalid arguments for {name}: {exc}"

        try:
            return await tool.run(context, **validated)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Tool '%s' failed", name)
            return f"Tool error: {exc}"

    @staticmethod
    def _winner(first: ToolCategory, second: ToolCategory) -> ToolCategory:
        order = list(ToolCategory)
        return first if order.index(first) < order.index(second) else second


def _parse_arguments(arguments_json: str) -> dict[str, Any]:
    if not arguments_json or not arguments_json.strip():
        return {}
    try:
        parsed = json.loads(arguments_json)
    except json.JSONDecodeError as exc:
        raise ValueError(f"arguments are not valid JSON ({exc.msg})") from exc
    if not isinstance(parsed, dict):
        raise ValueError("arguments must be a JSON object")
    return parsed


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    try:
        props = schema.get("properties") or {}
        required = set(schema.get("required") or [])
        fields: dict[str, tuple[Any, Any]] = {}
        for name, config in props.items():
            typ = _python_type(config.get("type", "string") if isinstance(config, dict) else None)
            if name in required:
                fields[name] = (typ, ...)
            else:
                fields[name] = (Optional[typ], None)

        model = create_model("ToolInputModel", **fields)
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(_summarize_validation_error(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        # Externally supplied schemas may name fields pydantic cannot model.
        raise ValueError(f"unsupported parameter schema ({exc})") from exc
    return value.model_dump(exclude_none=True)


def _summarize_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "arguments"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


def _python_type(schema_type: Any) -> Any:
    mapping: dict[str, Any] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    if not isinstance(schema_type, str):
        return Any
    return mapping.get(schema_type, Any)
