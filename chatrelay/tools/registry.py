"""Registry for safe tool registration and execution."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError, create_model

from chatrelay.db import Database
from chatrelay.tools.base import Tool

DEFAULT_GROUP = "general"


class ToolRegistry:
    """Explicit registry of safe tools, each filed under one named group."""

    def __init__(self, db: Database | None = None) -> None:
        self._db = db
        self._tools: dict[str, Tool] = {}
        self._tool_groups: dict[str, str] = {}
        self._group_descriptions: dict[str, str] = {}

    def register(self, tool: Tool, group: str = DEFAULT_GROUP, group_description: str | None = None) -> None:
        self._tools[tool.name] = tool
        self._tool_groups[tool.name] = group
        if group_description is not None or group not in self._group_descriptions:
            self._group_descriptions[group] = group_description or ""

    def categories(self) -> list[tuple[str, str, list[str]]]:
        """(group, description, tool names) in first-registration order."""

        grouped: dict[str, list[str]] = {}
        for tool_name, group in self._tool_groups.items():
            grouped.setdefault(group, []).append(tool_name)
        return [(group, self._group_descriptions.get(group, ""), names) for group, names in grouped.items()]

    def list_tool_specs(self, names: set[str] | None = None) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                },
            }
            for tool in self._tools.values()
            if names is None or tool.name in names
        ]

    async def execute(self, conversation_id: str, tool_name: str, arguments: dict[str, Any]) -> Any:
        tool = self._tools.get(tool_name)
        if tool is None:
            raise KeyError(f"Unknown tool: {tool_name}")

        validated = _validate_json_schema(tool.parameters_schema, arguments)
        try:
            result = await tool.run(**validated)
            if self._db is not None:
                self._db.log_tool_execution(conversation_id, tool_name, validated, result, succeeded=True)
            return result
        except Exception as exc:  # noqa: BLE001
            if self._db is not None:
                self._db.log_tool_execution(conversation_id, tool_name, validated, {"error": str(exc)}, succeeded=False)
            raise


def _validate_json_schema(schema: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[type[Any], Any]] = {}
    for name, config in props.items():
        typ = _python_type(config.get("type", "string"))
        if name in required:
            fields[name] = (typ, ...)
        else:
            fields[name] = (typ | None, None)

    model = create_model("ToolInputModel", **fields)
    try:
        value = model(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid input for tool: {exc}") from exc
    return value.model_dump(exclude_none=True)


def _python_type(schema_type: str) -> type[Any]:
    mapping: dict[str, type[Any]] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
        "array": list,
    }
    return mapping.get(schema_type, str)
