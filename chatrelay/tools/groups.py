"""Tool groups: indexed partitions of the tool registry used to keep prompts small."""

from __future__ import annotations

import logging
from typing import Any

from chatrelay.models import ToolGroup
from chatrelay.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)

_TASK_TYPE_GUIDE = """\
## Task types
- tool: look something up or perform an action (time, weather, members, sending messages...)
- draw: generate or draw an image
- image_understand: understand or describe an attached image
- search: search the web for recent information or news
- chat: small talk, greetings, writing and general questions
"""

_RETURN_FORMAT = """\
## Reply format (JSON only)
{
  "analysis": "short intent analysis",
  "tasks": [
    {"type": "tool", "priority": 1, "params": {"toolGroups": [0]}},
    {"type": "draw", "priority": 2, "params": {"drawPrompt": "english prompt"}, "dependsOn": 0}
  ],
  "executionMode": "sequential"
}

Rules:
1. Split complex requests into several tasks in execution order.
2. When a task needs the result of an earlier one, set dependsOn to that task's position (0-based).
3. Independent tasks may use "executionMode": "parallel".
4. Plain conversation is a single chat task.

Examples:
User: "hello"
{"analysis":"greeting","tasks":[{"type":"chat","priority":1,"params":{}}],"executionMode":"sequential"}
User: "draw a cat"
{"analysis":"drawing","tasks":[{"type":"draw","priority":1,"params":{"drawPrompt":"a cat"}}],"executionMode":"sequential"}

Return JSON only."""


class ToolGroupCatalog:
    """Fixed partition of available tools into indexed groups."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry
        self._groups: dict[int, ToolGroup] = {}

    def load(self) -> None:
        """Assign stable indexes to the registry's groups in registration order."""

        self._groups.clear()
        for index, (name, description, tool_names) in enumerate(self._registry.categories()):
            self._groups[index] = ToolGroup(
                index=index,
                name=name,
                description=description,
                tools=set(tool_names),
                display_name=name,
            )
        LOGGER.info("Loaded %d tool groups", len(self._groups))

    def set_enabled(self, index: int, enabled: bool) -> bool:
        group = self._groups.get(index)
        if group is None:
            return False
        group.enabled = enabled
        return True

    def get(self, index: int) -> ToolGroup | None:
        return self._groups.get(index)

    def has(self, index: int) -> bool:
        return index in self._groups

    def all_indexes(self) -> list[int]:
        return sorted(i for i, g in self._groups.items() if g.enabled)

    def summary(self, include_disabled: bool = False) -> list[dict[str, Any]]:
        return [
            {
                "index": g.index,
                "name": g.name,
                "display_name": g.display_name or g.name,
                "description": g.description,
                "tool_count": len(g.tools),
                "enabled": g.enabled,
            }
            for g in sorted(self._groups.values(), key=lambda g: g.index)
            if include_disabled or g.enabled
        ]

    def find_group_by_tool(self, tool_name: str) -> ToolGroup | None:
        for group in self._groups.values():
            if tool_name in group.tools:
                return group
        return None

    def indexes_matching(self, *fragments: str) -> list[int]:
        """Enabled group indexes whose name contains any of fragments."""

        return [
            g.index
            for g in sorted(self._groups.values(), key=lambda g: g.index)
            if g.enabled and any(f in g.name.lower() for f in fragments)
        ]

    def tools_by_group_indexes(self, indexes: list[int]) -> list[dict[str, Any]]:
        """OpenAI function specs for every tool in the enabled groups among indexes."""

        names: set[str] = set()
        for index in indexes:
            group = self._groups.get(index)
            if group is not None and group.enabled:
                names |= group.tools
        if not names:
            return []
        specs = self._registry.list_tool_specs(names)
        LOGGER.debug("Selected groups %s -> %d tools", indexes, len(specs))
        return specs

    def build_dispatch_prompt(self) -> str:
        prompt = (
            "You are a task dispatcher. Analyse the user's request and split it into one or more tasks.\n\n"
            + _TASK_TYPE_GUIDE
        )
        summary = self.summary()
        if summary:
            prompt += "\n## Tool groups\n"
            for group in summary:
                prompt += f"[{group['index']}] {group['display_name']}: {group['description']}\n"
        return prompt + "\n" + _RETURN_FORMAT
