"""Tool-group and task-plan dispatch."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from chatrelay.errors import EmptyResponseError
from chatrelay.models import DispatchResult, ExecutionMode, Message, RequestOptions, Task, TaskType
from chatrelay.resilience import ResilienceExecutor
from chatrelay.tools.groups import ToolGroupCatalog

LOGGER = logging.getLogger(__name__)

DISPATCH_TEMPERATURES = (0.3, 0.5, 0.7)

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_TRAILING_COMMA = re.compile(r",\s*([\]}])")
_INT_LIST = re.compile(r"\[[\d,\s]*\]")
_INTEGER = re.compile(r"\d+")


def parse_dispatch_response(text: str, catalog: ToolGroupCatalog) -> DispatchResult | None:
    """Parse a dispatch model answer; None when nothing usable was found.

    Tries a JSON object first, then a bracketed integer list, then any bare
    integers. Group indexes are always filtered to the catalog.
    """

    if not text or not isinstance(text, str):
        return None
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", text.strip()))

    match = _JSON_OBJECT.search(cleaned)
    if match:
        try:
            parsed = json.loads(_TRAILING_COMMA.sub(r"\1", match.group(0)))
        except json.JSONDecodeError as exc:
            LOGGER.debug("Dispatch JSON unparseable (%s): %r", exc, cleaned[:200])
        else:
            if isinstance(parsed, dict):
                return _from_json(parsed, catalog)

    indexes = _bracketed_indexes(cleaned, catalog)
    if indexes is None:
        indexes = _valid_indexes((int(n) for n in _INTEGER.findall(cleaned)), catalog)
    if not indexes:
        return None
    return DispatchResult(
        tool_group_indexes=indexes,
        tasks=[Task(type=TaskType.TOOL, priority=1, params={"toolGroups": indexes})],
    )


def _bracketed_indexes(text: str, catalog: ToolGroupCatalog) -> list[int] | None:
    match = _INT_LIST.search(text)
    if not match:
        return None
    try:
        values = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return _valid_indexes(values, catalog)


def _valid_indexes(values: Any, catalog: ToolGroupCatalog) -> list[int]:
    indexes: list[int] = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int):
            continue
        if catalog.has(value) and value not in indexes:
            indexes.append(value)
    return indexes


def _from_json(parsed: dict[str, Any], catalog: ToolGroupCatalog) -> DispatchResult:
    raw_tasks = parsed.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        top_level = parsed.get("toolGroups", parsed.get("tool_groups"))
        raw_tasks = [{"type": "tool", "params": {"toolGroups": top_level}}] if isinstance(top_level, list) else []

    tasks: list[Task] = []
    for position, raw in enumerate(raw_tasks):
        if not isinstance(raw, dict):
            continue
        task_type = TaskType.parse(raw.get("type"))
        params = raw.get("params") if isinstance(raw.get("params"), dict) else {}
        priority = raw.get("priority") if isinstance(raw.get("priority"), int) else position + 1
        depends_on = raw.get("dependsOn", raw.get("depends_on"))
        if isinstance(depends_on, bool) or not isinstance(depends_on, int):
            depends_on = None

        if task_type is TaskType.TOOL:
            raw_groups = params.get("toolGroups")
            groups = _valid_indexes(raw_groups if isinstance(raw_groups, list) else [], catalog)
            if not groups:
                task_type, params = TaskType.CHAT, {}
            else:
                params = {**params, "toolGroups": groups}
        tasks.append(Task(type=task_type, priority=priority, params=params, depends_on=depends_on))

    if not tasks:
        tasks = [Task(type=TaskType.CHAT, priority=1)]

    tool_groups: list[int] = []
    for task in tasks:
        if task.type is TaskType.TOOL:
            tool_groups.extend(i for i in task.params["toolGroups"] if i not in tool_groups)

    result = DispatchResult(
        tool_group_indexes=tool_groups,
        tasks=tasks,
        execution_mode=ExecutionMode.parse(parsed.get("executionMode", parsed.get("execution_mode"))),
        analysis=str(parsed.get("analysis") or ""),
    )
    LOGGER.debug(
        "Dispatch plan: analysis=%r tasks=%d groups=%s", result.analysis, len(result.tasks), result.tool_group_indexes
    )
    return result


def summarize_history(history: list[Message], turns: int = 5, max_chars: int = 200) -> str:
    """Compact text of the last turns (user plus assistant) for intent disambiguation."""

    recent = history[-turns * 2:] if turns > 0 else []
    lines = []
    for message in recent:
        text = message.text(" ").strip()
        if not text:
            continue
        if len(text) > max_chars:
            text = text[:max_chars] + "..."
        lines.append(f"{message.role}: {text}")
    return "\n".join(lines)


class ToolDispatcher:
    """Cheap tool-free call deciding tool groups and sub-tasks for a request.

    Never raises: every failure degrades to a single chat task.
    """

    def __init__(
        self,
        executor: ResilienceExecutor,
        catalog: ToolGroupCatalog,
        model: str,
        max_tokens: int = 512,
    ) -> None:
        self._executor = executor
        self._catalog = catalog
        self._model = model
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        return self._model

    async def dispatch(self, message: str, context_summary: str = "", model: str | None = None) -> DispatchResult:
        model = model or self._model
        if not model:
            return DispatchResult.default()

        prompt = self._catalog.build_dispatch_prompt()
        user_text = f"Recent conversation:\n{context_summary}\n\n" if context_summary else ""
        user_text += f"User request: {message}"
        request = Message(role="user", content=[{"type": "text", "text": user_text}])

        for attempt, temperature in enumerate(DISPATCH_TEMPERATURES):
            try:
                result = await self._executor.execute(
                    [model],
                    request,
                    RequestOptions(model=model, temperature=temperature, max_tokens=self._max_tokens),
                    system_prompt=prompt,
                )
            except EmptyResponseError:
                LOGGER.info("Dispatch reply empty at temperature %.1f (attempt %d)", temperature, attempt + 1)
                continue
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("dispatch-failure: %s", exc)
                return DispatchResult.default()

            text = result.response.text().strip()
            if not text:
                LOGGER.info("Dispatch reply empty at temperature %.1f (attempt %d)", temperature, attempt + 1)
                continue
            parsed = parse_dispatch_response(text, self._catalog)
            if parsed is None:
                LOGGER.info("Dispatch reply had no plan, using chat: %r", text[:200])
                return DispatchResult.default()
            return parsed

        LOGGER.warning("dispatch-failure: empty reply after %d attempts", len(DISPATCH_TEMPERATURES))
        return DispatchResult.default()
