"""Execution of multi-task dispatch plans."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from chatrelay.models import (
    AggregateResult,
    ExecutionMode,
    FallbackTrace,
    Message,
    RequestOptions,
    Scenario,
    ScopeSettings,
    Task,
    TaskResult,
    TaskType,
    ToolCallLog,
    merge_usage,
)
from chatrelay.resilience import ResilienceExecutor
from chatrelay.routing import ScenarioRouter
from chatrelay.tools.groups import ToolGroupCatalog

LOGGER = logging.getLogger(__name__)

_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\((\S+?)\)")
_BARE_IMAGE = re.compile(
    r"(https?://\S+?\.(?:png|jpe?g|gif|webp)(?:\?[^\s)]*)?|data:image/[\w.+-]+;base64,[A-Za-z0-9+/=]+)",
    re.IGNORECASE,
)


@dataclass(slots=True)
class OrchestrationContext:
    """Request state shared by every task of a plan."""

    user_id: str
    message: Message
    options: RequestOptions
    group_id: str | None = None
    conversation_id: str | None = None
    scope: ScopeSettings = field(default_factory=ScopeSettings)
    history: list[Message] = field(default_factory=list)
    system_prompt: str | None = None
    event: Any = None
    traces: list[FallbackTrace] = field(default_factory=list)
    tool_call_logs: list[ToolCallLog] = field(default_factory=list)
    # Unlabeled text of the request; message may carry a sender label in shared groups.
    request_text: str = ""


def normalize_image_contents(contents: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Turn image_url parts, markdown images and bare image URLs into `{"type": "image", "url"}` parts."""

    normalized: list[dict[str, Any]] = []
    seen: set[str] = set()

    def add_image(url: str) -> None:
        if url and url not in seen:
            seen.add(url)
            normalized.append({"type": "image", "url": url})

    for part in contents:
        kind = part.get("type")
        if kind == "image":
            add_image(part.get("url", ""))
        elif kind == "image_url":
            add_image((part.get("image_url") or {}).get("url", ""))
        elif kind == "text":
            text = part.get("text", "")
            urls = _MARKDOWN_IMAGE.findall(text)
            remaining = _MARKDOWN_IMAGE.sub("", text)
            urls += _BARE_IMAGE.findall(remaining)
            remaining = _BARE_IMAGE.sub("", remaining).strip()
            if remaining:
                normalized.append({"type": "text", "text": remaining})
            for url in urls:
                add_image(url)
        else:
            normalized.append(part)
    return normalized


class MultiTaskOrchestrator:
    """Runs each task of a plan against its own scenario model.

    A failing task becomes a failed TaskResult; it never cancels or aborts
    its siblings.
    """

    def __init__(
        self,
        executor: ResilienceExecutor,
        router: ScenarioRouter,
        catalog: ToolGroupCatalog,
        fallback_models: list[str] | None = None,
    ) -> None:
        self._executor = executor
        self._router = router
        self._catalog = catalog
        self._fallback_models = list(fallback_models or [])
        self._handlers: dict[TaskType, Callable[..., Awaitable[TaskResult]]] = {
            TaskType.CHAT: self._run_chat,
            TaskType.TOOL: self._run_tool,
            TaskType.DRAW: self._run_draw,
            TaskType.SEARCH: self._run_search,
            TaskType.IMAGE_UNDERSTAND: self._run_image_understand,
        }

    async def execute(
        self,
        tasks: list[Task],
        mode: ExecutionMode,
        context: OrchestrationContext,
    ) -> AggregateResult:
        ordered = sorted(tasks, key=lambda task: task.priority)
        results: list[TaskResult | None] = [None] * len(ordered)

        if mode is ExecutionMode.PARALLEL:
            independent = [i for i, task in enumerate(ordered) if task.depends_on is None]
            outcomes = await asyncio.gather(
                *(self._run_task(ordered[i], context, None) for i in independent),
                return_exceptions=True,
            )
            for index, outcome in zip(independent, outcomes):
                results[index] = (
                    outcome if isinstance(outcome, TaskResult) else _failed(ordered[index].type, outcome, 0.0)
                )
            for index, task in enumerate(ordered):
                if task.depends_on is None:
                    continue
                previous = _dependency_result(results, task.depends_on, index)
                results[index] = await self._run_task(task, context, previous)
        else:
            previous = None
            for index, task in enumerate(ordered):
                results[index] = await self._run_task(task, context, previous)
                previous = results[index]

        return _aggregate([r for r in results if r is not None])

    async def _run_task(self, task: Task, context: OrchestrationContext, previous: TaskResult | None) -> TaskResult:
        started = time.monotonic()
        handler = self._handlers.get(task.type, self._run_chat)
        try:
            result = await handler(task, context, previous)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Task %s failed: %s", task.type.value, exc)
            return _failed(task.type, exc, time.monotonic() - started)
        result.duration = time.monotonic() - started
        return result

    async def _call(
        self,
        task_type: TaskType,
        model: str,
        message: Message,
        context: OrchestrationContext,
        *,
        tools: list[dict[str, Any]] | None = None,
        history: list[Message] | None = None,
        system_prompt: str | None = None,
    ) -> TaskResult:
        trace = FallbackTrace()
        context.traces.append(trace)
        outcome = await self._executor.execute(
            [model, *self._fallback_models],
            message,
            context.options,
            history=history,
            system_prompt=system_prompt,
            tools=tools,
            trace=trace,
            event=context.event,
        )
        context.tool_call_logs.extend(outcome.response.tool_call_logs)
        contents = [c for c in outcome.response.contents if c.get("type") != "reasoning"]
        return TaskResult(
            success=True,
            task_type=task_type,
            contents=contents,
            usage=dict(outcome.response.usage),
            model=outcome.model,
        )

    async def _run_chat(self, task: Task, context: OrchestrationContext, previous: TaskResult | None) -> TaskResult:
        model = self._router.slot_model(Scenario.CHAT, context.scope)
        message = _text_message(_task_prompt(task, context), previous)
        return await self._call(
            TaskType.CHAT, model, message, context, history=context.history, system_prompt=context.system_prompt
        )

    async def _run_tool(self, task: Task, context: OrchestrationContext, previous: TaskResult | None) -> TaskResult:
        model = self._router.slot_model(Scenario.TOOL, context.scope)
        indexes = task.params.get("toolGroups") or self._catalog.all_indexes()
        tools = self._catalog.tools_by_group_indexes(list(indexes))
        message = _text_message(_task_prompt(task, context), previous)
        return await self._call(
            TaskType.TOOL,
            model,
            message,
            context,
            tools=tools,
            history=context.history,
            system_prompt=context.system_prompt,
        )

    async def _run_draw(self, task: Task, context: OrchestrationContext, previous: TaskResult | None) -> TaskResult:
        model = self._router.slot_model(Scenario.DRAW, context.scope)
        prompt = task.params.get("drawPrompt") or _task_prompt(task, context)
        result = await self._call(TaskType.DRAW, model, _text_message(prompt, previous), context)
        result.contents = normalize_image_contents(result.contents)
        if not any(part.get("type") == "image" for part in result.contents):
            LOGGER.warning("Draw model %s returned no image", result.model)
        return result

    async def _run_search(self, task: Task, context: OrchestrationContext, previous: TaskResult | None) -> TaskResult:
        model = self._router.slot_model(Scenario.SEARCH, context.scope)
        tools = self._catalog.tools_by_group_indexes(self._catalog.indexes_matching("search", "web"))
        query = task.params.get("query") or _task_prompt(task, context)
        return await self._call(
            TaskType.SEARCH,
            model,
            _text_message(query, previous),
            context,
            tools=tools,
            system_prompt=context.system_prompt,
        )

    async def _run_image_understand(
        self, task: Task, context: OrchestrationContext, previous: TaskResult | None
    ) -> TaskResult:
        model = self._router.slot_model(Scenario.IMAGE, context.scope)
        message = _text_message(_task_prompt(task, context), previous)
        message.content.extend(context.message.images())
        return await self._call(
            TaskType.IMAGE_UNDERSTAND, model, message, context, system_prompt=context.system_prompt
        )


def _task_prompt(task: Task, context: OrchestrationContext) -> str:
    return str(task.params.get("prompt") or context.request_text or context.message.text("\n"))


def _text_message(text: str, previous: TaskResult | None) -> Message:
    if previous is not None and previous.success and previous.text().strip():
        text = f"{text}\n\n[Result of the previous step]\n{previous.text().strip()}"
    return Message(role="user", content=[{"type": "text", "text": text}])


def _dependency_result(results: list[TaskResult | None], depends_on: int, position: int) -> TaskResult | None:
    if 0 <= depends_on < len(results) and results[depends_on] is not None:
        return results[depends_on]
    for earlier in reversed(results[:position]):
        if earlier is not None:
            return earlier
    return None


def _failed(task_type: TaskType, error: BaseException, duration: float) -> TaskResult:
    return TaskResult(success=False, task_type=task_type, error=str(error) or type(error).__name__, duration=duration)


def _aggregate(results: list[TaskResult]) -> AggregateResult:
    contents: list[dict[str, Any]] = []
    usage: dict[str, Any] = {}
    texts: list[str] = []
    for result in results:
        if not result.success:
            continue
        contents.extend(result.contents)
        merge_usage(usage, result.usage)
        if result.text().strip():
            texts.append(result.text().strip())
    return AggregateResult(
        success=any(r.success for r in results),
        results=results,
        contents=contents,
        usage=usage,
        text="\n\n".join(texts),
    )
