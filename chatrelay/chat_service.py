"""Entry point turning one inbound chat message into a model-backed reply."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any

from chatrelay.conversation import ConversationResolver, RequestTracker, add_user_label, clean_user_id
from chatrelay.dispatch import summarize_history
from chatrelay.errors import ChatRelayError, ModelNotConfiguredError
from chatrelay.interfaces import HistoryStore, PresetStore, ScopeResolver, StatsSink
from chatrelay.models import (
    ApiCallRecord,
    ChatRequest,
    ChatResult,
    FallbackTrace,
    Message,
    Preset,
    RequestOptions,
    Scenario,
    ScopeSettings,
    Sender,
    TaskResult,
    ToolCallLog,
)
from chatrelay.orchestrator import MultiTaskOrchestrator, OrchestrationContext
from chatrelay.prompt import PromptInputs, SystemPromptBuilder
from chatrelay.resilience import ResilienceExecutor
from chatrelay.routing import ScenarioInput, ScenarioRouter

LOGGER = logging.getLogger(__name__)


def build_user_content(text: str | None, images: list[Any]) -> list[dict[str, Any]]:
    """Text first, then every image reference that can be sent as an image_url part."""

    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    for image in images or []:
        url = None
        if isinstance(image, str) and image.startswith(("http://", "https://", "data:")):
            url = image
        elif isinstance(image, dict):
            if image.get("type") == "image_url":
                url = (image.get("image_url") or {}).get("url")
            elif image.get("type") in ("url", "image"):
                url = image.get("url")
        if url:
            content.append({"type": "image_url", "image_url": {"url": url}})
        else:
            LOGGER.warning("Unsupported image reference skipped: %r", image)
    return content


@dataclass(slots=True)
class _Outcome:
    """What the stats row for a request needs, filled in as the request proceeds."""

    model: str = ""
    traces: list[FallbackTrace] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    tool_call_logs: list[ToolCallLog] = field(default_factory=list)
    response_text: str = ""
    error: BaseException | None = None


class ChatService:
    """Resolve the conversation, route, prompt, call and persist one request."""

    def __init__(
        self,
        *,
        resolver: ConversationResolver,
        history: HistoryStore,
        router: ScenarioRouter,
        prompt_builder: SystemPromptBuilder,
        executor: ResilienceExecutor,
        orchestrator: MultiTaskOrchestrator,
        scopes: ScopeResolver | None = None,
        presets: PresetStore | None = None,
        stats: StatsSink | None = None,
        tracker: RequestTracker | None = None,
        fallback_models: list[str] | None = None,
        default_preset_id: str | None = None,
        max_history_messages: int = 30,
        dispatch_history_turns: int = 5,
        auto_clean_on_error: bool = False,
        auto_clean_notify_user: bool = True,
    ) -> None:
        self._resolver = resolver
        self._history = history
        self._router = router
        self._prompt_builder = prompt_builder
        self._executor = executor
        self._orchestrator = orchestrator
        self._scopes = scopes
        self._presets = presets
        self._stats = stats
        self._tracker = tracker or RequestTracker()
        self._fallback_models = list(fallback_models or [])
        self._default_preset_id = default_preset_id
        self._max_history_messages = max_history_messages
        self._dispatch_history_turns = dispatch_history_turns
        self._auto_clean_on_error = auto_clean_on_error
        self._auto_clean_notify_user = auto_clean_notify_user

    async def send_message(self, request: ChatRequest) -> ChatResult:
        if not request.user_id:
            raise ValueError("user_id is required")

        started = time.monotonic()
        user_id = clean_user_id(request.user_id)
        group_id = str(request.group_id) if request.group_id else None
        conversation_id = self._resolver.resolve(user_id, group_id)
        outcome = _Outcome(model=request.model or "")
        try:
            async with self._tracker.track(conversation_id):
                return await self._handle(request, user_id, group_id, conversation_id, outcome, started)
        except Exception as exc:
            outcome.error = exc
            LOGGER.error("Request for %s failed: %s", conversation_id, exc)
            if self._auto_clean_on_error and _is_upstream_failure(exc, outcome):
                await self._auto_clean(request, user_id, group_id, exc)
            raise
        finally:
            self._record_stats(request, user_id, group_id, outcome, time.monotonic() - started)

    def clear_history(self, user_id: str, group_id: str | None = None) -> list[str]:
        return self._resolver.reset(user_id, str(group_id) if group_id else None)

    def get_history(self, user_id: str, group_id: str | None = None, limit: int = 20) -> list[Message]:
        conversation_id = self._resolver.resolve(user_id, str(group_id) if group_id else None)
        return self._history.get_context_history(conversation_id, limit)

    async def _handle(
        self,
        request: ChatRequest,
        user_id: str,
        group_id: str | None,
        conversation_id: str,
        outcome: _Outcome,
        started: float,
    ) -> ChatResult:
        scope = self._load_scope(group_id, user_id)
        preset_id = request.preset_id or scope.preset_id or self._default_preset_id
        preset = self._load_preset(preset_id)

        sender = request.sender or Sender(user_id=user_id)
        content = build_user_content(request.message, request.images)
        if not content:
            raise ValueError("message or images are required")
        stored_message = Message(
            role="user",
            content=content,
            sender=sender,
            source_type="group" if group_id else "private",
            group_id=group_id,
        )

        shared = self._resolver.is_shared_group(group_id)
        skip_history = request.skip_history or not self._resolver.sends_group_history(group_id)
        history = self._load_history(conversation_id, skip_history)
        outgoing = stored_message
        if shared:
            history = self._resolver.build_labeled_context(history)
            outgoing = replace(stored_message, content=add_user_label(content, sender.label, sender.user_id))

        selection = await self._router.select_scenario(
            ScenarioInput(
                message_text=request.message or "",
                has_images=bool(stored_message.images()),
                explicit_model=request.model,
                preset=preset,
                scope=scope,
                mode=request.mode,
                disable_tools=request.disable_tools,
                context_summary=summarize_history(history, self._dispatch_history_turns),
            )
        )
        if not selection.model:
            raise ModelNotConfiguredError("No model configured; set DEFAULT_MODEL or CHAT_MODEL")
        outcome.model = selection.model

        prompt = await self._prompt_builder.build_with_source(
            PromptInputs(
                user_id=user_id,
                group_id=group_id,
                message_text=request.message or "",
                preset=preset,
                preset_id=preset_id,
                prefix_persona=request.prefix_persona,
                skip_persona=request.skip_persona,
                user_name=sender.label,
                shared_group=shared,
            )
        )
        options = RequestOptions(
            model=selection.model,
            temperature=_first_set(request.temperature, preset.temperature if preset else None),
            max_tokens=_first_set(request.max_tokens, preset.max_tokens if preset else None),
            stream=request.stream,
            conversation_id=conversation_id,
        )

        task_results: list[TaskResult] = []
        if selection.scenario is Scenario.DISPATCH and selection.dispatch is not None:
            context = OrchestrationContext(
                user_id=user_id,
                message=outgoing,
                options=options,
                group_id=group_id,
                conversation_id=conversation_id,
                scope=scope,
                history=history,
                system_prompt=prompt.text,
                event=request.event,
                traces=outcome.traces,
                tool_call_logs=outcome.tool_call_logs,
                request_text=stored_message.text("\n"),
            )
            aggregate = await self._orchestrator.execute(
                selection.dispatch.tasks, selection.dispatch.execution_mode, context
            )
            task_results = aggregate.results
            if not aggregate.success:
                errors = "; ".join(r.error or "unknown error" for r in aggregate.results)
                raise ChatRelayError(f"Every task failed: {errors}")
            response = aggregate.contents
            outcome.usage = aggregate.usage
            outcome.model = next((r.model for r in aggregate.results if r.success and r.model), selection.model)
        else:
            trace = FallbackTrace()
            outcome.traces.append(trace)
            result = await self._executor.execute(
                [selection.model, *self._fallback_models],
                outgoing,
                options,
                history=history,
                system_prompt=prompt.text,
                tools=selection.tools if selection.enable_tools else None,
                trace=trace,
                event=request.event,
            )
            response = result.response.contents
            outcome.usage = dict(result.response.usage)
            outcome.tool_call_logs.extend(result.response.tool_call_logs)
            outcome.model = result.model

        outcome.response_text = "".join(c.get("text", "") for c in response if c.get("type") == "text")
        self._persist(conversation_id, stored_message, outcome.response_text)

        debug_info = None
        if request.debug_mode:
            debug_info = self._debug_info(
                conversation_id,
                outcome,
                selection.scenario,
                selection.tools,
                len(history),
                scope,
                prompt.persona_source,
                started,
                independent_persona=self._resolver.has_independent_persona(group_id, user_id),
            )
        return ChatResult(
            conversation_id=conversation_id,
            response=response,
            usage=outcome.usage,
            model=outcome.model,
            tool_call_logs=list(outcome.tool_call_logs),
            task_results=task_results,
            debug_info=debug_info,
        )

    def _load_scope(self, group_id: str | None, user_id: str) -> ScopeSettings:
        if self._scopes is None:
            return ScopeSettings()
        try:
            return self._scopes.get_effective_settings(group_id, user_id, is_private=group_id is None)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Scope settings unavailable for %s/%s: %s", group_id, user_id, exc)
            return ScopeSettings()

    def _load_preset(self, preset_id: str | None) -> Preset | None:
        if self._presets is None or not preset_id:
            return None
        try:
            return self._presets.get_preset(preset_id)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Preset %s unavailable: %s", preset_id, exc)
            return None

    def _load_history(self, conversation_id: str, skip: bool) -> list[Message]:
        if skip:
            return []
        history = self._history.get_context_history(conversation_id, self._max_history_messages)
        return [m for m in history if m.role != "assistant" or m.has_text()]

    def _persist(self, conversation_id: str, user_message: Message, reply_text: str) -> None:
        self._history.append_message(conversation_id, user_message)
        if reply_text.strip():
            self._history.append_message(
                conversation_id,
                Message(
                    role="assistant",
                    content=[{"type": "text", "text": reply_text}],
                    source_type=user_message.source_type,
                    group_id=user_message.group_id,
                ),
            )

    async def _auto_clean(self, request: ChatRequest, user_id: str, group_id: str | None, exc: BaseException) -> None:
        try:
            self._resolver.reset(user_id, group_id)
        except Exception as clean_exc:  # noqa: BLE001
            LOGGER.warning("Auto-clean failed: %s", clean_exc)
            return
        LOGGER.info("Auto-cleaned context for %s after error", user_id)
        reply = getattr(request.event, "reply", None)
        if self._auto_clean_notify_user and reply is not None:
            try:
                await reply(f"Something went wrong ({exc}). The conversation context has been reset, please try again.")
            except Exception as notify_exc:  # noqa: BLE001
                LOGGER.warning("Could not notify user about auto-clean: %s", notify_exc)

    def _record_stats(
        self, request: ChatRequest, user_id: str, group_id: str | None, outcome: _Outcome, duration: float
    ) -> None:
        if self._stats is None:
            return
        trace = _primary_trace(outcome.traces)
        try:
            self._stats.record_api_call(
                ApiCallRecord(
                    channel_id=trace.used_channel_id or "",
                    channel_name=trace.used_channel_name or "",
                    model=trace.used_model or outcome.model,
                    key_index=trace.used_key_index,
                    duration=duration,
                    success=outcome.error is None,
                    source=request.source,
                    user_id=user_id,
                    group_id=group_id,
                    error=str(outcome.error) if outcome.error is not None else None,
                    stream=request.stream,
                    retry_count=sum(t.total_retry_count for t in outcome.traces),
                    channel_switched=any(t.channel_switched for t in outcome.traces),
                    fallback_used=any(t.fallback_used for t in outcome.traces),
                    previous_channel_id=trace.initial_channel_id if trace.channel_switched else None,
                    switch_chain=trace.formatted_chain(),
                    usage=outcome.usage,
                    response_text=outcome.response_text[:500],
                )
            )
            for log in outcome.tool_call_logs:
                self._stats.record_tool_call(log.name, not log.is_error)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Could not record stats: %s", exc)

    def _debug_info(
        self,
        conversation_id: str,
        outcome: _Outcome,
        scenario: Scenario,
        tools: list[dict[str, Any]],
        history_count: int,
        scope: ScopeSettings,
        persona_source: str,
        started: float,
        *,
        independent_persona: bool = False,
    ) -> dict[str, Any]:
        trace = _primary_trace(outcome.traces)
        return {
            "conversation_id": conversation_id,
            "scenario": scenario.value,
            "used_model": trace.used_model or outcome.model,
            "channel": trace.used_channel_name,
            "channel_id": trace.used_channel_id,
            "fallback_used": any(t.fallback_used for t in outcome.traces),
            "channel_switched": any(t.channel_switched for t in outcome.traces),
            "switch_chain": trace.formatted_chain(),
            "total_retry_count": sum(t.total_retry_count for t in outcome.traces),
            "duration_ms": int((time.monotonic() - started) * 1000),
            "history_count": history_count,
            "tools": [t.get("function", {}).get("name") for t in tools],
            "tool_calls": [log.name for log in outcome.tool_call_logs],
            "scope": {
                "preset_id": scope.preset_id,
                "preset_source": scope.preset_source,
                "model_source": scope.model_source,
                "persona_source": persona_source,
                "has_independent_persona": independent_persona,
            },
        }


def _is_upstream_failure(exc: BaseException, outcome: _Outcome) -> bool:
    """Relay errors and anything raised once a model call was attempted; request validation is neither."""

    return isinstance(exc, ChatRelayError) or any(trace.attempts for trace in outcome.traces)


def _primary_trace(traces: list[FallbackTrace]) -> FallbackTrace:
    """The trace describing the answer: the first one that reached a channel."""

    for trace in traces:
        if trace.used_channel_id:
            return trace
    return traces[0] if traces else FallbackTrace()


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None
