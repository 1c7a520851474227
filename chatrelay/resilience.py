"""Model/channel/key fallback state machine around single LLM calls."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable

from chatrelay.channels import ChannelRegistry
from chatrelay.errors import EmptyResponseError, ModelNotConfiguredError, NoChannelError
from chatrelay.llm.base import LLMClientFactory
from chatrelay.models import (
    Channel,
    ClientOptions,
    ErrorType,
    FallbackAttempt,
    FallbackTrace,
    KeyInfo,
    LLMResponse,
    Message,
    RequestOptions,
)

LOGGER = logging.getLogger(__name__)

_AUTH_MARKERS = ("401", "403", "unauthorized", "invalid api key", "invalid_api_key")
_QUOTA_MARKERS = ("429", "rate limit", "rate_limit", "quota", "exceeded")
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
_NETWORK_MARKERS = ("econnrefused", "enotfound", "network", "connection")


@dataclass(slots=True)
class ExecutorPolicy:
    """Retry and fallback knobs."""

    max_retries: int = 3
    empty_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 10.0
    enable_key_rotation: bool = True
    enable_channel_switch: bool = True
    fallback_enabled: bool = True
    notify_on_fallback: bool = False
    default_temperature: float = 0.7
    default_max_tokens: int = 4000
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class ExecutionResult:
    response: LLMResponse
    model: str
    channel: Channel
    key_index: int
    trace: FallbackTrace = field(default_factory=FallbackTrace)


def classify_error(exc: BaseException) -> ErrorType:
    """Map a failed call to an error type by status code, then message text."""

    status = getattr(exc, "status_code", None)
    if status in (401, 403):
        return ErrorType.AUTH
    if status == 429:
        return ErrorType.QUOTA
    if status in (408, 504):
        return ErrorType.TIMEOUT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(exc, EmptyResponseError):
        return ErrorType.EMPTY

    text = str(exc).lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return ErrorType.AUTH
    if any(marker in text for marker in _QUOTA_MARKERS):
        return ErrorType.QUOTA
    if any(marker in text for marker in _TIMEOUT_MARKERS):
        return ErrorType.TIMEOUT
    if isinstance(exc, (ConnectionError, OSError)) or any(marker in text for marker in _NETWORK_MARKERS):
        return ErrorType.NETWORK
    return ErrorType.UNKNOWN


def backoff_delay(retry_count: int, base: float = 0.5, maximum: float = 10.0) -> float:
    if retry_count <= 0:
        return 0.0
    return min(base * 2 ** (retry_count - 1), maximum)


_TOOL_CALLS_PREFIX = re.compile(r'^\{\s*"tool_calls"\s*:\s*\[')
_FENCED = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.IGNORECASE | re.DOTALL)


def is_pure_tool_call_json(text: str) -> bool:
    """True when text is nothing but a leaked tool-call JSON payload."""

    if not text or not isinstance(text, str):
        return False
    trimmed = text.strip()
    fenced = _FENCED.match(trimmed)
    if fenced:
        trimmed = fenced.group(1).strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        return False
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        # Truncated payloads still count when they open with a tool_calls array.
        return bool(_TOOL_CALLS_PREFIX.match(trimmed))
    if not isinstance(parsed, dict):
        return False
    if set(parsed) == {"tool_calls"} and isinstance(parsed["tool_calls"], list):
        return all(
            isinstance(tc, dict) and ((tc.get("function") or {}).get("name") or tc.get("name"))
            for tc in parsed["tool_calls"]
        )
    if {"name", "arguments"} <= set(parsed) and len(parsed) <= 3:
        return True
    return "function" in parsed and isinstance(parsed["function"], dict) and "arguments" in parsed["function"]


def filter_tool_call_text(contents: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [c for c in contents if not (c.get("type") == "text" and is_pure_tool_call_json(c.get("text", "")))]


@dataclass(slots=True)
class _Cursor:
    """Where the state machine currently points; copied into the trace on exit."""

    model: str | None = None
    channel: Channel | None = None
    key_index: int = -1


class ResilienceExecutor:
    """Runs one logical request across candidate models, channels and keys.

    Per model the machine works like this:

    - success: a usable response (text, non-text part or tool call) ends the request.
    - empty: retried up to `empty_retries` times on the same key, then the next
      key of the channel, then (primary model only) an alternate channel, then
      the next model.
    - auth error: next key without counting a retry; with no key left it
      behaves like quota.
    - quota error: alternate channel (primary model only), else the next model.
    - any other error: counted retry with exponential backoff, up to
      `max_retries` for the primary model and once for fallback models.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        client_factory: LLMClientFactory,
        policy: ExecutorPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._client_factory = client_factory
        self.policy = policy or ExecutorPolicy()
        self._sleep = sleep

    async def execute(
        self,
        models: list[str],
        message: Message,
        options: RequestOptions,
        *,
        history: list[Message] | None = None,
        system_prompt: str | None = None,
        tools: list[dict[str, Any]] | None = None,
        trace: FallbackTrace | None = None,
        event: Any = None,
    ) -> ExecutionResult:
        trace = trace if trace is not None else FallbackTrace()
        candidates = list(dict.fromkeys(m for m in models if m))
        if not candidates:
            raise ModelNotConfiguredError("No model configured for this request")
        if not self.policy.fallback_enabled:
            candidates = candidates[:1]

        cursor = _Cursor()
        try:
            for position, model in enumerate(candidates):
                primary = position == 0
                cursor.model = model
                response = await self._run_model(
                    model,
                    primary,
                    message,
                    options,
                    history=history,
                    system_prompt=system_prompt,
                    tools=tools,
                    trace=trace,
                    cursor=cursor,
                )
                if response is None:
                    continue
                trace.fallback_used = not primary
                if not primary:
                    LOGGER.warning("Fallback model %s answered after %s failed", model, candidates[0])
                    if self.policy.notify_on_fallback:
                        await _notify(event, f"Primary model unavailable, answered by {model}.")
                return ExecutionResult(
                    response=response,
                    model=model,
                    channel=cursor.channel,
                    key_index=cursor.key_index,
                    trace=trace,
                )

            trace.record_switch("exhausted", model=candidates[-1])
            error = trace.last_error or EmptyResponseError(
                f"No usable response from {', '.join(candidates)}"
            )
            trace.last_error = error
            raise error
        finally:
            trace.used_model = cursor.model
            if cursor.channel is not None:
                trace.used_channel_id = cursor.channel.id
                trace.used_channel_name = cursor.channel.name
                trace.channel_switched = trace.channel_switched or (
                    trace.initial_channel_id is not None and cursor.channel.id != trace.initial_channel_id
                )
            trace.used_key_index = cursor.key_index

    async def _run_model(
        self,
        model: str,
        primary: bool,
        message: Message,
        options: RequestOptions,
        *,
        history: list[Message] | None,
        system_prompt: str | None,
        tools: list[dict[str, Any]] | None,
        trace: FallbackTrace,
        cursor: _Cursor,
    ) -> LLMResponse | None:
        policy = self.policy
        channel = self._registry.best_channel(model)
        if channel is None:
            LOGGER.warning("No channel serves model %s", model)
            trace.last_error = trace.last_error or NoChannelError(f"No channel serves model {model}")
            return None
        key = self._registry.key(channel)
        cursor.channel, cursor.key_index = channel, key.key_index
        if trace.initial_channel_id is None:
            trace.initial_channel_id = channel.id
        if primary:
            trace.record_switch("init", channel=channel.name, model=model)
        else:
            trace.record_switch("fallback", "previous model exhausted", model=model, channel=channel.name)

        tried_channels = {channel.id}
        tried_keys = {key.key_index}
        max_retries = policy.max_retries if primary else 1
        retry_count = 0
        empty_count = 0
        while retry_count <= max_retries:
            attempt = FallbackAttempt(model=model, channel_id=channel.id, key_index=key.key_index, retry_count=retry_count)
            trace.attempts.append(attempt)
            try:
                response = await self._attempt(channel, key, model, message, options, history, system_prompt, tools)
            except Exception as exc:  # noqa: BLE001
                error_type = classify_error(exc)
                attempt.outcome, attempt.error_type = "error", error_type
                trace.last_error = exc
                self._registry.report_error(channel.id, key_index=key.key_index, error_type=error_type, message=str(exc))
                LOGGER.error("Model %s on %s failed (%s): %s", model, channel.name, error_type.value, exc)

                if error_type in (ErrorType.AUTH, ErrorType.QUOTA):
                    if error_type is ErrorType.AUTH:
                        next_key = self._rotate_key(channel, key, tried_keys, "auth", trace)
                        if next_key is not None:
                            key = next_key
                            cursor.key_index = key.key_index
                            continue
                    switched = self._switch_channel(model, primary, channel, tried_channels, error_type.value, trace)
                    if switched is None:
                        return None
                    channel, key = switched
                    cursor.channel, cursor.key_index = channel, key.key_index
                    tried_keys = {key.key_index}
                    continue

                retry_count += 1
                if retry_count > max_retries:
                    break
                trace.total_retry_count += 1
                trace.record_switch("retry", error_type.value, channel=channel.name, attempt=retry_count)
                await self._sleep(backoff_delay(retry_count, policy.base_delay, policy.max_delay))
                continue

            response.contents = filter_tool_call_text(response.contents)
            if response.is_usable():
                attempt.outcome = "success"
                self._registry.report_success(channel.id)
                self._registry.report_usage(channel.id, int(response.usage.get("total_tokens", 0) or 0))
                return response

            attempt.outcome, attempt.error_type = "empty", ErrorType.EMPTY
            LOGGER.warning("Empty response from %s on %s (empty #%d)", model, channel.name, empty_count + 1)
            if empty_count < policy.empty_retries:
                empty_count += 1
                trace.total_retry_count += 1
                trace.record_switch("retry", "empty", channel=channel.name, attempt=empty_count)
                await self._sleep(backoff_delay(empty_count, policy.base_delay, policy.max_delay))
                continue
            next_key = self._rotate_key(channel, key, tried_keys, "empty", trace)
            if next_key is not None:
                key = next_key
                cursor.key_index = key.key_index
                continue
            switched = self._switch_channel(model, primary, channel, tried_channels, "empty", trace)
            if switched is None:
                return None
            channel, key = switched
            cursor.channel, cursor.key_index = channel, key.key_index
            tried_keys = {key.key_index}
        return None

    async def _attempt(
        self,
        channel: Channel,
        key: KeyInfo,
        model: str,
        message: Message,
        options: RequestOptions,
        history: list[Message] | None,
        system_prompt: str | None,
        tools: list[dict[str, Any]] | None,
    ) -> LLMResponse:
        client = self._client_factory.create(
            ClientOptions(
                base_url=channel.base_url,
                api_key=key.key,
                key_index=key.key_index,
                adapter_type=channel.adapter_type,
                channel_name=channel.name,
                tools=tools or None,
                timeout_seconds=self.policy.timeout_seconds,
            )
        )
        llm_defaults = channel.advanced.get("llm", {}) if isinstance(channel.advanced, dict) else {}
        request = replace(
            options,
            model=model,
            temperature=_first_set(options.temperature, llm_defaults.get("temperature"), self.policy.default_temperature),
            max_tokens=_first_set(options.max_tokens, llm_defaults.get("max_tokens"), self.policy.default_max_tokens),
        )
        self._registry.start_request(channel.id)
        try:
            return await client.send_message(message, request, history=history, system_prompt=system_prompt)
        finally:
            self._registry.end_request(channel.id)

    def _rotate_key(
        self, channel: Channel, key: KeyInfo, tried: set[int], reason: str, trace: FallbackTrace
    ) -> KeyInfo | None:
        if not self.policy.enable_key_rotation:
            return None
        next_key = self._registry.next_key(channel.id, tried)
        if next_key is None:
            return None
        tried.add(next_key.key_index)
        trace.record_switch(
            "key", reason, channel=channel.name, from_key=key.key_index + 1, to_key=next_key.key_index + 1
        )
        return next_key

    def _switch_channel(
        self,
        model: str,
        primary: bool,
        channel: Channel,
        tried: set[str],
        reason: str,
        trace: FallbackTrace,
    ) -> tuple[Channel, KeyInfo] | None:
        if not primary or not self.policy.enable_channel_switch:
            return None
        for candidate in self._registry.alternate_channels(model, exclude_id=channel.id):
            if candidate.id in tried:
                continue
            tried.add(candidate.id)
            trace.channel_switched = True
            trace.record_switch("channel", reason, from_channel=channel.name, to_channel=candidate.name)
            LOGGER.info("Switching %s from channel %s to %s (%s)", model, channel.name, candidate.name, reason)
            return candidate, self._registry.key(candidate)
        return None


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


async def _notify(event: Any, text: str) -> None:
    reply = getattr(event, "reply", None)
    if reply is None:
        return
    try:
        await reply(text)
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("Could not send fallback notice: %s", exc)

