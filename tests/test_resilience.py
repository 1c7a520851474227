from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.channels import ChannelRegistry
from chatrelay.errors import EmptyResponseError, LLMRequestError, ModelNotConfiguredError, NoChannelError
from chatrelay.llm.base import LLMClient, LLMClientFactory
from chatrelay.models import ApiKey, Channel, ErrorType, FallbackTrace, LLMResponse, Message, RequestOptions, ToolCallLog
from chatrelay.resilience import (
    ExecutorPolicy,
    ResilienceExecutor,
    backoff_delay,
    classify_error,
    is_pure_tool_call_json,
)

OK = LLMResponse(contents=[{"type": "text", "text": "hello"}], usage={"total_tokens": 12})
EMPTY = LLMResponse(contents=[])
AUTH = LLMRequestError("HTTP 401 from upstream: bad key", status_code=401)
QUOTA = LLMRequestError("HTTP 429 from upstream: slow down", status_code=429)
TIMEOUT = LLMRequestError("timeout calling upstream", status_code=None)


class ScriptedFactory(LLMClientFactory):
    """Plays back outcomes in order and records (model, channel, key index) per call."""

    def __init__(self, outcomes=None, always=None):  # noqa: ANN001
        self.outcomes = list(outcomes or [])
        self.always = always
        self.calls: list[tuple[str, str, int]] = []
        self.requests: list[RequestOptions] = []

    def create(self, options):  # noqa: ANN001, ANN201
        return _ScriptedClient(self, options)


class _ScriptedClient(LLMClient):
    def __init__(self, factory, options):  # noqa: ANN001
        self._factory = factory
        self._options = options

    async def send_message(self, message, options, *, history=None, system_prompt=None):  # noqa: ANN001, ANN201
        self._factory.calls.append((options.model, self._options.channel_name, self._options.key_index))
        self._factory.requests.append(options)
        outcome = self._factory.outcomes.pop(0) if self._factory.outcomes else self._factory.always
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _registry() -> ChannelRegistry:
    return ChannelRegistry(
        [
            Channel(id="a", name="A", base_url="http://a", models=["m"], priority=1, keys=[ApiKey("k0"), ApiKey("k1")]),
            Channel(id="b", name="B", base_url="http://b", models=["m"], priority=2, keys=[ApiKey("k0")]),
            Channel(id="c", name="C", base_url="http://c", models=["fb"], priority=1, keys=[ApiKey("k0")]),
        ]
    )


def _executor(factory, registry=None, **policy):  # noqa: ANN001, ANN201
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    executor = ResilienceExecutor(registry or _registry(), factory, ExecutorPolicy(**policy), sleep=fake_sleep)
    return executor, sleeps


def _user(text: str = "hi") -> Message:
    return Message(role="user", content=[{"type": "text", "text": text}])


@pytest.mark.parametrize(
    ("outcomes", "expected_calls"),
    [
        pytest.param([OK], [("m", "A", 0)], id="success"),
        pytest.param([EMPTY, OK], [("m", "A", 0), ("m", "A", 0)], id="empty-retries-same-key"),
        pytest.param([EMPTY, EMPTY, EMPTY, OK], [("m", "A", 0)] * 3 + [("m", "A", 1)], id="empty-exhausted-rotates-key"),
        pytest.param([AUTH, OK], [("m", "A", 0), ("m", "A", 1)], id="auth-rotates-key"),
        pytest.param([AUTH, AUTH, OK], [("m", "A", 0), ("m", "A", 1), ("m", "B", 0)], id="auth-no-keys-switches-channel"),
        pytest.param([QUOTA, OK], [("m", "A", 0), ("m", "B", 0)], id="quota-switches-channel"),
        pytest.param([QUOTA, QUOTA, OK], [("m", "A", 0), ("m", "B", 0), ("fb", "C", 0)], id="quota-everywhere-falls-back"),
        pytest.param([TIMEOUT, OK], [("m", "A", 0), ("m", "A", 0)], id="timeout-retries-same-key"),
    ],
)
@pytest.mark.asyncio
async def test_state_machine_transitions(outcomes, expected_calls):
    factory = ScriptedFactory(outcomes)
    executor, _ = _executor(factory)

    result = await executor.execute(["m", "fb"], _user(), RequestOptions(model="m"))

    assert factory.calls == expected_calls
    assert result.response.text() == "hello"
    assert result.model == expected_calls[-1][0]


@pytest.mark.asyncio
async def test_always_empty_attempt_count_is_empty_retries_plus_keys_plus_channels():
    factory = ScriptedFactory(always=EMPTY)
    executor, sleeps = _executor(factory, empty_retries=2)
    trace = FallbackTrace()

    with pytest.raises(EmptyResponseError):
        await executor.execute(["m"], _user(), RequestOptions(model="m"), trace=trace)

    # 2 empty retries + 2 keys on channel A + 1 alternate channel
    assert len(factory.calls) == 5
    assert factory.calls == [("m", "A", 0)] * 3 + [("m", "A", 1), ("m", "B", 0)]
    assert sleeps == [0.5, 1.0]
    assert [event.kind for event in trace.switch_chain] == ["init", "retry", "retry", "key", "channel", "exhausted"]


@pytest.mark.asyncio
async def test_auth_on_primary_falls_back_and_marks_fallback_used():
    factory = ScriptedFactory([AUTH, AUTH, AUTH, OK])
    executor, _ = _executor(factory)
    trace = FallbackTrace()

    result = await executor.execute(["m", "fb"], _user(), RequestOptions(model="m"), trace=trace)

    assert result.model == "fb"
    assert trace.fallback_used is True
    assert trace.total_retry_count == 0
    assert factory.calls == [("m", "A", 0), ("m", "A", 1), ("m", "B", 0), ("fb", "C", 0)]


@pytest.mark.asyncio
async def test_unknown_errors_retry_primary_up_to_max_retries_with_backoff():
    factory = ScriptedFactory(always=RuntimeError("boom"))
    executor, sleeps = _executor(factory, max_retries=3)
    trace = FallbackTrace()

    with pytest.raises(RuntimeError, match="boom"):
        await executor.execute(["m"], _user(), RequestOptions(model="m"), trace=trace)

    assert len(factory.calls) == 4
    assert sleeps == [0.5, 1.0, 2.0]
    assert trace.total_retry_count == 3


@pytest.mark.asyncio
async def test_fallback_model_is_retried_exactly_once():
    factory = ScriptedFactory([QUOTA, QUOTA], always=TIMEOUT)
    executor, _ = _executor(factory)

    with pytest.raises(LLMRequestError, match="timeout"):
        await executor.execute(["m", "fb"], _user(), RequestOptions(model="m"))

    assert [call for call in factory.calls if call[0] == "fb"] == [("fb", "C", 0), ("fb", "C", 0)]


@pytest.mark.asyncio
async def test_trace_is_complete_when_everything_fails():
    registry = _registry()
    factory = ScriptedFactory(always=QUOTA)
    executor, _ = _executor(factory, registry)
    trace = FallbackTrace()

    with pytest.raises(LLMRequestError):
        await executor.execute(["m", "fb"], _user(), RequestOptions(model="m"), trace=trace)

    assert trace.used_model == "fb"
    assert trace.used_channel_id == "c"
    assert trace.initial_channel_id == "a"
    assert trace.channel_switched is True
    assert trace.switch_chain[-1].kind == "exhausted"
    assert trace.last_error is QUOTA
    assert all(registry.in_flight(ch) == 0 for ch in ("a", "b", "c"))


@pytest.mark.asyncio
async def test_success_reports_health_and_usage():
    registry = _registry()
    registry.get("a").error_count = 2
    factory = ScriptedFactory([OK])
    executor, _ = _executor(factory, registry)

    await executor.execute(["m"], _user(), RequestOptions(model="m"))

    channel = registry.get("a")
    assert channel.error_count == 0
    assert channel.usage_count == 1
    assert channel.usage_tokens == 12
    assert registry.in_flight("a") == 0


@pytest.mark.asyncio
async def test_tool_call_only_response_counts_as_success():
    tool_only = LLMResponse(contents=[], tool_call_logs=[ToolCallLog(name="get_current_time")])
    factory = ScriptedFactory([tool_only])
    executor, _ = _executor(factory)

    result = await executor.execute(["m"], _user(), RequestOptions(model="m"))

    assert len(factory.calls) == 1
    assert result.response.tool_call_logs[0].name == "get_current_time"


@pytest.mark.asyncio
async def test_leaked_tool_call_json_is_filtered_from_contents():
    leaked = LLMResponse(
        contents=[
            {"type": "text", "text": '{"tool_calls": [{"function": {"name": "get_current_time"}}]}'},
            {"type": "text", "text": "It is noon."},
        ]
    )
    executor, _ = _executor(ScriptedFactory([leaked]))

    result = await executor.execute(["m"], _user(), RequestOptions(model="m"))

    assert result.response.text() == "It is noon."


@pytest.mark.asyncio
async def test_reply_of_only_leaked_tool_call_json_takes_the_empty_path():
    leaked = LLMResponse(contents=[{"type": "text", "text": '{"tool_calls": [{"function": {"name": "get_current_time"}}]}'}])
    factory = ScriptedFactory([leaked, OK])
    executor, _ = _executor(factory)
    trace = FallbackTrace()

    result = await executor.execute(["m"], _user(), RequestOptions(model="m"), trace=trace)

    assert factory.calls == [("m", "A", 0), ("m", "A", 0)]
    assert result.response.text() == "hello"
    assert trace.attempts[0].outcome == "empty"
    assert trace.total_retry_count == 1


@pytest.mark.asyncio
async def test_auth_rotation_reaches_earlier_keys_after_round_robin_advanced():
    registry = _registry()
    factory = ScriptedFactory([OK, AUTH, OK])
    executor, _ = _executor(factory, registry)

    await executor.execute(["m"], _user(), RequestOptions(model="m"))
    result = await executor.execute(["m"], _user(), RequestOptions(model="m"))

    assert factory.calls == [("m", "A", 0), ("m", "A", 1), ("m", "A", 0)]
    assert result.channel.id == "a"
    assert result.key_index == 0


@pytest.mark.asyncio
async def test_empty_rotation_from_last_key_wraps_to_untried_key():
    registry = _registry()
    registry.key(registry.get("a"))
    factory = ScriptedFactory([EMPTY, OK])
    executor, _ = _executor(factory, registry, empty_retries=0)

    result = await executor.execute(["m"], _user(), RequestOptions(model="m"))

    assert factory.calls == [("m", "A", 1), ("m", "A", 0)]
    assert result.key_index == 0


@pytest.mark.asyncio
async def test_notify_on_fallback_replies_through_event():
    event = MagicMock()
    event.reply = AsyncMock()
    executor, _ = _executor(ScriptedFactory([QUOTA, QUOTA, OK]), notify_on_fallback=True)

    await executor.execute(["m", "fb"], _user(), RequestOptions(model="m"), event=event)

    event.reply.assert_awaited_once()
    assert "fb" in event.reply.await_args.args[0]


@pytest.mark.asyncio
async def test_fallback_disabled_only_tries_primary():
    factory = ScriptedFactory(always=QUOTA)
    executor, _ = _executor(factory, fallback_enabled=False, enable_channel_switch=False)

    with pytest.raises(LLMRequestError):
        await executor.execute(["m", "fb"], _user(), RequestOptions(model="m"))

    assert factory.calls == [("m", "A", 0)]


@pytest.mark.asyncio
async def test_model_without_channel_raises_no_channel_error():
    executor, _ = _executor(ScriptedFactory([OK]))

    with pytest.raises(NoChannelError):
        await executor.execute(["unknown"], _user(), RequestOptions(model="unknown"))


@pytest.mark.asyncio
async def test_no_models_raises_model_not_configured():
    executor, _ = _executor(ScriptedFactory([OK]))

    with pytest.raises(ModelNotConfiguredError):
        await executor.execute(["", ""], _user(), RequestOptions(model=""))


@pytest.mark.asyncio
async def test_sampling_defaults_come_from_channel_then_policy():
    registry = _registry()
    registry.get("a").advanced = {"llm": {"temperature": 0.2}}
    factory = ScriptedFactory([OK, OK])
    executor, _ = _executor(factory, registry, default_max_tokens=999)

    await executor.execute(["m"], _user(), RequestOptions(model="m"))
    await executor.execute(["m"], _user(), RequestOptions(model="m", temperature=0.9, max_tokens=10))

    assert (factory.requests[0].temperature, factory.requests[0].max_tokens) == (0.2, 999)
    assert (factory.requests[1].temperature, factory.requests[1].max_tokens) == (0.9, 10)


@pytest.mark.parametrize(
    ("retry_count", "expected"),
    [(0, 0.0), (1, 0.5), (2, 1.0), (3, 2.0), (5, 8.0), (6, 10.0), (20, 10.0)],
)
def test_backoff_delay(retry_count, expected):
    assert backoff_delay(retry_count, 0.5, 10.0) == expected


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (LLMRequestError("HTTP 401", status_code=401), ErrorType.AUTH),
        (LLMRequestError("HTTP 403", status_code=403), ErrorType.AUTH),
        (LLMRequestError("HTTP 429", status_code=429), ErrorType.QUOTA),
        (LLMRequestError("HTTP 504", status_code=504), ErrorType.TIMEOUT),
        (RuntimeError("invalid api key provided"), ErrorType.AUTH),
        (RuntimeError("monthly quota exceeded"), ErrorType.QUOTA),
        (RuntimeError("request timed out"), ErrorType.TIMEOUT),
        (RuntimeError("connect ECONNREFUSED 127.0.0.1"), ErrorType.NETWORK),
        (ConnectionResetError("reset by peer"), ErrorType.NETWORK),
        (RuntimeError("model exploded"), ErrorType.UNKNOWN),
    ],
)
def test_classify_error(error, expected):
    assert classify_error(error) is expected


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ('{"tool_calls": [{"function": {"name": "x", "arguments": "{}"}}]}', True),
        ('```json\n{"tool_calls": [{"name": "x"}]}\n```', True),
        ('{"name": "get_current_time", "arguments": {}}', True),
        ('{"tool_calls": [{"function": {"name": "x"', False),
        ("The answer is 42.", False),
        ('{"answer": "42"}', False),
        ("", False),
    ],
)
def test_is_pure_tool_call_json(text, expected):
    assert is_pure_tool_call_json(text) is expected
