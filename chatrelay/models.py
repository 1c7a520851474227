"""Core domain models used across layers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskType(str, Enum):
    """Kinds of sub-task a dispatch plan may contain."""

    CHAT = "chat"
    TOOL = "tool"
    DRAW = "draw"
    SEARCH = "search"
    IMAGE_UNDERSTAND = "image_understand"

    @classmethod
    def parse(cls, value: Any) -> TaskType:
        """Map a free-form type string to a TaskType; unknown values become chat."""

        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CHAT


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"

    @classmethod
    def parse(cls, value: Any) -> ExecutionMode:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.SEQUENTIAL


class Scenario(str, Enum):
    """Logical purpose of a model call."""

    CHAT = "chat"
    TOOL = "tool"
    IMAGE = "image"
    ROLEPLAY = "roleplay"
    DISPATCH = "dispatch"
    SEARCH = "search"
    DRAW = "draw"


class ErrorType(str, Enum):
    AUTH = "auth"
    QUOTA = "quota"
    TIMEOUT = "timeout"
    NETWORK = "network"
    EMPTY = "empty"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class Sender:
    """Who sent an inbound message."""

    user_id: str
    nickname: str = ""
    card: str = ""
    role: str = "member"

    @property
    def label(self) -> str:
        return self.card or self.nickname or f"user{self.user_id}"


@dataclass(slots=True)
class Message:
    """One conversation turn with ordered text/image content parts."""

    role: str
    content: list[dict[str, Any]]
    sender: Sender | None = None
    timestamp: float = field(default_factory=time.time)
    source_type: str = "private"
    group_id: str | None = None

    def text(self, separator: str = "") -> str:
        return separator.join(
            part.get("text", "") for part in self.content if part.get("type") == "text"
        )

    def has_text(self) -> bool:
        return any(part.get("type") == "text" and str(part.get("text", "")).strip() for part in self.content)

    def images(self) -> list[dict[str, Any]]:
        return [part for part in self.content if part.get("type") == "image_url"]


@dataclass(slots=True)
class ScopeFeatures:
    """Per-scope model slots and feature switches."""

    chat_model: str | None = None
    tool_model: str | None = None
    dispatch_model: str | None = None
    image_model: str | None = None
    draw_model: str | None = None
    search_model: str | None = None
    roleplay_model: str | None = None
    tools_enabled: bool | None = None


@dataclass(slots=True)
class ScopeSettings:
    """Effective configuration merged from user/group/global scope."""

    preset_id: str | None = None
    preset_source: str | None = None
    model_id: str | None = None
    model_source: str | None = None
    features: ScopeFeatures = field(default_factory=ScopeFeatures)


@dataclass(slots=True)
class PersonaResult:
    prompt: str
    is_independent: bool = False
    source: str = "default"


@dataclass(slots=True)
class Preset:
    """Named persona with optional model and parameter overrides."""

    id: str
    name: str = ""
    system_prompt: str = ""
    model: str | None = None
    enable_tools: bool = True
    disable_system_prompt: bool = False
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(slots=True)
class ToolGroup:
    """Named, indexed partition of available tools."""

    index: int
    name: str
    description: str
    tools: set[str] = field(default_factory=set)
    enabled: bool = True
    display_name: str = ""
    source: str = "builtin"


@dataclass(slots=True)
class Task:
    """One sub-task of a dispatch plan."""

    type: TaskType
    priority: int = 1
    params: dict[str, Any] = field(default_factory=dict)
    depends_on: int | None = None


@dataclass(slots=True)
class DispatchResult:
    """Outcome of the tool-group / task-plan dispatch call."""

    tool_group_indexes: list[int] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    analysis: str = ""

    @classmethod
    def default(cls) -> DispatchResult:
        return cls(tasks=[Task(type=TaskType.CHAT, priority=1)])

    def is_multi_task(self) -> bool:
        """True when the plan needs the orchestrator instead of a single call."""

        if len(self.tasks) > 1:
            return True
        return any(task.type not in (TaskType.CHAT, TaskType.TOOL) for task in self.tasks)


@dataclass(slots=True)
class ApiKey:
    value: str
    enabled: bool = True
    error_count: int = 0
    name: str = ""


@dataclass(slots=True)
class KeyInfo:
    key: str
    key_index: int


@dataclass(slots=True)
class Channel:
    """Upstream LLM endpoint. Health fields are owned by the ChannelRegistry."""

    id: str
    name: str
    base_url: str
    adapter_type: str = "openai"
    models: list[str] = field(default_factory=list)
    priority: int = 100
    keys: list[ApiKey] = field(default_factory=list)
    advanced: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    status: str = "idle"
    error_count: int = 0
    last_error_time: float | None = None
    last_error_type: str | None = None
    usage_count: int = 0
    usage_tokens: int = 0
    last_used: float = 0.0

    def serves(self, model: str) -> bool:
        return model in self.models or "*" in self.models


@dataclass(slots=True)
class ToolCallLog:
    """Record of one tool invocation made while producing a response."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    is_error: bool = False
    duration: float = 0.0


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from one model request."""

    contents: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    tool_call_logs: list[ToolCallLog] = field(default_factory=list)
    raw: dict[str, Any] | None = None

    def text(self) -> str:
        return "".join(c.get("text", "") for c in self.contents if c.get("type") == "text")

    def has_text(self) -> bool:
        return any(c.get("type") == "text" and str(c.get("text", "")).strip() for c in self.contents)

    def is_usable(self) -> bool:
        """Non-empty text, a non-text part, or at least one tool call."""

        if self.tool_call_logs:
            return True
        return self.has_text() or any(c.get("type") not in ("text", "reasoning") for c in self.contents)


@dataclass(slots=True)
class RequestOptions:
    """Per-attempt request parameters passed to a client.

    Unset sampling parameters are filled per channel by the executor.
    """

    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stream: bool = False
    conversation_id: str | None = None


@dataclass(slots=True)
class ClientOptions:
    """Options used to build a client bound to one channel and key."""

    base_url: str
    api_key: str
    key_index: int = -1
    adapter_type: str = "openai"
    channel_name: str = ""
    tools: list[dict[str, Any]] | None = None
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class SwitchEvent:
    kind: str
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        d = self.details
        if self.kind == "init":
            return f"init: {d.get('channel')}"
        if self.kind == "key":
            return f"key: {d.get('channel')} #{d.get('from_key')}->#{d.get('to_key')} ({self.reason})"
        if self.kind == "channel":
            return f"channel: {d.get('from_channel')}->{d.get('to_channel')} ({self.reason})"
        if self.kind == "retry":
            return f"retry: {d.get('channel')} #{d.get('attempt')} ({self.reason})"
        if self.kind == "fallback":
            return f"fallback: {d.get('model')} @ {d.get('channel')} ({self.reason})"
        if self.kind == "exhausted":
            return f"exhausted: {d.get('model')}"
        return f"{self.kind}: {self.reason}"


@dataclass(slots=True)
class FallbackAttempt:
    """One (model, channel, key) attempt of an orchestrated request."""

    model: str
    channel_id: str | None
    key_index: int
    retry_count: int
    error_type: ErrorType | None = None
    outcome: str = "pending"


@dataclass(slots=True)
class FallbackTrace:
    """Diagnostics for one orchestrated request, complete on every exit path."""

    attempts: list[FallbackAttempt] = field(default_factory=list)
    switch_chain: list[SwitchEvent] = field(default_factory=list)
    total_retry_count: int = 0
    used_model: str | None = None
    used_channel_id: str | None = None
    used_channel_name: str | None = None
    used_key_index: int = -1
    fallback_used: bool = False
    channel_switched: bool = False
    initial_channel_id: str | None = None
    last_error: BaseException | None = None

    def record_switch(self, kind: str, reason: str = "", **details: Any) -> None:
        self.switch_chain.append(SwitchEvent(kind=kind, reason=reason, details=details))

    def formatted_chain(self) -> list[str] | None:
        if len(self.switch_chain) <= 1:
            return None
        return [event.describe() for event in self.switch_chain]


@dataclass(slots=True)
class TaskResult:
    success: bool
    task_type: TaskType
    contents: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0
    error: str | None = None
    model: str | None = None

    def text(self) -> str:
        return "".join(c.get("text", "") for c in self.contents if c.get("type") == "text")


@dataclass(slots=True)
class AggregateResult:
    success: bool
    results: list[TaskResult] = field(default_factory=list)
    contents: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    text: str = ""


@dataclass(slots=True)
class ChatRequest:
    """Options accepted by ChatService.send_message."""

    user_id: str
    message: str | None = None
    images: list[Any] = field(default_factory=list)
    model: str | None = None
    group_id: str | None = None
    sender: Sender | None = None
    event: Any = None
    mode: str = "chat"
    debug_mode: bool = False
    prefix_persona: str | None = None
    disable_tools: bool = False
    skip_history: bool = False
    skip_persona: bool = False
    preset_id: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False
    source: str = "chat"


@dataclass(slots=True)
class ChatResult:
    conversation_id: str
    response: list[dict[str, Any]]
    usage: dict[str, Any]
    model: str
    tool_call_logs: list[ToolCallLog] = field(default_factory=list)
    task_results: list[TaskResult] = field(default_factory=list)
    debug_info: dict[str, Any] | None = None


@dataclass(slots=True)
class ApiCallRecord:
    """Stats row written once per orchestrated request."""

    channel_id: str
    channel_name: str
    model: str
    key_index: int
    duration: float
    success: bool
    source: str
    user_id: str
    group_id: str | None = None
    error: str | None = None
    stream: bool = False
    retry_count: int = 0
    channel_switched: bool = False
    fallback_used: bool = False
    previous_channel_id: str | None = None
    switch_chain: list[str] | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    response_text: str = ""


def merge_usage(total: dict[str, Any], usage: dict[str, Any] | None) -> dict[str, Any]:
    """Sum numeric token counters of usage into total."""

    for key, value in (usage or {}).items():
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total[key] = total.get(key, 0) + value
    return total
