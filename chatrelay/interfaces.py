"""Contracts for the collaborators consumed by the orchestration core."""

from __future__ import annotations

from abc import ABC, abstractmethod

from chatrelay.models import ApiCallRecord, Message, PersonaResult, Preset, ScopeSettings


class HistoryStore(ABC):
    """Conversation history keyed by conversation id."""

    @abstractmethod
    def get_context_history(self, conversation_id: str, limit: int) -> list[Message]:
        """Return up to limit most recent turns, oldest first."""

    @abstractmethod
    def append_message(self, conversation_id: str, message: Message) -> None:
        """Append one turn."""

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> None:
        """Remove every turn of a conversation."""


class ScopeResolver(ABC):
    @abstractmethod
    def get_effective_settings(
        self, group_id: str | None, user_id: str, *, is_private: bool
    ) -> ScopeSettings:
        """Merge user/group/global scope settings, most specific first."""


class PersonaResolver(ABC):
    @abstractmethod
    def get_independent_prompt(
        self, group_id: str | None, user_id: str, default_prompt: str
    ) -> PersonaResult:
        """Resolve per-user-in-group > per-group > per-user > default persona."""

    @abstractmethod
    def has_user_prompt(self, group_id: str | None, user_id: str) -> bool:
        """True when the user has a persona of their own in this scope."""


class PresetStore(ABC):
    @abstractmethod
    def get_preset(self, preset_id: str) -> Preset | None:
        """Look up a preset by id."""


class StatsSink(ABC):
    @abstractmethod
    def record_api_call(self, record: ApiCallRecord) -> None:
        """Persist one orchestrated request."""

    @abstractmethod
    def record_tool_call(self, name: str, success: bool) -> None:
        """Persist one tool invocation outcome."""


class MemoryProvider(ABC):
    @abstractmethod
    async def get_memory_context(self, user_id: str, message: str, group_id: str | None) -> str:
        """Return memory text to add to the system prompt, or an empty string."""


class KnowledgeProvider(ABC):
    @abstractmethod
    def build_knowledge_prompt(self, preset_id: str) -> str:
        """Return knowledge-base text for a preset, or an empty string."""
