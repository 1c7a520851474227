"""LLM client interface."""

from __future__ import annotations

from abc import ABC, abstractmethod

from chatrelay.models import ClientOptions, LLMResponse, Message, RequestOptions


class LLMClient(ABC):
    """Client bound to one channel and API key."""

    @abstractmethod
    async def send_message(
        self,
        message: Message,
        options: RequestOptions,
        *,
        history: list[Message] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Send one user turn with its context and return the model's reply."""


class LLMClientFactory(ABC):
    @abstractmethod
    def create(self, options: ClientOptions) -> LLMClient:
        """Build a client for the given channel options."""
