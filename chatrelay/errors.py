"""Error types raised by the orchestration layer."""

from __future__ import annotations


class ChatRelayError(RuntimeError):
    """Base class for failures surfaced to the calling layer."""


class LLMRequestError(ChatRelayError):
    """An upstream model call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EmptyResponseError(ChatRelayError):
    """Every attempt returned neither text nor tool calls."""


class NoChannelError(ChatRelayError):
    """No channel serves the requested model."""


class ModelNotConfiguredError(ChatRelayError):
    """No model could be resolved for the request."""
