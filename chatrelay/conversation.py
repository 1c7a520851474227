"""Conversation identity, shared-group labeling and history reset."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from chatrelay.interfaces import HistoryStore, PersonaResolver
from chatrelay.models import Message

LOGGER = logging.getLogger(__name__)


def clean_user_id(user_id: str) -> str:
    """Strip a platform prefix such as `bot_123` down to `123`."""

    user_id = str(user_id)
    return user_id.rsplit("_", 1)[-1] if "_" in user_id else user_id


def add_user_label(content: list[dict[str, Any]], label: str, user_id: str) -> list[dict[str, Any]]:
    """Prefix `[label(uid)]: ` to the first text part of content."""

    labeled = list(content)
    for index, part in enumerate(labeled):
        if part.get("type") == "text":
            labeled[index] = {**part, "text": f"[{label}({user_id})]: {part.get('text', '')}"}
            break
    return labeled


class ConversationResolver:
    """Maps (user, group) to the history stream the request reads and appends to.

    Groups share one conversation unless per-user isolation is switched on.
    Per-user personas never split history; they are layered into the system
    prompt instead.
    """

    def __init__(
        self,
        history: HistoryStore,
        personas: PersonaResolver | None = None,
        *,
        group_user_isolation: bool = False,
        private_isolation: bool = True,
        group_context_sharing: bool = True,
    ) -> None:
        self._history = history
        self._personas = personas
        self.group_user_isolation = group_user_isolation
        self.private_isolation = private_isolation
        self.group_context_sharing = group_context_sharing

    def resolve(self, user_id: str, group_id: str | None = None) -> str:
        user_id = clean_user_id(user_id)
        if group_id:
            if self.group_user_isolation:
                return f"group:{group_id}:user:{user_id}"
            return f"group:{group_id}"
        if self.private_isolation:
            return f"user:{user_id}"
        return "private:shared"

    def legacy_ids(self, user_id: str, group_id: str | None = None) -> list[str]:
        """Older per-user key formats that must be cleared together with the current one."""

        current = self.resolve(user_id, group_id)
        candidates = []
        for uid in dict.fromkeys([str(user_id), clean_user_id(user_id)]):
            candidates.append(f"group:{group_id}:user:{uid}" if group_id else f"user:{uid}")
        return [cid for cid in dict.fromkeys(candidates) if cid != current]

    def is_shared_group(self, group_id: str | None) -> bool:
        return bool(group_id) and not self.group_user_isolation and self.group_context_sharing

    def sends_group_history(self, group_id: str | None) -> bool:
        """False in groups with context sharing off: such requests carry no history."""

        return not group_id or self.group_context_sharing

    def has_independent_persona(self, group_id: str | None, user_id: str) -> bool:
        if self._personas is None:
            return False
        try:
            return self._personas.has_user_prompt(group_id, clean_user_id(user_id))
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Persona lookup failed for %s: %s", user_id, exc)
            return False

    def build_labeled_context(self, history: list[Message]) -> list[Message]:
        """Label every user turn of a shared history with its sender."""

        labeled: list[Message] = []
        for index, message in enumerate(history):
            if message.role != "user":
                labeled.append(message)
                continue
            if message.sender is not None and message.sender.user_id:
                label = message.sender.card or message.sender.nickname or "user"
                content = add_user_label(message.content, label, message.sender.user_id)
            else:
                content = add_user_label(message.content, "user", f"history#{index}")
            labeled.append(replace(message, content=content))
        return labeled

    def reset(self, user_id: str, group_id: str | None = None) -> list[str]:
        """Delete the current and legacy conversations; return the ids removed."""

        removed = [self.resolve(user_id, group_id), *self.legacy_ids(user_id, group_id)]
        for conversation_id in removed:
            self._history.delete_conversation(conversation_id)
        LOGGER.info("Cleared conversations %s", removed)
        return removed


class RequestTracker:
    """Best-effort count of requests in flight per conversation.

    Diagnostic only: concurrent requests for one conversation are not
    serialized and may read the same history snapshot.
    """

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}

    def count(self, conversation_id: str) -> int:
        return self._counts.get(conversation_id, 0)

    def enter(self, conversation_id: str) -> int:
        self._counts[conversation_id] = self._counts.get(conversation_id, 0) + 1
        return self._counts[conversation_id]

    def leave(self, conversation_id: str) -> None:
        remaining = self._counts.get(conversation_id, 0) - 1
        if remaining > 0:
            self._counts[conversation_id] = remaining
        else:
            self._counts.pop(conversation_id, None)

    def track(self, conversation_id: str) -> _Tracked:
        return _Tracked(self, conversation_id)


class _Tracked:
    def __init__(self, tracker: RequestTracker, conversation_id: str) -> None:
        self._tracker = tracker
        self._conversation_id = conversation_id

    async def __aenter__(self) -> int:
        concurrent = self._tracker.enter(self._conversation_id)
        if concurrent > 1:
            LOGGER.debug("Conversation %s has %d concurrent requests", self._conversation_id, concurrent)
        return concurrent

    async def __aexit__(self, *exc_info: object) -> None:
        self._tracker.leave(self._conversation_id)
