"""Pool of upstream channels with key rotation and health bookkeeping."""

from __future__ import annotations

import logging
import time
from typing import Callable

from chatrelay.models import Channel, ErrorType, KeyInfo

LOGGER = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_ERROR = "error"
STATUS_QUOTA_EXCEEDED = "quota_exceeded"
STATUS_DISABLED = "disabled"

_KEY_ERROR_LIMIT = 10
_AUTH_ERROR_LIMIT = 5
_CHANNEL_ERROR_LIMIT = 10


def cooldown_seconds(error_count: int) -> float:
    """Cooldown applied to a channel after consecutive errors."""

    if error_count <= 0:
        return 0.0
    if error_count == 1:
        return 30.0
    if error_count == 2:
        return 60.0
    return 300.0


class ChannelRegistry:
    """Explicitly owned registry of channels, constructed once and passed to components.

    Health counters are only ever incremented, decremented or reset; no caller
    relies on holding them across an await.
    """

    def __init__(
        self,
        channels: list[Channel] | None = None,
        strategy: str = "priority",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._channels: dict[str, Channel] = {}
        self._active: dict[str, int] = {}
        self._round_robin: dict[str, int] = {}
        self._strategy = strategy
        self._clock = clock
        for channel in channels or []:
            self.add(channel)

    def add(self, channel: Channel) -> None:
        self._channels[channel.id] = channel

    def get(self, channel_id: str) -> Channel | None:
        return self._channels.get(channel_id)

    def all(self) -> list[Channel]:
        return list(self._channels.values())

    def in_flight(self, channel_id: str) -> int:
        return self._active.get(channel_id, 0)

    def _in_cooldown(self, channel: Channel) -> bool:
        cooldown = cooldown_seconds(channel.error_count)
        if not cooldown or channel.last_error_time is None:
            return False
        return self._clock() - channel.last_error_time < cooldown

    def best_channel(self, model: str) -> Channel | None:
        """Pick the healthiest channel serving model, relaxing filters when none qualifies."""

        serving = [ch for ch in self._channels.values() if ch.enabled and ch.serves(model)]
        if not serving:
            return None
        candidates = [
            ch
            for ch in serving
            if ch.status not in (STATUS_ERROR, STATUS_QUOTA_EXCEEDED) and not self._in_cooldown(ch)
        ]
        if not candidates:
            candidates = [ch for ch in serving if ch.status != STATUS_DISABLED]
        if not candidates:
            return None
        if self._strategy == "least-connection":
            return min(candidates, key=lambda ch: (self.in_flight(ch.id), ch.priority))
        if self._strategy == "round-robin":
            return min(candidates, key=lambda ch: ch.last_used)
        return min(candidates, key=lambda ch: ch.priority)

    def alternate_channels(self, model: str, exclude_id: str | None = None) -> list[Channel]:
        """Channels serving model other than exclude_id, best first."""

        result = []
        for ch in self._channels.values():
            if not ch.enabled or ch.id == exclude_id or not ch.serves(model):
                continue
            if ch.status in (STATUS_ERROR, STATUS_QUOTA_EXCEEDED, STATUS_DISABLED):
                continue
            if self._in_cooldown(ch) and not self._active_key_indexes(ch):
                continue
            result.append(ch)
        return sorted(result, key=lambda ch: (ch.priority, ch.error_count, ch.last_used))

    def _active_key_indexes(self, channel: Channel) -> list[int]:
        return [
            i for i, k in enumerate(channel.keys) if k.enabled and k.error_count < _KEY_ERROR_LIMIT
        ]

    def key(self, channel: Channel) -> KeyInfo:
        """Round-robin over the channel's active keys; key_index is -1 when the channel has none."""

        active = self._active_key_indexes(channel)
        if not active:
            return KeyInfo(key="", key_index=-1)
        position = self._round_robin.get(channel.id, 0) % len(active)
        self._round_robin[channel.id] = (position + 1) % len(active)
        index = active[position]
        return KeyInfo(key=channel.keys[index].value, key_index=index)

    def next_key(self, channel_id: str, tried: set[int]) -> KeyInfo | None:
        """Active key outside tried with the fewest errors, or None when every key was tried."""

        channel = self._channels.get(channel_id)
        if channel is None:
            return None
        remaining = [i for i in self._active_key_indexes(channel) if i not in tried]
        if not remaining:
            return None
        index = min(remaining, key=lambda i: (channel.keys[i].error_count, i))
        LOGGER.info("Channel %s switching to key #%d", channel.name, index + 1)
        return KeyInfo(key=channel.keys[index].value, key_index=index)

    def start_request(self, channel_id: str) -> None:
        self._active[channel_id] = self._active.get(channel_id, 0) + 1

    def end_request(self, channel_id: str) -> None:
        count = self._active.get(channel_id, 0)
        if count > 0:
            self._active[channel_id] = count - 1

    def report_usage(self, channel_id: str, tokens: int = 0) -> None:
        channel = self._channels.get(channel_id)
        if channel is None:
            return
        channel.last_used = self._clock()
        channel.usage_count += 1
        channel.usage_tokens += tokens

    def report_error(
        self,
        channel_id: str,
        *,
        key_index: int = -1,
        error_type: ErrorType = ErrorType.UNKNOWN,
        message: str = "",
    ) -> None:
        channel = self._channels.get(channel_id)
        if channel is None:
            return
        if 0 <= key_index < len(channel.keys):
            channel.keys[key_index].error_count += 1
        channel.error_count += 1
        channel.last_error_time = self._clock()
        channel.last_error_type = error_type.value

        if error_type is ErrorType.AUTH:
            if channel.error_count >= _AUTH_ERROR_LIMIT:
                channel.status = STATUS_ERROR
                LOGGER.warning("Channel %s disabled after repeated auth errors", channel.name)
        elif error_type is ErrorType.QUOTA:
            channel.status = STATUS_QUOTA_EXCEEDED
            LOGGER.warning("Channel %s quota exceeded", channel.name)
        elif channel.error_count >= _CHANNEL_ERROR_LIMIT:
            channel.status = STATUS_ERROR
            LOGGER.warning("Channel %s disabled after %d errors", channel.name, channel.error_count)
        LOGGER.debug("Channel %s error %s (%d total): %s", channel.name, error_type.value, channel.error_count, message)

    def report_success(self, channel_id: str) -> None:
        channel = self._channels.get(channel_id)
        if channel is None:
            return
        channel.error_count = 0
        channel.last_error_time = None
        channel.last_error_type = None
        if channel.status in (STATUS_ERROR, STATUS_QUOTA_EXCEEDED):
            channel.status = STATUS_IDLE
            LOGGER.info("Channel %s recovered", channel.name)
