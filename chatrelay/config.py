"""Application configuration."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatrelay.models import ApiKey, Channel


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_path: Path = Field(default=Path("chatrelay.db"), alias="DATABASE_PATH")
    channels_path: Path = Field(default=Path("channels.json"), alias="CHANNELS_PATH")
    request_timeout_seconds: float = Field(default=60.0, alias="REQUEST_TIMEOUT_SECONDS")

    # Model slots. Empty means "not configured".
    default_model: str = Field(default="", alias="DEFAULT_MODEL")
    chat_model: str = Field(default="", alias="CHAT_MODEL")
    tool_model: str = Field(default="", alias="TOOL_MODEL")
    dispatch_model: str = Field(default="", alias="DISPATCH_MODEL")
    image_model: str = Field(default="", alias="IMAGE_MODEL")
    draw_model: str = Field(default="", alias="DRAW_MODEL")
    search_model: str = Field(default="", alias="SEARCH_MODEL")
    roleplay_model: str = Field(default="", alias="ROLEPLAY_MODEL")
    default_preset_id: str = Field(default="default", alias="DEFAULT_PRESET_ID")
    default_temperature: float = Field(default=0.7, alias="DEFAULT_TEMPERATURE")
    default_max_tokens: int = Field(default=4000, alias="DEFAULT_MAX_TOKENS")

    # Fallback state machine.
    fallback_enabled: bool = Field(default=True, alias="FALLBACK_ENABLED")
    # Comma-separated model names tried after the primary model.
    fallback_models: str = Field(default="", alias="FALLBACK_MODELS")
    max_retries: int = Field(default=3, alias="FALLBACK_MAX_RETRIES")
    retry_delay_seconds: float = Field(default=0.5, alias="FALLBACK_RETRY_DELAY_SECONDS")
    max_retry_delay_seconds: float = Field(default=10.0, alias="FALLBACK_MAX_RETRY_DELAY_SECONDS")
    empty_retries: int = Field(default=2, alias="FALLBACK_EMPTY_RETRIES")
    enable_key_rotation: bool = Field(default=True, alias="FALLBACK_KEY_ROTATION")
    enable_channel_switch: bool = Field(default=True, alias="FALLBACK_CHANNEL_SWITCH")
    notify_on_fallback: bool = Field(default=False, alias="FALLBACK_NOTIFY")
    load_balancing_strategy: str = Field(default="priority", alias="LOAD_BALANCING_STRATEGY")

    # Tools and dispatch.
    tools_enabled: bool = Field(default=True, alias="TOOLS_ENABLED")
    use_tool_groups: bool = Field(default=True, alias="USE_TOOL_GROUPS")
    dispatch_history_turns: int = Field(default=5, alias="DISPATCH_HISTORY_TURNS")
    dispatch_max_tokens: int = Field(default=512, alias="DISPATCH_MAX_TOKENS")
    max_tool_rounds: int = Field(default=5, alias="MAX_TOOL_ROUNDS")

    # Context.
    max_history_messages: int = Field(default=30, alias="MAX_HISTORY_MESSAGES")
    group_user_isolation: bool = Field(default=False, alias="GROUP_USER_ISOLATION")
    private_isolation: bool = Field(default=True, alias="PRIVATE_ISOLATION")
    group_context_sharing: bool = Field(default=True, alias="GROUP_CONTEXT_SHARING")
    global_system_prompt: str = Field(default="", alias="GLOBAL_SYSTEM_PROMPT")
    # append | prepend | override
    global_prompt_mode: str = Field(default="append", alias="GLOBAL_PROMPT_MODE")
    bot_name: str = Field(default="Assistant", alias="BOT_NAME")

    auto_clean_on_error: bool = Field(default=False, alias="AUTO_CLEAN_ON_ERROR")
    auto_clean_notify_user: bool = Field(default=True, alias="AUTO_CLEAN_NOTIFY_USER")


class ApiKeyConfig(BaseModel):
    key: str
    name: str = ""
    enabled: bool = True


class ChannelConfig(BaseModel):
    """One entry of the channels JSON file."""

    id: str
    name: str = ""
    adapter_type: str = "openai"
    base_url: str
    models: list[str] = Field(default_factory=list)
    priority: int = 100
    api_key: str = ""
    api_keys: list[ApiKeyConfig] = Field(default_factory=list)
    advanced: dict = Field(default_factory=dict)
    enabled: bool = True

    def to_channel(self) -> Channel:
        keys = [ApiKey(value=k.key, name=k.name, enabled=k.enabled) for k in self.api_keys]
        if not keys and self.api_key:
            keys = [ApiKey(value=self.api_key)]
        return Channel(
            id=self.id,
            name=self.name or self.id,
            base_url=self.base_url.rstrip("/"),
            adapter_type=self.adapter_type,
            models=list(self.models),
            priority=self.priority,
            keys=keys,
            advanced=dict(self.advanced),
            enabled=self.enabled,
        )


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def load_channels(path: Path) -> list[Channel]:
    """Read the channel pool from a JSON list of ChannelConfig objects."""

    if not path.exists():
        return []
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError(f"Channel file {path} must contain a JSON list")
    return [ChannelConfig.model_validate(item).to_channel() for item in payload]


def fallback_models(settings: Settings) -> list[str]:
    """Return the configured fallback models in order, without blanks."""

    return [m.strip() for m in settings.fallback_models.split(",") if m.strip()]
