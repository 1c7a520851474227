"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace

from chatrelay.channels import ChannelRegistry
from chatrelay.chat_service import ChatService
from chatrelay.config import Settings, fallback_models, load_channels, load_settings
from chatrelay.conversation import ConversationResolver, RequestTracker
from chatrelay.db import Database
from chatrelay.dispatch import ToolDispatcher
from chatrelay.llm.openai_compat import OpenAICompatClientFactory
from chatrelay.models import ChatRequest
from chatrelay.orchestrator import MultiTaskOrchestrator
from chatrelay.prompt import SystemPromptBuilder
from chatrelay.resilience import ExecutorPolicy, ResilienceExecutor
from chatrelay.routing import ModelDefaults, ScenarioRouter
from chatrelay.tools.groups import ToolGroupCatalog
from chatrelay.tools.registry import ToolRegistry
from chatrelay.tools.time_tool import GetCurrentTimeTool

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)


def build_chat_service(settings: Settings, db: Database) -> ChatService:
    """Wire every layer around one database and one channel registry."""

    registry = ChannelRegistry(load_channels(settings.channels_path), strategy=settings.load_balancing_strategy)
    LOGGER.info("Loaded %d channels", len(registry.all()))

    tools = ToolRegistry(db)
    tools.register(GetCurrentTimeTool(), group="time", group_description="Current date and time in any time zone")
    catalog = ToolGroupCatalog(tools)
    catalog.load()

    policy = ExecutorPolicy(
        max_retries=settings.max_retries,
        empty_retries=settings.empty_retries,
        base_delay=settings.retry_delay_seconds,
        max_delay=settings.max_retry_delay_seconds,
        enable_key_rotation=settings.enable_key_rotation,
        enable_channel_switch=settings.enable_channel_switch,
        fallback_enabled=settings.fallback_enabled,
        notify_on_fallback=settings.notify_on_fallback,
        default_temperature=settings.default_temperature,
        default_max_tokens=settings.default_max_tokens,
        timeout_seconds=settings.request_timeout_seconds,
    )
    factory = OpenAICompatClientFactory(tools, max_tool_rounds=settings.max_tool_rounds)
    executor = ResilienceExecutor(registry, factory, policy)
    # The dispatcher retries empty replies itself with rising temperatures.
    dispatch_executor = ResilienceExecutor(registry, factory, replace(policy, empty_retries=0, notify_on_fallback=False))

    defaults = ModelDefaults.from_settings(settings)
    dispatcher = ToolDispatcher(dispatch_executor, catalog, defaults.dispatch, max_tokens=settings.dispatch_max_tokens)
    router = ScenarioRouter(
        defaults,
        tools,
        catalog,
        dispatcher,
        tools_enabled=settings.tools_enabled,
        use_tool_groups=settings.use_tool_groups,
    )
    fallbacks = fallback_models(settings) if settings.fallback_enabled else []

    return ChatService(
        resolver=ConversationResolver(
            db,
            db,
            group_user_isolation=settings.group_user_isolation,
            private_isolation=settings.private_isolation,
            group_context_sharing=settings.group_context_sharing,
        ),
        history=db,
        router=router,
        prompt_builder=SystemPromptBuilder(
            db,
            db,
            global_prompt=settings.global_system_prompt,
            global_prompt_mode=settings.global_prompt_mode,
            bot_name=settings.bot_name,
        ),
        executor=executor,
        orchestrator=MultiTaskOrchestrator(executor, router, catalog, fallbacks),
        scopes=db,
        presets=db,
        stats=db,
        tracker=RequestTracker(),
        fallback_models=fallbacks,
        default_preset_id=settings.default_preset_id,
        max_history_messages=settings.max_history_messages,
        dispatch_history_turns=settings.dispatch_history_turns,
        auto_clean_on_error=settings.auto_clean_on_error,
        auto_clean_notify_user=settings.auto_clean_notify_user,
    )


async def run(user_id: str = "local") -> None:
    """Read lines from stdin and print replies until EOF."""

    settings = load_settings()
    db = Database(settings.database_path)
    db.initialize()
    service = build_chat_service(settings, db)

    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            break
        text = line.strip()
        if not text:
            continue
        if text == "/clear":
            service.clear_history(user_id)
            print("Context cleared.")
            continue
        try:
            result = await service.send_message(ChatRequest(user_id=user_id, message=text))
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Request failed: %s", exc)
            print(f"Error: {exc}")
            continue
        for part in result.response:
            if part.get("type") == "text":
                print(part["text"])
            elif part.get("type") == "image":
                print(f"[image] {part['url']}")
    LOGGER.info("chatrelay shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
