from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.models import (
    DispatchResult,
    ExecutionMode,
    Preset,
    Scenario,
    ScopeFeatures,
    ScopeSettings,
    Task,
    TaskType,
)
from chatrelay.routing import ModelDefaults, ScenarioInput, ScenarioRouter
from chatrelay.tools.base import Tool
from chatrelay.tools.groups import ToolGroupCatalog
from chatrelay.tools.registry import ToolRegistry


class _NamedTool(Tool):
    description = "test tool"
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}}

    def __init__(self, name: str) -> None:
        self.name = name

    async def run(self, **kwargs: Any) -> Any:
        return {}


def _router(defaults: ModelDefaults, plan: DispatchResult | None = None, **kwargs: Any) -> tuple[ScenarioRouter, Any]:
    registry = ToolRegistry()
    registry.register(_NamedTool("get_current_time"), group="time")
    registry.register(_NamedTool("web_search"), group="web_search")
    catalog = ToolGroupCatalog(registry)
    catalog.load()
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=plan or DispatchResult.default())
    return ScenarioRouter(defaults, registry, catalog, dispatcher, **kwargs), dispatcher


def _names(tools: list[dict[str, Any]]) -> list[str]:
    return [t["function"]["name"] for t in tools]


def test_slot_model_precedence():
    router, _ = _router(ModelDefaults(default="base", chat="chat-m", draw="draw-m"))
    scope = ScopeSettings(features=ScopeFeatures(draw_model="scope-draw", chat_model="scope-chat"))

    assert router.slot_model(Scenario.DRAW, scope) == "scope-draw"
    assert router.slot_model(Scenario.DRAW) == "draw-m"
    assert router.slot_model(Scenario.SEARCH) == "chat-m"
    assert router.slot_model(Scenario.SEARCH, scope) == "scope-chat"
    assert ScenarioRouter(ModelDefaults(default="base"), ToolRegistry(), None).generic_model() == "base"  # type: ignore[arg-type]


def test_chat_model_precedence():
    router, _ = _router(ModelDefaults(chat="chat-m"))
    scope = ScopeSettings(model_id="scope-m")
    preset = Preset(id="p", model="preset-m")

    assert router.chat_model(ScenarioInput(explicit_model="x", preset=preset, scope=scope)) == "x"
    assert router.chat_model(ScenarioInput(preset=preset, scope=scope)) == "preset-m"
    assert router.chat_model(ScenarioInput(scope=scope)) == "scope-m"
    assert router.chat_model(ScenarioInput()) == "chat-m"


@pytest.mark.asyncio
async def test_explicit_model_wins_and_keeps_tools():
    router, dispatcher = _router(ModelDefaults(chat="chat-m", dispatch="d"))

    selection = await router.select_scenario(ScenarioInput(message_text="hi", explicit_model="x", has_images=True))

    assert (selection.model, selection.scenario) == ("x", Scenario.CHAT)
    assert _names(selection.tools) == ["get_current_time", "web_search"]
    dispatcher.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_images_route_to_image_model_without_tools_when_tool_model_exists():
    router, _ = _router(ModelDefaults(chat="chat-m", image="img-m", tool="tool-m"))

    selection = await router.select_scenario(ScenarioInput(message_text="what is this", has_images=True))

    assert (selection.model, selection.scenario, selection.tools) == ("img-m", Scenario.IMAGE, [])


@pytest.mark.asyncio
async def test_roleplay_mode_needs_a_roleplay_model():
    router, _ = _router(ModelDefaults(chat="chat-m", roleplay="rp-m"))
    plain, _ = _router(ModelDefaults(chat="chat-m"))

    rp = await router.select_scenario(ScenarioInput(message_text="hi", mode="roleplay"))
    fallback = await plain.select_scenario(ScenarioInput(message_text="hi", mode="roleplay"))

    assert (rp.model, rp.scenario, rp.enable_tools) == ("rp-m", Scenario.ROLEPLAY, False)
    assert fallback.scenario is Scenario.CHAT


@pytest.mark.asyncio
async def test_dispatch_groups_select_tool_model_with_group_tools():
    plan = DispatchResult(tool_group_indexes=[1], tasks=[Task(type=TaskType.TOOL, params={"toolGroups": [1]})])
    router, dispatcher = _router(ModelDefaults(chat="chat-m", tool="tool-m", dispatch="disp-m"), plan)

    selection = await router.select_scenario(ScenarioInput(message_text="news?", context_summary="user: hi"))

    dispatcher.dispatch.assert_awaited_once_with("news?", "user: hi", model="disp-m")
    assert (selection.model, selection.scenario) == ("tool-m", Scenario.TOOL)
    assert _names(selection.tools) == ["web_search"]
    assert selection.dispatch is plan


@pytest.mark.asyncio
async def test_dispatch_without_groups_is_plain_chat():
    router, _ = _router(ModelDefaults(chat="chat-m", tool="tool-m", dispatch="disp-m"))

    selection = await router.select_scenario(ScenarioInput(message_text="hello"))

    assert (selection.model, selection.scenario, selection.tools) == ("chat-m", Scenario.CHAT, [])


@pytest.mark.asyncio
async def test_multi_task_plan_selects_dispatch_scenario():
    plan = DispatchResult(
        tasks=[Task(type=TaskType.TOOL), Task(type=TaskType.DRAW, priority=2)],
        execution_mode=ExecutionMode.SEQUENTIAL,
    )
    router, _ = _router(ModelDefaults(chat="chat-m", dispatch="disp-m"), plan)

    selection = await router.select_scenario(ScenarioInput(message_text="time then draw"))

    assert selection.scenario is Scenario.DISPATCH
    assert selection.dispatch is plan


@pytest.mark.asyncio
async def test_dispatch_skipped_when_tools_not_permitted():
    router, dispatcher = _router(ModelDefaults(chat="chat-m", dispatch="disp-m"))

    by_request = await router.select_scenario(ScenarioInput(message_text="hi", disable_tools=True))
    by_preset = await router.select_scenario(
        ScenarioInput(message_text="hi", preset=Preset(id="p", enable_tools=False))
    )
    by_scope = await router.select_scenario(
        ScenarioInput(message_text="hi", scope=ScopeSettings(features=ScopeFeatures(tools_enabled=False)))
    )

    dispatcher.dispatch.assert_not_awaited()
    for selection in (by_request, by_preset, by_scope):
        assert selection.tools == []
        assert selection.enable_tools is False


@pytest.mark.asyncio
async def test_chat_model_gets_all_tools_only_without_a_tool_model():
    without_tool_model, _ = _router(ModelDefaults(chat="chat-m"))
    with_tool_model, _ = _router(ModelDefaults(chat="chat-m", tool="tool-m"))
    groups_off, dispatcher = _router(ModelDefaults(chat="chat-m", dispatch="disp-m"), use_tool_groups=False)

    a = await without_tool_model.select_scenario(ScenarioInput(message_text="hi"))
    b = await with_tool_model.select_scenario(ScenarioInput(message_text="hi"))
    c = await groups_off.select_scenario(ScenarioInput(message_text="hi"))

    assert _names(a.tools) == ["get_current_time", "web_search"]
    assert a.enable_tools is True
    assert b.tools == []
    assert _names(c.tools) == ["get_current_time", "web_search"]
    dispatcher.dispatch.assert_not_awaited()
