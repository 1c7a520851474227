"""Scenario and model-slot selection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from chatrelay.config import Settings
from chatrelay.dispatch import ToolDispatcher
from chatrelay.models import DispatchResult, Preset, Scenario, ScopeSettings
from chatrelay.tools.groups import ToolGroupCatalog
from chatrelay.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ModelDefaults:
    """Globally configured model per scenario; empty strings mean unset."""

    default: str = ""
    chat: str = ""
    tool: str = ""
    dispatch: str = ""
    image: str = ""
    draw: str = ""
    search: str = ""
    roleplay: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelDefaults:
        return cls(
            default=settings.default_model,
            chat=settings.chat_model,
            tool=settings.tool_model,
            dispatch=settings.dispatch_model,
            image=settings.image_model,
            draw=settings.draw_model,
            search=settings.search_model,
            roleplay=settings.roleplay_model,
        )


@dataclass(slots=True)
class ScenarioInput:
    message_text: str = ""
    has_images: bool = False
    explicit_model: str | None = None
    preset: Preset | None = None
    scope: ScopeSettings = field(default_factory=ScopeSettings)
    mode: str = "chat"
    disable_tools: bool = False
    context_summary: str = ""


@dataclass(slots=True)
class ScenarioSelection:
    model: str
    enable_tools: bool
    tools: list[dict[str, Any]]
    scenario: Scenario
    dispatch: DispatchResult | None = None


class ScenarioRouter:
    """Picks the model slot for a request and whether tools ride along.

    A distinct tool model is the signal that the chat model should never see
    tools; without one the chat model gets the full tool set.
    """

    def __init__(
        self,
        defaults: ModelDefaults,
        tool_registry: ToolRegistry,
        catalog: ToolGroupCatalog,
        dispatcher: ToolDispatcher | None = None,
        *,
        tools_enabled: bool = True,
        use_tool_groups: bool = True,
    ) -> None:
        self._defaults = defaults
        self._tool_registry = tool_registry
        self._catalog = catalog
        self._dispatcher = dispatcher
        self._tools_enabled = tools_enabled
        self._use_tool_groups = use_tool_groups

    def generic_model(self, scope: ScopeSettings | None = None) -> str:
        features = scope.features if scope is not None else None
        return (features.chat_model if features and features.chat_model else "") or self._defaults.chat or self._defaults.default

    def slot_model(self, scenario: Scenario, scope: ScopeSettings | None = None) -> str:
        """Scope feature, then global per-scenario setting, then the generic default."""

        feature = _scope_slot(scenario, scope)
        if feature:
            return feature
        configured = getattr(self._defaults, scenario.value, "")
        return configured or self.generic_model(scope)

    def chat_model(self, inp: ScenarioInput) -> str:
        """Explicit override, preset model, scope model, scope chat feature, global default."""

        if inp.explicit_model:
            return inp.explicit_model
        if inp.preset is not None and inp.preset.model:
            return inp.preset.model
        if inp.scope.model_id:
            return inp.scope.model_id
        return self.generic_model(inp.scope)

    def tools_permitted(self, inp: ScenarioInput) -> bool:
        if not self._tools_enabled or inp.disable_tools:
            return False
        if inp.preset is not None and not inp.preset.enable_tools:
            return False
        return inp.scope.features.tools_enabled is not False

    def has_tool_model(self, scope: ScopeSettings) -> bool:
        return bool(scope.features.tool_model or self._defaults.tool)

    def dispatch_model(self, scope: ScopeSettings) -> str:
        # No generic fallback: dispatch only runs when a dispatch model is configured.
        return scope.features.dispatch_model or self._defaults.dispatch

    async def select_scenario(self, inp: ScenarioInput) -> ScenarioSelection:
        permitted = self.tools_permitted(inp)

        if inp.explicit_model:
            tools = self._all_tools() if permitted else []
            return ScenarioSelection(inp.explicit_model, bool(tools), tools, Scenario.CHAT)

        if inp.has_images:
            tools = self._all_tools() if permitted and not self.has_tool_model(inp.scope) else []
            model = self.slot_model(Scenario.IMAGE, inp.scope)
            LOGGER.debug("Image request routed to %s (tools=%d)", model, len(tools))
            return ScenarioSelection(model, bool(tools), tools, Scenario.IMAGE)

        roleplay = _scope_slot(Scenario.ROLEPLAY, inp.scope) or self._defaults.roleplay
        if inp.mode == Scenario.ROLEPLAY.value and roleplay:
            return ScenarioSelection(roleplay, False, [], Scenario.ROLEPLAY)

        dispatch_model = self.dispatch_model(inp.scope)
        if permitted and self._use_tool_groups and self._dispatcher is not None and dispatch_model and inp.message_text:
            plan = await self._dispatcher.dispatch(inp.message_text, inp.context_summary, model=dispatch_model)
            if plan.is_multi_task():
                LOGGER.info("Dispatch produced %d tasks (%s)", len(plan.tasks), plan.execution_mode.value)
                return ScenarioSelection(self.chat_model(inp), False, [], Scenario.DISPATCH, dispatch=plan)
            if plan.tool_group_indexes:
                tools = self._catalog.tools_by_group_indexes(plan.tool_group_indexes)
                model = inp.scope.features.tool_model or self._defaults.tool or self.chat_model(inp)
                return ScenarioSelection(model, bool(tools), tools, Scenario.TOOL, dispatch=plan)
            return ScenarioSelection(self.chat_model(inp), False, [], Scenario.CHAT, dispatch=plan)

        tools = self._all_tools() if permitted and not self.has_tool_model(inp.scope) else []
        return ScenarioSelection(self.chat_model(inp), bool(tools), tools, Scenario.CHAT)

    def _all_tools(self) -> list[dict[str, Any]]:
        if not self._catalog.summary(include_disabled=True):
            return self._tool_registry.list_tool_specs()
        return self._catalog.tools_by_group_indexes(self._catalog.all_indexes())


def _scope_slot(scenario: Scenario, scope: ScopeSettings | None) -> str:
    if scope is None:
        return ""
    return getattr(scope.features, f"{scenario.value}_model", None) or ""
