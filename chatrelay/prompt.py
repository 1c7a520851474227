"""System prompt assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chatrelay.interfaces import KnowledgeProvider, MemoryProvider, PersonaResolver, PresetStore
from chatrelay.models import Preset

LOGGER = logging.getLogger(__name__)

_OVERRIDE_PREFIX = "override:"
GLOBAL_PROMPT_MODES = ("append", "prepend", "override")


@dataclass(slots=True)
class PromptInputs:
    user_id: str
    group_id: str | None = None
    message_text: str = ""
    preset: Preset | None = None
    preset_id: str | None = None
    prefix_persona: str | None = None
    skip_persona: bool = False
    user_name: str = ""
    shared_group: bool = False


@dataclass(slots=True)
class BuiltPrompt:
    text: str | None
    persona_source: str = "default"


class SystemPromptBuilder:
    """Layers persona, prefix persona, memory, knowledge and the global prompt.

    An empty result (or a preset with prompts disabled) means no system
    message is sent at all.
    """

    def __init__(
        self,
        personas: PersonaResolver | None = None,
        presets: PresetStore | None = None,
        memory: MemoryProvider | None = None,
        knowledge: KnowledgeProvider | None = None,
        *,
        global_prompt: str = "",
        global_prompt_mode: str = "append",
        bot_name: str = "Assistant",
    ) -> None:
        self._personas = personas
        self._presets = presets
        self._memory = memory
        self._knowledge = knowledge
        self._global_prompt = global_prompt.strip()
        self._global_prompt_mode = global_prompt_mode if global_prompt_mode in GLOBAL_PROMPT_MODES else "append"
        self._bot_name = bot_name

    async def build(self, inputs: PromptInputs) -> str | None:
        return (await self.build_with_source(inputs)).text

    async def build_with_source(self, inputs: PromptInputs) -> BuiltPrompt:
        if inputs.preset is not None and inputs.preset.disable_system_prompt:
            LOGGER.debug("Preset %s disables the system prompt", inputs.preset.id)
            return BuiltPrompt(text=None, persona_source="disabled")

        source = "none" if inputs.skip_persona else "default"
        prompt = ""
        knowledge_preset_id = inputs.preset_id
        if not inputs.skip_persona:
            prompt, source = self._persona(inputs)
            prompt, prefix_preset_id = self._apply_prefix(prompt, inputs.prefix_persona)
            knowledge_preset_id = prefix_preset_id or knowledge_preset_id
            prompt += await self._memory_layer(inputs)
        prompt += self._knowledge_layer(knowledge_preset_id)
        prompt = self._apply_global(prompt)

        if not prompt.strip():
            return BuiltPrompt(text=None, persona_source=source)
        if inputs.group_id:
            prompt += self._group_note(inputs)
        return BuiltPrompt(text=prompt, persona_source=source)

    def substitute(self, text: str, inputs: PromptInputs) -> str:
        values = {
            "{user_name}": inputs.user_name or f"user{inputs.user_id}",
            "{user_id}": inputs.user_id,
            "{group_id}": inputs.group_id or "",
            "{bot_name}": self._bot_name,
        }
        for placeholder, value in values.items():
            text = text.replace(placeholder, value)
        return text

    def _persona(self, inputs: PromptInputs) -> tuple[str, str]:
        default_prompt = self.substitute(inputs.preset.system_prompt, inputs) if inputs.preset else ""
        if self._personas is None:
            return default_prompt, "default"
        try:
            result = self._personas.get_independent_prompt(inputs.group_id, inputs.user_id, default_prompt)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Persona lookup failed, using preset prompt: %s", exc)
            return default_prompt, "default"
        if result.is_independent and result.prompt == "":
            LOGGER.debug("Blank persona from %s", result.source)
        return self.substitute(result.prompt, inputs), result.source

    def _apply_prefix(self, prompt: str, prefix: str | None) -> tuple[str, str | None]:
        if not prefix:
            return prompt, None
        preset = self._presets.get_preset(prefix) if self._presets is not None else None
        if preset is not None:
            return (preset.system_prompt or prompt), prefix
        if prefix.startswith(_OVERRIDE_PREFIX):
            return prefix[len(_OVERRIDE_PREFIX):].strip(), None
        return prefix + (f"\n\n{prompt}" if prompt else ""), None

    async def _memory_layer(self, inputs: PromptInputs) -> str:
        if self._memory is None:
            return ""
        try:
            memory = await self._memory.get_memory_context(inputs.user_id, inputs.message_text, inputs.group_id)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Memory context unavailable: %s", exc)
            return ""
        return f"\n\n{memory}" if memory else ""

    def _knowledge_layer(self, preset_id: str | None) -> str:
        if self._knowledge is None or not preset_id:
            return ""
        try:
            knowledge = self._knowledge.build_knowledge_prompt(preset_id)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Knowledge prompt unavailable for %s: %s", preset_id, exc)
            return ""
        return f"\n\n{knowledge}" if knowledge else ""

    def _apply_global(self, prompt: str) -> str:
        if not self._global_prompt:
            return prompt
        if self._global_prompt_mode == "override":
            return self._global_prompt
        if self._global_prompt_mode == "prepend":
            return self._global_prompt + (f"\n\n{prompt}" if prompt else "")
        return (f"{prompt}\n\n" if prompt else "") + self._global_prompt

    def _group_note(self, inputs: PromptInputs) -> str:
        label = inputs.user_name or f"user{inputs.user_id}"
        note = f"\n\n[Conversation environment]\nGroup: {inputs.group_id}\nCurrent sender: {label}({inputs.user_id})"
        if inputs.shared_group:
            note += (
                "\nYou are talking with several people in a group chat. Each user message starts with a"
                " [name(id)]: label naming its sender. Use the labels to tell people apart and answer the current sender."
            )
        return note
