"""Chat mode state machine.

The active mode decides which system prompt and which tools the model sees.
Modes with unmet prerequisites (no script editor attached, no flow helpers)
cannot be entered; the model can ask to switch modes itself through the
built-in ``change_mode`` tool, which every mode but Ask exposes.

The state proper is the frozen :class:`ModeState`; :func:`transition` is the
pure guard applied to every requested change. :class:`ModeStateMachine`
wraps it together with the per-mode prompts and tool sets, and is read
through accessors on every loop iteration so a switch made by a tool takes
effect on the very next submission.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Collection, Mapping, Protocol, Sequence

from . import prompts
from .errors import ErrorCode, ToolExecutionError
from .tools.base import FunctionTool, Tool, ToolCallbacks, ToolDefinition
from .types import Message

__all__ = [
    "AIMode",
    "ModeState",
    "ScriptEditorOptions",
    "FlowHelpers",
    "ModePrerequisites",
    "ModeToolkit",
    "ModeStateMachine",
    "CatalogueLoader",
    "CHANGE_MODE_TOOL_NAME",
    "PREPROCESSOR_MODULE_ID",
    "allowed_modes",
    "transition",
]

LOGGER = logging.getLogger(__name__)

CHANGE_MODE_TOOL_NAME = "change_mode"
PREPROCESSOR_MODULE_ID = "preprocessor"


class AIMode(str, Enum):
    SCRIPT = "script"
    FLOW = "flow"
    NAVIGATOR = "navigator"
    ASK = "ask"


# -----------------------------------------------------------------------------
# Prerequisites
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ScriptEditorOptions:
    """Attached script editor session."""

    lang: str = "bun"
    path: str | None = None
    code: str | None = None
    error: str | None = None


class FlowHelpers(Protocol):
    """Helpers exposed by an open flow editor."""

    def get_flow_and_selected_id(self) -> tuple[Any, str | None]:
        ...

    def select_step(self, module_id: str) -> None:
        ...


@dataclass(slots=True)
class ModePrerequisites:
    """External context gating the Script and Flow modes."""

    script_options: ScriptEditorOptions | None = None
    flow_helpers: FlowHelpers | None = None


def allowed_modes(prerequisites: ModePrerequisites) -> tuple[AIMode, ...]:
    """Return the modes whose prerequisites are currently met, in enum order."""
    flags = {
        AIMode.SCRIPT: prerequisites.script_options is not None,
        AIMode.FLOW: prerequisites.flow_helpers is not None,
        AIMode.NAVIGATOR: True,
        AIMode.ASK: True,
    }
    return tuple(mode for mode in AIMode if flags[mode])


# -----------------------------------------------------------------------------
# State
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModeState:
    """Current mode plus the instruction queued for its next submission."""

    mode: AIMode = AIMode.NAVIGATOR
    pending_instruction: str = ""


def transition(
    state: ModeState,
    target: AIMode,
    pending: str | None,
    allowed: Collection[AIMode],
) -> ModeState:
    """Apply a mode change request.

    A disallowed target falls back to the only allowed mode when exactly one
    exists (dropping the pending instruction, which was meant for the target);
    otherwise the request is ignored and ``state`` is returned unchanged.
    """
    if target in allowed:
        return ModeState(mode=target, pending_instruction=pending or "")
    if len(allowed) == 1:
        (fallback,) = tuple(allowed)
        return ModeState(mode=fallback)
    return state


# -----------------------------------------------------------------------------
# Toolkit
# -----------------------------------------------------------------------------

CatalogueLoader = Callable[[], Awaitable[Sequence[Tool]]]


@dataclass(slots=True)
class ModeToolkit:
    """Tool sets and prompts per mode.

    Attributes:
        script: Tools available in script mode.
        flow: Tools available in flow mode.
        navigator: Static navigator tools.
        ask: Tools available in ask mode.
        navigator_catalogue: Loader for the dynamic navigator catalogue.
        system_prompts: Optional per-mode system prompt overrides.
    """

    script: Sequence[Tool] = ()
    flow: Sequence[Tool] = ()
    navigator: Sequence[Tool] = ()
    ask: Sequence[Tool] = ()
    navigator_catalogue: CatalogueLoader | None = None
    system_prompts: Mapping[AIMode, Callable[[], str]] = field(default_factory=dict)


_DEFAULT_PROMPTS: Mapping[AIMode, Callable[[], str]] = {
    AIMode.SCRIPT: prompts.script_system_prompt,
    AIMode.FLOW: prompts.flow_system_prompt,
    AIMode.NAVIGATOR: prompts.navigator_system_prompt,
    AIMode.ASK: prompts.ask_system_prompt,
}


class ModeStateMachine:
    """Selects the active system prompt and tool set.

    Args:
        prerequisites: External context; may be mutated by the caller as
            editors attach and detach.
        toolkit: Per-mode tools and prompts.
        initial: Starting mode.
    """

    def __init__(
        self,
        prerequisites: ModePrerequisites | None = None,
        toolkit: ModeToolkit | None = None,
        *,
        initial: AIMode = AIMode.NAVIGATOR,
    ) -> None:
        self.prerequisites = prerequisites or ModePrerequisites()
        self._toolkit = toolkit or ModeToolkit()
        self._state = ModeState(mode=initial)
        self._catalogue: tuple[Tool, ...] | None = None
        self._change_mode_tool = FunctionTool(
            ToolDefinition(
                name=CHANGE_MODE_TOOL_NAME,
                description=prompts.CHANGE_MODE_DESCRIPTION,
                parameters={
                    "type": "object",
                    "properties": {
                        "mode": {
                            "type": "string",
                            "description": "The mode to change to",
                            "enum": [AIMode.SCRIPT.value, AIMode.FLOW.value, AIMode.NAVIGATOR.value],
                        },
                        "pendingPrompt": {
                            "type": "string",
                            "description": "The prompt to send to the new mode to fulfill the user request",
                            "default": "",
                        },
                    },
                    "required": ["mode"],
                },
            ),
            self._run_change_mode,
        )

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> ModeState:
        return self._state

    @property
    def mode(self) -> AIMode:
        return self._state.mode

    @property
    def pending_instruction(self) -> str:
        return self._state.pending_instruction

    def allowed_modes(self) -> tuple[AIMode, ...]:
        return allowed_modes(self.prerequisites)

    def is_allowed(self, mode: AIMode) -> bool:
        return mode in self.allowed_modes()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def change_mode(self, mode: AIMode | str, pending_instruction: str | None = None) -> AIMode:
        """Request a switch to ``mode`` and return the resulting mode."""
        target = AIMode(mode)
        previous = self._state
        self._state = transition(previous, target, pending_instruction, self.allowed_modes())
        if self._state.mode != target and self._state != previous:
            LOGGER.info("Mode %s unavailable; falling back to %s", target.value, self._state.mode.value)
        elif self._state.mode != target:
            LOGGER.info("Mode %s unavailable; request ignored", target.value)
        elif previous.mode != target:
            LOGGER.debug("Mode changed %s -> %s", previous.mode.value, target.value)
        return self._state.mode

    def update_mode(self) -> AIMode:
        """Re-apply the guard after prerequisites changed."""
        if self.is_allowed(self.mode):
            return self.mode
        allowed = self.allowed_modes()
        if len(allowed) == 1:
            self._state = ModeState(mode=allowed[0])
        return self.mode

    def take_pending_instruction(self) -> str:
        """Return the queued instruction and clear it."""
        pending = self._state.pending_instruction
        if pending:
            self._state = replace(self._state, pending_instruction="")
        return pending

    # ------------------------------------------------------------------
    # Per-mode views
    # ------------------------------------------------------------------

    @property
    def system_prompt(self) -> str:
        mode = self.mode
        builder = self._toolkit.system_prompts.get(mode) or _DEFAULT_PROMPTS[mode]
        content = builder()
        if mode in (AIMode.SCRIPT, AIMode.FLOW):
            content = prompts.MODE_SWITCH_GUIDANCE + content
        return content

    @property
    def system_message(self) -> Message:
        return Message.system(self.system_prompt)

    @property
    def tools(self) -> list[Tool]:
        mode = self.mode
        if mode is AIMode.SCRIPT:
            return [self._change_mode_tool, *self._toolkit.script]
        if mode is AIMode.FLOW:
            return [self._change_mode_tool, *self._toolkit.flow]
        if mode is AIMode.NAVIGATOR:
            return [self._change_mode_tool, *self._toolkit.navigator, *(self._catalogue or ())]
        return list(self._toolkit.ask)

    @property
    def helpers(self) -> Mapping[str, Any]:
        mode = self.mode
        if mode is AIMode.SCRIPT:
            options = self.prerequisites.script_options
            return {"lang": options.lang if options else "bun"}
        if mode is AIMode.FLOW:
            return {"flow_helpers": self.prerequisites.flow_helpers}
        return {}

    @property
    def change_mode_tool(self) -> Tool:
        return self._change_mode_tool

    @property
    def catalogue_loaded(self) -> bool:
        return self._catalogue is not None

    async def ensure_navigator_catalogue(self) -> tuple[Tool, ...]:
        """Load the dynamic navigator tools once; failures are retried next time."""
        if self._catalogue is not None:
            return self._catalogue
        loader = self._toolkit.navigator_catalogue
        if loader is None:
            self._catalogue = ()
            return self._catalogue
        try:
            loaded = tuple(await loader())
        except Exception:
            LOGGER.exception("Error loading navigator tool catalogue")
            return ()
        self._catalogue = loaded
        LOGGER.debug("Loaded %d navigator catalogue tool(s)", len(loaded))
        return loaded

    def prepare_user_message(self, instructions: str, context: Sequence[Any] = ()) -> Message:
        """Render ``instructions`` the way the current mode expects."""
        mode = self.mode
        if mode is AIMode.SCRIPT:
            options = self.prerequisites.script_options
            lang = options.lang if options else "bun"
            preprocessor = options is not None and options.path == PREPROCESSOR_MODULE_ID
            return Message.user(prompts.script_user_message(instructions, lang, context, preprocessor=preprocessor))
        if mode is AIMode.FLOW and self.prerequisites.flow_helpers is not None:
            flow, selected_id = self.prerequisites.flow_helpers.get_flow_and_selected_id()
            return Message.user(prompts.flow_user_message(instructions, flow, selected_id))
        return Message.user(prompts.navigator_user_message(instructions))

    # ------------------------------------------------------------------
    # Built-in tool
    # ------------------------------------------------------------------

    async def _run_change_mode(self, args: Mapping[str, Any], call_id: str, callbacks: ToolCallbacks) -> str:
        raw_mode = str(args.get("mode", ""))
        try:
            target = AIMode(raw_mode)
        except ValueError as exc:
            raise ToolExecutionError(
                f"Unknown mode {raw_mode!r}",
                tool_name=CHANGE_MODE_TOOL_NAME,
                call_id=call_id,
                error_code=ErrorCode.INVALID_ARGUMENTS,
            ) from exc
        callbacks.set_status(call_id, f"Switching to {target.value} mode...")
        result = self.change_mode(target, str(args.get("pendingPrompt") or ""))
        if result is not target:
            callbacks.set_status(call_id, f"Could not switch to {target.value} mode")
            return f"Mode {target.value} is not available, current mode is {result.value}"
        if result is AIMode.NAVIGATOR:
            await self.ensure_navigator_catalogue()
        callbacks.set_status(call_id, f"Switched to {target.value} mode")
        return f"Mode changed to {target.value}"
