"""Prompt templates for each chat mode.

System prompts are plain functions so callers can swap them per mode. User
message builders render the instructions together with whatever context the
caller attached (opaque elements, rendered via ``str``/JSON).
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

__all__ = [
    "MODE_SWITCH_GUIDANCE",
    "INLINE_CHAT_SYSTEM_PROMPT",
    "FIX_INSTRUCTIONS",
    "CHANGE_MODE_DESCRIPTION",
    "script_system_prompt",
    "flow_system_prompt",
    "navigator_system_prompt",
    "ask_system_prompt",
    "script_user_message",
    "flow_user_message",
    "navigator_user_message",
    "render_context_element",
]


MODE_SWITCH_GUIDANCE = """
CONSIDERATIONS:
 - You are provided with a tool to switch to navigation mode, only use it when you are sure that the user is asking you to navigate the application, help them find something or fetch data from the API. Do not use it otherwise.
"""

CHANGE_MODE_DESCRIPTION = (
    "Change the AI mode to the one specified. Script mode is used to create scripts, and flow "
    "mode is used to create flows. Navigator mode is used to navigate the application and help "
    "the user find what they are looking for."
)

INLINE_CHAT_SYSTEM_PROMPT = """You are a coding assistant editing a selected piece of code inline.
You receive the user instructions and the selected lines as context.
Answer ONLY with the full replacement for the selected lines, wrapped in <new_code></new_code> tags.
Do not add explanations outside of the tags and do not wrap the code in markdown fences."""

FIX_INSTRUCTIONS = "Fix the error"

_PREPROCESSOR_NOTE = (
    "The script is the flow preprocessor: it runs before the flow and its return value "
    "becomes the flow input."
)


def script_system_prompt() -> str:
    """System prompt for editing a single script."""
    return """You are a coding assistant helping the user write and fix a script.
Use the provided context (code, errors, database schemas, diffs) to answer precisely.
When you propose code, return the complete script inside a single fenced code block in the script language.
Keep explanations short and focused on what changed."""


def flow_system_prompt() -> str:
    """System prompt for editing a workflow."""
    return """You are a helpful assistant that creates and edits workflows composed of steps.
Use the provided tools to inspect, add, remove and modify steps of the current flow.
Always inspect the current flow before editing it and apply one coherent change at a time.
Only describe the changes you actually applied with the tools."""


def navigator_system_prompt() -> str:
    """System prompt for navigating the application and querying its API."""
    return """You are a navigation assistant. You help the user find their way around the application,
locate resources and fetch data through the available API tools.
Prefer calling a tool over guessing; summarise tool results briefly for the user.
If the user asks you to write a script or build a flow, switch to the matching mode."""


def ask_system_prompt() -> str:
    """System prompt for documentation questions."""
    return """You answer questions about the platform and its documentation.
Use the documentation search tool when unsure and cite what you found.
You cannot modify scripts or flows in this mode."""


# -----------------------------------------------------------------------------
# User Messages
# -----------------------------------------------------------------------------


def render_context_element(element: Any) -> str:
    """Render an opaque context element for inclusion in a prompt."""
    if isinstance(element, str):
        return element
    if isinstance(element, Mapping):
        title = element.get("title") or element.get("type") or "context"
        content = element.get("content")
        if isinstance(content, str):
            return f"{title}:\n{content}"
        return f"{title}:\n{json.dumps(dict(element), ensure_ascii=False, default=str)}"
    return str(element)


def script_user_message(
    instructions: str,
    lang: str,
    context: Sequence[Any] = (),
    *,
    preprocessor: bool = False,
) -> str:
    """Build the user message for script mode."""
    parts = [f"LANGUAGE: {lang}"]
    if preprocessor:
        parts.append(_PREPROCESSOR_NOTE)
    for element in context:
        parts.append(render_context_element(element))
    parts.append(f"INSTRUCTIONS:\n{instructions}")
    return "\n\n".join(parts)


def flow_user_message(instructions: str, flow: Any = None, selected_id: str | None = None) -> str:
    """Build the user message for flow mode."""
    parts = [f"## INSTRUCTIONS:\n{instructions}"]
    if flow is not None:
        parts.append(f"## CURRENT FLOW:\n{json.dumps(flow, ensure_ascii=False, default=str)}")
    if selected_id:
        parts.append(f"## SELECTED STEP:\n{selected_id}")
    return "\n\n".join(parts)


def navigator_user_message(instructions: str) -> str:
    """Build the user message for navigator and ask modes."""
    return f"USER REQUEST: {instructions}"
