"""Chat session: the conversation store plus the request lifecycle.

A :class:`ChatSession` owns both conversation logs and runs one request at a
time through the :class:`~copilot_chat.ai.dispatch.ToolDispatchLoop`. It also
acts as the display callbacks of that loop: streamed tokens accumulate in
``current_reply`` and become assistant rows when a segment ends, and tool
progress is shown as tool rows keyed by call id.
"""

from __future__ import annotations

import inspect
import logging
import re
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..ai import prompts
from ..ai.budget import DEFAULT_TRIM_DEPTH, trim_history
from ..ai.cancellation import CancellationController
from ..ai.client import OpenAICompletionService
from ..ai.dispatch import DEFAULT_MAX_ITERATIONS, CompletionService, NullCallbacks, ToolDispatchLoop
from ..ai.errors import ChatRuntimeError, ErrorCode, ValidationError
from ..ai.modes import AIMode, ModePrerequisites, ModeStateMachine, ModeToolkit, ScriptEditorOptions
from ..ai.types import Message
from ..services.settings import DEFAULT_CONTEXT_WINDOW, ChatSettings, SettingsStore
from .conversation import (
    ConversationState,
    DisplayMessage,
    append_display,
    begin_turn,
    clear_error,
    flag_last_user_error,
    fold_reply,
    set_tool_status,
    truncate_for_restart,
)
from .history import HistoryStore, InMemoryHistoryStore, JsonHistoryStore
from .interfaces import ContextProvider, LoggingNotifier, Notifier, StaticContextProvider

__all__ = ["ChatSession", "extract_new_code"]

LOGGER = logging.getLogger(__name__)

_NEW_CODE_PATTERN = re.compile(r"<new_code>(.*?)</new_code>", re.DOTALL)
_FENCE_PATTERN = re.compile(r"^```[\w+-]*\s*\n?|\n?```\s*$")


class ChatSession:
    """Conversation store and request runner for one chat panel.

    Args:
        completion_service: Transport used for every request.
        modes: Mode state machine; built from ``prerequisites``/``toolkit``
            when omitted.
        history: Persistence for finished and in-progress chats.
        context_provider: Source of the context attached to each send.
        notifier: Sink for user-facing failure notifications.
        context_window: Model context window in tokens, used for trimming.
        max_iterations: Cap on model submissions per request.
        trim_depth: Maximum eviction steps per trim.
    """

    def __init__(
        self,
        completion_service: CompletionService,
        *,
        modes: ModeStateMachine | None = None,
        prerequisites: ModePrerequisites | None = None,
        toolkit: ModeToolkit | None = None,
        history: HistoryStore | None = None,
        context_provider: ContextProvider | None = None,
        notifier: Notifier | None = None,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        trim_depth: int = DEFAULT_TRIM_DEPTH,
    ) -> None:
        self._completion_service = completion_service
        self._modes = modes or ModeStateMachine(prerequisites, toolkit)
        self._loop = ToolDispatchLoop(completion_service, self._modes, max_iterations=max_iterations)
        self._history: HistoryStore = history or InMemoryHistoryStore()
        self._context_provider: ContextProvider = context_provider or StaticContextProvider()
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._context_window = context_window
        self._trim_depth = trim_depth
        self._cancellation = CancellationController()
        self._state = ConversationState()
        self._loading = False
        self._current_reply = ""

    @classmethod
    def from_settings(
        cls,
        settings: ChatSettings,
        *,
        prerequisites: ModePrerequisites | None = None,
        toolkit: ModeToolkit | None = None,
        context_provider: ContextProvider | None = None,
        notifier: Notifier | None = None,
        completion_service: CompletionService | None = None,
    ) -> ChatSession:
        """Build a session wired to the OpenAI transport and JSON history."""
        service = completion_service or OpenAICompletionService(settings.to_client_settings())
        history = JsonHistoryStore(settings.history_path(), max_chats=settings.max_saved_chats)
        return cls(
            service,
            prerequisites=prerequisites,
            toolkit=toolkit,
            history=history,
            context_provider=context_provider,
            notifier=notifier,
            context_window=settings.resolved_context_window(),
            max_iterations=settings.max_tool_iterations,
            trim_depth=settings.trim_depth,
        )

    @classmethod
    def from_config(
        cls,
        path: Path | None = None,
        *,
        overrides: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> ChatSession:
        """Load settings from ``path`` (or the default file) and build a session.

        Remaining keyword arguments are forwarded to :meth:`from_settings`.
        """
        settings = SettingsStore(path).load(overrides=overrides)
        return cls.from_settings(settings, **kwargs)

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def display_messages(self) -> tuple[DisplayMessage, ...]:
        return self._state.display

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._state.messages

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def current_reply(self) -> str:
        return self._current_reply

    @property
    def mode(self) -> AIMode:
        return self._modes.mode

    @property
    def modes(self) -> ModeStateMachine:
        return self._modes

    @property
    def history(self) -> HistoryStore:
        return self._history

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send(
        self,
        text: str | None = None,
        *,
        mode: AIMode | str | None = None,
        context: Sequence[Any] | None = None,
    ) -> None:
        """Send a user turn and run it to completion.

        ``text=None`` sends the pending instruction queued by
        :meth:`switch_mode`. Failures of the request itself are reported on the
        turn and through the notifier; they are not raised.

        Raises:
            ValidationError: The session is busy, the instructions are empty or
                the requested mode is unavailable. No turn is started.
        """
        self._ensure_idle()
        target = AIMode(mode) if mode is not None else self._modes.mode
        instructions = self._modes.pending_instruction if text is None else text
        self._validate(instructions, target)
        if target is not self._modes.mode:
            self._modes.change_mode(target)
        if text is None:
            self._modes.take_pending_instruction()
        instructions = instructions.strip()

        elements = list(context) if context is not None else self._context_provider.selected_context()
        user_message = self._modes.prepare_user_message(instructions, elements)
        self._state = begin_turn(
            self._state,
            instructions,
            user_message,
            context_elements=elements,
            snapshot=self._flow_snapshot(),
        )
        self._history.save_chat(self._state.display, self._state.messages)

        token = self._cancellation.begin()
        self._loading = True
        self._current_reply = ""
        try:
            request = trim_history(self._state.messages, self._context_window, max_depth=self._trim_depth)
            if self._modes.mode is AIMode.NAVIGATOR:
                await self._modes.ensure_navigator_catalogue()
            added = await self._loop.run(request, token, self)
            self._state = fold_reply(self._state, added)
            if token.cancelled:
                LOGGER.info("Chat request cancelled; kept %d message(s) from the reply", len(added))
        except ChatRuntimeError as exc:
            LOGGER.warning("Chat request failed: %s", exc.to_dict())
            self._fail_turn(exc)
        except Exception as exc:
            LOGGER.exception("Chat request failed unexpectedly")
            self._fail_turn(exc)
        finally:
            self._loading = False
            self._current_reply = ""
            self._cancellation.release(token)
            self._history.save_chat(self._state.display, self._state.messages)

    async def restart(self, display_index: int, new_text: str | None = None) -> None:
        """Rewind to the user turn at ``display_index`` and send it again.

        Args:
            display_index: Position of a user row in :attr:`display_messages`.
            new_text: Replacement instructions; the original text when omitted.

        Raises:
            ValidationError: The row is not a user turn, the replacement is
                empty, the current mode is unavailable or the session is
                busy. Both logs are left untouched.
            ConversationIntegrityError: The turn's canonical link is broken.
        """
        self._ensure_idle()
        truncated, entry = truncate_for_restart(self._state, display_index)
        text = entry.content if new_text is None else new_text
        self._validate(text, self._modes.mode)
        LOGGER.debug(
            "Restarting from display turn %d (canonical %s -> %d message(s))",
            display_index,
            entry.index,
            len(truncated.messages),
        )
        self._state = truncated
        context = list(entry.context_elements) if entry.context_elements is not None else None
        await self.send(text, context=context)

    async def retry(self, display_index: int) -> None:
        """Send the user turn at ``display_index`` again with its original text."""
        self._ensure_idle()
        previous = self._state
        self._state = clear_error(self._state, display_index)
        try:
            await self.restart(display_index)
        except ValidationError:
            self._state = previous
            raise

    async def generate_step(self, module_id: str, lang: str, instructions: str) -> None:
        """Select flow step ``module_id`` and generate its code in script mode.

        The step's script editor is attached with ``lang`` when the host has
        not attached one yet.

        Raises:
            ValidationError: No flow is open, the instructions are empty or
                the session is busy.
        """
        self._ensure_idle()
        self._validate(instructions, AIMode.FLOW)
        prerequisites = self._modes.prerequisites
        prerequisites.flow_helpers.select_step(module_id)
        if prerequisites.script_options is None:
            prerequisites.script_options = ScriptEditorOptions(lang=lang, path=module_id)
        await self.send(instructions, mode=AIMode.SCRIPT)

    async def fix(self) -> None:
        """Ask for a fix of the error reported by the script editor."""
        self._ensure_idle()
        self._validate(prompts.FIX_INSTRUCTIONS, AIMode.SCRIPT)
        options = self._modes.prerequisites.script_options
        context: list[Any] = []
        if options.error:
            context.append({"type": "error", "title": "error", "content": options.error})
        if options.code:
            context.append({"type": "code", "title": options.path or "code", "content": options.code})
        await self.send(prompts.FIX_INSTRUCTIONS, mode=AIMode.SCRIPT, context=context)

    def cancel(self) -> bool:
        """Cancel the in-flight request, if any."""
        return self._cancellation.cancel("Cancelled by user")

    def switch_mode(self, mode: AIMode | str, pending_text: str | None = None) -> AIMode:
        """Change the active mode, optionally queueing an instruction for it."""
        return self._modes.change_mode(mode, pending_text)

    def clear_and_save(self) -> None:
        """Archive the current chat and start an empty one."""
        self._ensure_idle()
        self._history.save(self._state.display, self._state.messages)
        self._state = ConversationState()
        self._current_reply = ""
        LOGGER.debug("Chat cleared")

    def load_past_chat(self, chat_id: str) -> None:
        """Archive the current chat and restore ``chat_id`` in its place.

        Raises:
            ValidationError: The session is busy or no such chat exists.
        """
        self._ensure_idle()
        self._history.save(self._state.display, self._state.messages)
        chat = self._history.load_by_id(chat_id)
        if chat is None:
            raise ValidationError(
                f"Chat {chat_id!r} not found",
                error_code=ErrorCode.CHAT_NOT_FOUND,
                chat_id=chat_id,
            )
        self._state = ConversationState(display=tuple(chat.display), messages=tuple(chat.messages))
        self._current_reply = ""
        LOGGER.debug("Loaded chat %s with %d message(s)", chat_id, len(chat.messages))

    async def send_inline_request(
        self,
        instructions: str,
        selected_code: str,
        start_line: int,
        end_line: int,
    ) -> str | None:
        """Ask for a replacement of ``selected_code`` without touching the chat logs.

        Returns:
            The replacement code, or ``None`` when the request was cancelled.

        Raises:
            ValidationError: Empty instructions, a busy session, or a reply
                without usable code.
            TransportError: The completion request failed.
        """
        self._ensure_idle()
        instructions = instructions.strip()
        if not instructions:
            raise ValidationError("Instructions are required", error_code=ErrorCode.EMPTY_INSTRUCTIONS)

        options = self._modes.prerequisites.script_options
        code_piece = {
            "type": "code_piece",
            "title": f"L{start_line}-L{end_line}",
            "content": selected_code,
            "startLine": start_line,
            "endLine": end_line,
        }
        user_message = Message.user(
            prompts.script_user_message(instructions, options.lang if options else "bun", [code_piece])
        )

        token = self._cancellation.begin()
        self._loading = True
        try:
            added = await self._loop.run(
                [user_message],
                token,
                NullCallbacks(),
                system_prompt=prompts.INLINE_CHAT_SYSTEM_PROMPT,
                tools=(),
            )
        finally:
            self._loading = False
            self._cancellation.release(token)

        if token.cancelled:
            LOGGER.debug("Inline request cancelled")
            return None
        reply = "".join(message.content for message in added if message.role == "assistant")
        if not reply.strip():
            raise ValidationError("No response from AI", error_code=ErrorCode.INVALID_RESPONSE)
        return extract_new_code(reply)

    async def aclose(self) -> None:
        """Cancel any active request and close the completion service."""
        self.cancel()
        close = getattr(self._completion_service, "aclose", None)
        if callable(close):
            result = close()
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Display callbacks
    # ------------------------------------------------------------------

    def on_token(self, token: str) -> None:
        self._current_reply += token

    def on_message_end(self) -> None:
        """Turn the streamed reply into an assistant row."""
        if self._current_reply:
            self._state = append_display(
                self._state,
                DisplayMessage(role="assistant", content=self._current_reply),
            )
        self._current_reply = ""

    def set_status(self, call_id: str, text: str) -> None:
        self._state = set_tool_status(self._state, call_id, text)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        if self._loading:
            raise ValidationError("A request is already in progress", error_code=ErrorCode.SESSION_BUSY)

    def _validate(self, instructions: str, mode: AIMode) -> None:
        if not instructions.strip():
            raise ValidationError("Instructions are required", error_code=ErrorCode.EMPTY_INSTRUCTIONS)
        prerequisites = self._modes.prerequisites
        if mode is AIMode.SCRIPT and prerequisites.script_options is None:
            raise ValidationError(
                "No script is open in the editor",
                error_code=ErrorCode.MODE_UNAVAILABLE,
                mode=mode.value,
            )
        if mode is AIMode.FLOW and prerequisites.flow_helpers is None:
            raise ValidationError(
                "No flow is open in the editor",
                error_code=ErrorCode.MODE_UNAVAILABLE,
                mode=mode.value,
            )

    def _flow_snapshot(self) -> Any:
        helpers = self._modes.prerequisites.flow_helpers
        if self._modes.mode is not AIMode.FLOW or helpers is None:
            return None
        flow, _selected = helpers.get_flow_and_selected_id()
        return flow

    def _fail_turn(self, exc: Exception) -> None:
        self._state = flag_last_user_error(self._state)
        self._notifier.notify(f"Failed to send request: {exc}", is_error=True)


def extract_new_code(reply: str) -> str:
    """Pull the replacement code out of an inline-edit reply.

    The code normally sits between ``<new_code>`` tags. A reply cut short
    before the closing tag falls back to everything after the last opening
    tag, with markdown fences stripped.

    Raises:
        ValidationError: No code could be found.
    """
    match = _NEW_CODE_PATTERN.search(reply)
    if match is not None:
        code = match.group(1)
    elif "<new_code>" in reply:
        code = _FENCE_PATTERN.sub("", reply.rsplit("<new_code>", 1)[1].strip())
    else:
        raise ValidationError("No code found in the response", error_code=ErrorCode.INVALID_RESPONSE)
    code = code.strip("\n")
    if not code.strip():
        raise ValidationError("The response contained empty code", error_code=ErrorCode.INVALID_RESPONSE)
    return code
