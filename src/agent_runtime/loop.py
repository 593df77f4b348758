"""Agent loop: request, stream, run tools, repeat until done or aborted."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

from .config import (
    DEFAULT_MAX_INPUT_TOKENS,
    DEFAULT_MAX_ITERATIONS,
    EVENT_QUEUE_SIZE,
    MAX_NO_COMPLETION_RESPONSES,
    PROGRESS_UPDATE_INTERVAL,
    REPEATED_TOOL_CALL_THRESHOLD,
    REPEATED_TOOL_CALL_WINDOW,
    RuntimeSettings,
    clamp_max_iterations,
)
from .context_summary import maybe_compact
from .errors import AgentRuntimeError, CancellationError
from .llm import ProviderRegistry, get_default_registry
from .models import (
    ChatMessage,
    ChatMessageRole,
    ChatRequestOptions,
    HistoryEntry,
    TextDelta,
    TextPart,
    ThinkingDelta,
    ToolUseEvent,
    ToolUsePart,
)
from .prompts import (
    COMPLETION_MARKER,
    ITERATION_LIMIT_NOTE,
    NUDGE_MESSAGE,
    REPETITION_NOTE,
    SILENCE_MESSAGE,
    get_default_system_prompt,
)
from .tool_gateway import ToolGateway
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"\s*" + re.escape(COMPLETION_MARKER) + r"\s*")


class LoopState(str, Enum):
    REQUESTING = "requesting"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    NUDGING = "nudging"
    DONE = "done"
    ABORTED = "aborted"


class AbortReason(str, Enum):
    SILENCE = "silence"
    REPETITION = "repetition"
    ITERATION_LIMIT = "iteration-limit"
    CANCELED = "canceled"
    PROVIDER_ERROR = "provider-error"
    INTERNAL_ERROR = "internal-error"


ProgressKind = Literal["markdown", "thinking", "warning"]


@dataclass
class Progress:
    """One user-visible update: a markdown or thinking delta, or a warning."""

    kind: ProgressKind
    content: str


ProgressCallback = Callable[[Progress], None]


@dataclass
class LoopOptions:
    """Options for the agent loop."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_interval: float = PROGRESS_UPDATE_INTERVAL
    event_queue_size: int = EVENT_QUEUE_SIZE
    # Tool id -> False disables that tool for this invocation.
    user_selected_tools: dict[str, bool] | None = None
    temperature: float | None = None
    system_prompt_path: Path | None = None
    session_id: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        self.max_iterations = clamp_max_iterations(self.max_iterations)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, **overrides) -> LoopOptions:
        values = {
            "max_iterations": settings.max_iterations,
            "progress_interval": settings.progress_interval,
            "event_queue_size": settings.event_queue_size,
            "system_prompt_path": settings.system_prompt_path,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class LoopResult:
    """Outcome of one invocation. Always returned, never raised."""

    state: LoopState
    abort_reason: AbortReason | None = None
    iterations: int = 0
    text: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    progress: list[Progress] = field(default_factory=list)
    tool_invocations: int = 0
    error: str | None = None

    @property
    def reply(self) -> str:
        """All markdown shown to the user, concatenated."""
        return "".join(p.content for p in self.progress if p.kind == "markdown")


def strip_completion_marker(text: str) -> str:
    return _MARKER_RE.sub(" ", text).strip()


def streaming_display(text: str) -> str:
    """Display text mid-stream: marker removed, and a partially streamed marker withheld."""
    visible = _MARKER_RE.sub(" ", text).lstrip()
    for k in range(min(len(COMPLETION_MARKER) - 1, len(visible)), 0, -1):
        if visible.endswith(COMPLETION_MARKER[:k]):
            visible = visible[:-k]
            break
    return visible.rstrip()


def tool_call_key(call: ToolUsePart) -> str:
    return f"{call.name}:{json.dumps(call.parameters, sort_keys=True)}"


class _DeltaThrottle:
    """Emit growing text as deltas: first chunk at once, then at most once per interval."""

    def __init__(self, emit: Callable[[str], None], interval: float, clock: Callable[[], float]) -> None:
        self._emit = emit
        self._interval = interval
        self._clock = clock
        self._last: float | None = None
        self.emitted = 0

    def update(self, full: str) -> None:
        if len(full) <= self.emitted:
            return
        now = self._clock()
        if self._last is not None and now - self._last < self._interval:
            return
        self._emit(full[self.emitted:])
        self.emitted = len(full)
        self._last = now

    def flush(self, full: str) -> None:
        if len(full) > self.emitted:
            self._emit(full[self.emitted:])
            self.emitted = len(full)


@dataclass
class _Turn:
    text: str = ""
    thinking: str = ""
    display: str = ""
    tool_calls: list[ToolUsePart] = field(default_factory=list)
    shown: bool = False
    canceled: bool = False
    error: AgentRuntimeError | None = None


class AgentLoop:
    """
    Drives one model through the tool-calling loop.

    States: REQUESTING -> STREAMING -> (EXECUTING_TOOLS | NUDGING) -> REQUESTING,
    ending in DONE or ABORTED(reason). ``run`` always returns a LoopResult.
    """

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        tools: ToolRegistry | None = None,
        *,
        options: LoopOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry or get_default_registry()
        self.tools = tools or ToolRegistry()
        self.gateway = ToolGateway(self.tools)
        self.options = options or LoopOptions()
        self._clock = clock

    async def run(
        self,
        messages: list[ChatMessage],
        model_id: str,
        *,
        progress: ProgressCallback | None = None,
        cancellation: asyncio.Event | None = None,
        options: LoopOptions | None = None,
    ) -> LoopResult:
        """Run the loop over a copy of ``messages``."""
        opts = options or self.options
        result = LoopResult(state=LoopState.REQUESTING, messages=list(messages))

        def report(kind: ProgressKind, content: str) -> None:
            item = Progress(kind=kind, content=content)
            result.progress.append(item)
            if progress is not None:
                progress(item)

        logger.info("Agent loop starting: model=%s messages=%d", model_id, len(messages))
        try:
            await self._drive(result, model_id, opts, report, cancellation)
        except Exception as exc:
            logger.exception("Agent loop failed")
            report("warning", f"Something went wrong: {exc}")
            self._abort(result, AbortReason.INTERNAL_ERROR, str(exc))
        logger.info(
            "Agent loop finished after %d iteration(s): %s%s",
            result.iterations,
            result.state.value,
            f" ({result.abort_reason.value})" if result.abort_reason else "",
        )
        return result

    async def run_turn(
        self,
        message: str,
        model_id: str,
        *,
        history: Iterable[HistoryEntry] = (),
        system_prompt: str | None = None,
        progress: ProgressCallback | None = None,
        cancellation: asyncio.Event | None = None,
        options: LoopOptions | None = None,
    ) -> LoopResult:
        """Compact ``history`` if needed, then run the loop on [system, history, message]."""
        opts = options or self.options
        try:
            max_input = self.registry.get(model_id).input_token_limit
        except AgentRuntimeError:
            max_input = DEFAULT_MAX_INPUT_TOKENS

        system = ChatMessage.text(
            ChatMessageRole.SYSTEM, system_prompt or get_default_system_prompt(opts.system_prompt_path)
        )
        user = ChatMessage.text(ChatMessageRole.USER, message)
        entries = await maybe_compact(
            list(history),
            model_id,
            max_input,
            cancellation,
            registry=self.registry,
            extra_messages=[system, user],
        )
        messages = [system, *(m for entry in entries for m in entry.to_messages()), user]
        return await self.run(messages, model_id, progress=progress, cancellation=cancellation, options=opts)

    # -- state machine ------------------------------------------------------

    @staticmethod
    def _abort(result: LoopResult, reason: AbortReason, error: str | None = None) -> None:
        result.state = LoopState.ABORTED
        result.abort_reason = reason
        result.error = error

    async def _drive(
        self,
        result: LoopResult,
        model_id: str,
        opts: LoopOptions,
        report: Callable[[ProgressKind, str], None],
        cancellation: asyncio.Event | None,
    ) -> None:
        conversation = result.messages
        try:
            model = self.registry.get(model_id)
        except AgentRuntimeError as exc:
            report("warning", str(exc))
            self._abort(result, AbortReason.PROVIDER_ERROR, str(exc))
            return

        no_completion = 0
        ever_shown = False
        recent_keys: deque[str] = deque(maxlen=REPEATED_TOOL_CALL_WINDOW)

        while True:
            if cancellation is not None and cancellation.is_set():
                self._abort(result, AbortReason.CANCELED)
                return
            if result.iterations >= opts.max_iterations:
                logger.warning("Agent stopped: reached maximum iterations (%d)", opts.max_iterations)
                report("markdown", ITERATION_LIMIT_NOTE)
                self._abort(result, AbortReason.ITERATION_LIMIT)
                return

            result.iterations += 1
            result.state = LoopState.REQUESTING
            tools = self.tools.tools_for_model(model, opts.user_selected_tools)
            logger.info(
                "Iteration %d: %d messages, %d tools", result.iterations, len(conversation), len(tools)
            )

            result.state = LoopState.STREAMING
            turn = await self._stream_turn(conversation, model_id, tools, opts, report, cancellation)
            ever_shown = ever_shown or turn.shown
            result.text = turn.display

            if isinstance(turn.error, CancellationError) or turn.canceled:
                self._abort(result, AbortReason.CANCELED)
                return
            if turn.error is not None:
                report("warning", str(turn.error))
                self._abort(result, AbortReason.PROVIDER_ERROR, str(turn.error))
                return

            # Keep the raw text, marker included, as model context.
            parts: list = [TextPart(value=turn.text)] if turn.text else []
            parts.extend(turn.tool_calls)
            if parts:
                conversation.append(ChatMessage(role=ChatMessageRole.ASSISTANT, content=parts))

            if not turn.tool_calls:
                if COMPLETION_MARKER in turn.text:
                    logger.info("Agent completed: received %s", COMPLETION_MARKER)
                    result.state = LoopState.DONE
                    return
                no_completion += 1
                if no_completion >= MAX_NO_COMPLETION_RESPONSES:
                    logger.warning("Agent stopped: %d responses without %s", no_completion, COMPLETION_MARKER)
                    if not ever_shown:
                        report("markdown", SILENCE_MESSAGE)
                    self._abort(result, AbortReason.SILENCE)
                    return
                logger.info("No tool calls and no %s; sending nudge", COMPLETION_MARKER)
                result.state = LoopState.NUDGING
                conversation.append(ChatMessage.text(ChatMessageRole.USER, NUDGE_MESSAGE))
                continue

            no_completion = 0
            keys = [tool_call_key(call) for call in turn.tool_calls]
            recent_keys.extend(keys)
            repeats = recent_keys.count(keys[0])
            if repeats >= REPEATED_TOOL_CALL_THRESHOLD:
                logger.warning("Repeated tool call detected (%dx): %s. Stopping.", repeats, keys[0])
                report("markdown", REPETITION_NOTE)
                self._abort(result, AbortReason.REPETITION)
                return

            result.state = LoopState.EXECUTING_TOOLS
            logger.info("Executing %d tool call(s)", len(turn.tool_calls))
            phase = await self.gateway.execute(
                turn.tool_calls,
                cancellation,
                session_id=opts.session_id,
                request_id=opts.request_id,
                user_selected_tools=opts.user_selected_tools,
            )
            result.tool_invocations += len(turn.tool_calls)
            conversation.extend(phase.to_messages())

    async def _stream_turn(
        self,
        conversation: list[ChatMessage],
        model_id: str,
        tools: list[dict],
        opts: LoopOptions,
        report: Callable[[ProgressKind, str], None],
        cancellation: asyncio.Event | None,
    ) -> _Turn:
        turn = _Turn()
        text_out = _DeltaThrottle(lambda d: report("markdown", d), opts.progress_interval, self._clock)
        thinking_out = _DeltaThrottle(lambda d: report("thinking", d), opts.progress_interval, self._clock)

        try:
            response = self.registry.send_chat_request(
                model_id,
                list(conversation),
                ChatRequestOptions(tools=tools, temperature=opts.temperature),
                cancellation,
                queue_size=opts.event_queue_size,
            )
        except AgentRuntimeError as exc:
            turn.error = exc
            return turn

        try:
            async for event in response.stream:
                if cancellation is not None and cancellation.is_set():
                    turn.canceled = True
                    break
                if isinstance(event, TextDelta):
                    turn.text += event.value
                    text_out.update(streaming_display(turn.text))
                elif isinstance(event, ThinkingDelta):
                    turn.thinking += event.value
                    thinking_out.update(turn.thinking)
                elif isinstance(event, ToolUseEvent):
                    logger.info("Tool call requested: %s (id: %s)", event.name, event.tool_call_id)
                    turn.tool_calls.append(event.to_part())
        except AgentRuntimeError as exc:
            turn.error = exc
        finally:
            response.discard()

        thinking_out.flush(turn.thinking)
        turn.display = strip_completion_marker(turn.text)
        text_out.flush(turn.display)
        turn.shown = text_out.emitted > 0
        return turn
