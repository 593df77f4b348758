"""Abstract provider adapter interface and shared stream-parsing helpers."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx

from ..config import DEFAULT_TEMPERATURE, EVENT_QUEUE_SIZE
from ..errors import (
    AgentRuntimeError,
    CancellationError,
    ProviderError,
    TransportError,
    error_for_status,
)
from ..events import ChatResponse, EventStream
from ..models import (
    ChatMessage,
    ChatRequestOptions,
    ModelInfo,
    StreamEvent,
    TextPart,
    ToolResultPart,
    ToolUseEvent,
)

logger = logging.getLogger(__name__)

# Keys every vendor's function-declaration schema dialect understands.
ALLOWED_SCHEMA_KEYS = frozenset({"type", "description", "properties", "required", "items", "enum"})

_CANCELED_RE = re.compile(r"cancell?ed|cancellation", re.IGNORECASE)
_CONNECTION_RE = re.compile(
    r"ECONNREFUSED|connection refused|connect(ion)? error|failed to connect|name or service not known",
    re.IGNORECASE,
)


def sanitize_schema(schema: Any) -> Any:
    """Recursively strip JSON-schema keys outside ALLOWED_SCHEMA_KEYS."""
    if isinstance(schema, list):
        return [sanitize_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    out: dict[str, Any] = {}
    for key, val in schema.items():
        if key not in ALLOWED_SCHEMA_KEYS:
            continue
        if key == "properties" and isinstance(val, dict):
            out[key] = {prop: sanitize_schema(sub) for prop, sub in val.items()}
        elif key == "items" and isinstance(val, dict):
            out[key] = sanitize_schema(val)
        else:
            out[key] = val
    return out


def tool_function(tool: dict[str, Any]) -> dict[str, Any]:
    """Return the ``function`` block of an OpenAI-style tool schema."""
    return tool.get("function", tool) if isinstance(tool, dict) else {}


def tool_result_text(part: ToolResultPart) -> str:
    return "".join(p.value for p in part.value if isinstance(p, TextPart))


def status_of(exc: BaseException) -> int | None:
    """Best-effort HTTP status from an SDK exception."""
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 100 <= value < 600:
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_connection_error(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionError, httpx.TransportError)):
        return True
    if type(exc).__name__ in ("APIConnectionError", "APITimeoutError"):
        return True
    return bool(_CONNECTION_RE.search(str(exc)))


# ---------------------------------------------------------------------------
# Tool call accumulation
# ---------------------------------------------------------------------------


@dataclass
class _PendingCall:
    call_id: str | None = None
    name: str | None = None
    args: str = ""
    parsed: dict[str, Any] | None = None
    thought_signature: Any = None


class ToolCallAccumulator:
    """Index-keyed buffer of tool-call fragments for one stream.

    Argument JSON may be split mid-token across chunks, so fragments are only
    parsed when the call is finalized. Calls whose arguments are not a valid
    JSON object are dropped rather than surfaced.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PendingCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, index: int) -> bool:
        return index in self._calls

    def next_index(self) -> int:
        return max(self._calls, default=-1) + 1

    def add_fragment(
        self,
        index: int,
        *,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        pending = self._calls.setdefault(index, _PendingCall())
        if call_id:
            pending.call_id = call_id
        if name:
            pending.name = name
        if arguments:
            pending.args += arguments

    def set_call(
        self,
        index: int,
        *,
        name: str,
        arguments: dict[str, Any] | str | None = None,
        call_id: str | None = None,
        thought_signature: Any = None,
    ) -> None:
        """Record a call that arrived whole (Gemini, Ollama, prompt protocol)."""
        pending = _PendingCall(call_id=call_id, name=name, thought_signature=thought_signature)
        if isinstance(arguments, dict):
            pending.parsed = arguments
        elif isinstance(arguments, str):
            pending.args = arguments
        self._calls[index] = pending

    def finalize_one(self, index: int) -> ToolUseEvent | None:
        pending = self._calls.pop(index, None)
        if pending is None:
            return None
        return self._build(index, pending)

    def finalize(self) -> list[ToolUseEvent]:
        """Convert all buffered calls, in index order, and clear the buffer."""
        events = []
        for index in sorted(self._calls):
            event = self._build(index, self._calls[index])
            if event is not None:
                events.append(event)
        self._calls.clear()
        return events

    @staticmethod
    def _build(index: int, pending: _PendingCall) -> ToolUseEvent | None:
        if not pending.name:
            logger.warning("Dropping tool call at index %d without a name", index)
            return None
        params = pending.parsed
        if params is None:
            raw = pending.args.strip()
            try:
                params = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                logger.warning("Dropping tool call %s: arguments are not valid JSON", pending.name)
                return None
        if not isinstance(params, dict):
            logger.warning("Dropping tool call %s: arguments are not a JSON object", pending.name)
            return None
        return ToolUseEvent(
            index=index,
            tool_call_id=pending.call_id or f"call_{uuid.uuid4().hex[:24]}",
            name=pending.name,
            parameters=params,
            thought_signature=pending.thought_signature,
        )


@dataclass
class StreamState:
    """Per-request parsing state, owned by one stream consumption."""

    accumulator: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    text_buffer: str = ""
    tools_requested: bool = False


# ---------------------------------------------------------------------------
# Adapter interface
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """
    Abstract provider adapter. One subclass per vendor wire protocol.

    Subclasses map canonical messages to a request body, open the vendor
    stream and translate each chunk into StreamEvents. The base class owns
    the request lifecycle and guarantees the event stream completes once.
    """

    vendor: ClassVar[str] = ""
    display_name: ClassVar[str] = ""
    # Retry once without tools when a tools-enabled request gets HTTP 400.
    retry_without_tools: ClassVar[bool] = False

    def __init__(self, model: ModelInfo, client: Any | None = None) -> None:
        self.model = model
        self._client = client

    # -- vendor hooks -------------------------------------------------------

    @abstractmethod
    def _create_client(self) -> Any:
        ...

    @abstractmethod
    def map_request(self, messages: list[ChatMessage], options: ChatRequestOptions) -> dict[str, Any]:
        """Build the vendor request body."""
        ...

    @abstractmethod
    async def open_stream(self, body: dict[str, Any]) -> AsyncIterator[Any]:
        """Issue the streaming request and return the chunk iterator."""
        ...

    @abstractmethod
    def parse_stream_chunk(self, chunk: Any, state: StreamState) -> list[StreamEvent]:
        ...

    def finish_stream(self, state: StreamState) -> list[StreamEvent]:
        return list(state.accumulator.finalize())

    def status_message(self, status_code: int) -> str | None:
        """Vendor-specific guidance for a status code, or None for the default."""
        return None

    def connection_message(self, exc: BaseException) -> str:
        return f"Could not reach {self.display_name}: {exc}"

    def error_detail(self, exc: BaseException) -> str:
        return ""

    async def count_tokens(self, message: ChatMessage) -> int:
        raise NotImplementedError(f"{self.display_name} does not expose token counting")

    # -- shared behavior ----------------------------------------------------

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def request_temperature(self, options: ChatRequestOptions) -> float:
        return DEFAULT_TEMPERATURE if options.temperature is None else options.temperature

    def request_max_tokens(self, options: ChatRequestOptions) -> int:
        return options.max_output_tokens or self.model.output_token_limit

    def classify_error(self, exc: BaseException, cancellation: asyncio.Event | None = None) -> AgentRuntimeError:
        """Translate any failure into an actionable runtime error."""
        if isinstance(exc, CancellationError):
            return exc
        if (
            isinstance(exc, asyncio.CancelledError)
            or (cancellation is not None and cancellation.is_set())
            or _CANCELED_RE.search(str(exc))
        ):
            return CancellationError()
        if isinstance(exc, AgentRuntimeError):
            return exc
        status = status_of(exc)
        if status is not None:
            custom = self.status_message(status)
            if custom:
                error = error_for_status(self.display_name, status)
                return type(error)(custom, vendor=self.display_name, status_code=status)
            return error_for_status(self.display_name, status, self.error_detail(exc))
        if is_connection_error(exc):
            return TransportError(self.connection_message(exc), vendor=self.display_name)
        return ProviderError(f"{self.display_name} model \"{self.model.model_name}\" error: {exc}", vendor=self.display_name)

    def send_chat_request(
        self,
        messages: list[ChatMessage],
        options: ChatRequestOptions | None = None,
        cancellation: asyncio.Event | None = None,
        *,
        queue_size: int = EVENT_QUEUE_SIZE,
    ) -> ChatResponse:
        """Start a streaming request; returns immediately with (stream, result)."""
        stream = EventStream(maxsize=queue_size)
        task = asyncio.create_task(self._run(messages, options or ChatRequestOptions(), stream, cancellation))
        return ChatResponse(stream=stream, result=task)

    async def _run(
        self,
        messages: list[ChatMessage],
        options: ChatRequestOptions,
        stream: EventStream,
        cancellation: asyncio.Event | None,
    ) -> None:
        try:
            await self._stream_response(messages, options, stream, cancellation)
        except BaseException as exc:
            error = self.classify_error(exc, cancellation)
            if isinstance(error, CancellationError):
                logger.info("%s request canceled", self.display_name)
            else:
                logger.error("%s provider error: %s", self.display_name, error)
            await stream.reject(error)
            if isinstance(exc, asyncio.CancelledError):
                raise
            raise error from exc
        else:
            await stream.resolve()

    async def _stream_response(
        self,
        messages: list[ChatMessage],
        options: ChatRequestOptions,
        stream: EventStream,
        cancellation: asyncio.Event | None,
    ) -> None:
        body = self.map_request(messages, options)
        logger.info(
            "%s request: model=%s messages=%d tools=%d",
            self.display_name,
            self.model.model_name,
            len(messages),
            len(options.tools),
        )
        try:
            chunks = await self.open_stream(body)
        except Exception as exc:
            if not (self.retry_without_tools and body.get("tools") and status_of(exc) == 400):
                raise
            logger.info("%s rejected tools-enabled request (400); retrying without tools", self.display_name)
            options = options.without_tools()
            body = self.map_request(messages, options)
            chunks = await self.open_stream(body)

        state = StreamState(tools_requested=bool(options.tools))
        async for chunk in chunks:
            if cancellation is not None and cancellation.is_set():
                raise CancellationError()
            for event in self.parse_stream_chunk(chunk, state):
                await stream.emit(event)
        for event in self.finish_stream(state):
            await stream.emit(event)
