"""Shared fakes: a scripted provider adapter, simple tools and async iterators."""
from __future__ import annotations

import asyncio
from typing import Any

from agent_runtime.llm import ProviderRegistry
from agent_runtime.models import (
    ChatMessage,
    ChatRequestOptions,
    ModelInfo,
    TextDelta,
    ToolInvocation,
    ToolResult,
    ToolUseEvent,
)
from agent_runtime.providers.base import ProviderAdapter, StreamState
from agent_runtime.tools import BaseTool

MODEL_ID = "test-model"


async def aiter_of(items: list[Any]):
    for item in items:
        yield item


async def collect(stream) -> list[Any]:
    return [event async for event in stream]


def text(value: str) -> TextDelta:
    return TextDelta(value=value)


def tool_use(name: str, params: dict[str, Any] | None = None, call_id: str = "call_1", index: int = 0) -> ToolUseEvent:
    return ToolUseEvent(index=index, tool_call_id=call_id, name=name, parameters=params or {})


class ScriptedAdapter(ProviderAdapter):
    """Replays one scripted turn (a list of events, or an exception) per request."""

    vendor = "scripted"
    display_name = "Scripted"
    turns: list[Any] = []
    requests: list[dict[str, Any]] = []
    tokens_per_message: int | None = None

    def _create_client(self) -> Any:
        return object()

    def map_request(self, messages: list[ChatMessage], options: ChatRequestOptions) -> dict[str, Any]:
        return {"messages": list(messages), "options": options}

    async def open_stream(self, body: dict[str, Any]):
        self.requests.append(body)
        turn = self.turns.pop(0) if self.turns else []
        if isinstance(turn, BaseException):
            raise turn
        return aiter_of(turn)

    def parse_stream_chunk(self, chunk: Any, state: StreamState) -> list[Any]:
        return [chunk]

    async def count_tokens(self, message: ChatMessage) -> int:
        if self.tokens_per_message is None:
            raise NotImplementedError
        return self.tokens_per_message


def scripted_registry(
    turns: list[Any],
    *,
    tokens_per_message: int | None = None,
    max_input_tokens: int | None = None,
) -> tuple[ProviderRegistry, type[ScriptedAdapter]]:
    """A registry with MODEL_ID bound to a fresh ScriptedAdapter subclass."""
    adapter_cls = type(
        "Scripted",
        (ScriptedAdapter,),
        {"turns": list(turns), "requests": [], "tokens_per_message": tokens_per_message},
    )
    registry = ProviderRegistry(adapters={"scripted": adapter_cls})
    registry.register(
        ModelInfo(id=MODEL_ID, vendor="scripted", model_name="scripted-1", max_input_tokens=max_input_tokens)
    )
    return registry, adapter_cls


class EchoTool(BaseTool):
    """Records invocations and returns a fixed result (or raises)."""

    def __init__(self, tool_id: str, result: ToolResult | None = None, error: Exception | None = None) -> None:
        self._id = tool_id
        self._result = result if result is not None else ToolResult.from_text(f"{tool_id} ok")
        self._error = error
        self.calls: list[ToolInvocation] = []
        self.cancellations: list[asyncio.Event | None] = []

    @property
    def id(self) -> str:
        return self._id

    @property
    def model_description(self) -> str:
        return f"Test tool {self._id}."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"path": {"type": "string"}}, "required": []}

    async def invoke(self, invocation: ToolInvocation, cancellation: asyncio.Event | None = None) -> ToolResult:
        self.calls.append(invocation)
        self.cancellations.append(cancellation)
        if self._error is not None:
            raise self._error
        return self._result
