"""Anthropic Messages API provider adapter."""

from __future__ import annotations

import base64
from collections.abc import AsyncIterator
from typing import Any

from anthropic import AsyncAnthropic

from ..models import (
    ChatMessage,
    ChatMessageRole,
    ChatRequestOptions,
    ImagePart,
    StreamEvent,
    TextDelta,
    TextPart,
    ThinkingDelta,
    ToolResultPart,
    ToolUsePart,
)
from .base import ProviderAdapter, StreamState, tool_function


def _image_block(part: ImagePart) -> dict[str, Any]:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": part.mime_type,
            "data": base64.b64encode(part.data).decode("ascii"),
        },
    }


def to_anthropic_messages(messages: list[ChatMessage]) -> tuple[str | None, list[dict[str, Any]]]:
    """Split out the system prompt and convert the rest into content blocks."""
    system_parts: list[str] = []
    out: list[dict[str, Any]] = []
    for m in messages:
        if m.role == ChatMessageRole.SYSTEM:
            text = m.text_content().strip()
            if text:
                system_parts.append(text)
            continue
        blocks: list[dict[str, Any]] = []
        for p in m.content:
            if isinstance(p, TextPart):
                if p.value:
                    blocks.append({"type": "text", "text": p.value})
            elif isinstance(p, ImagePart):
                blocks.append(_image_block(p))
            elif isinstance(p, ToolUsePart):
                blocks.append({"type": "tool_use", "id": p.tool_call_id, "name": p.name, "input": p.parameters})
            elif isinstance(p, ToolResultPart):
                content: list[dict[str, Any]] = []
                for item in p.value:
                    if isinstance(item, TextPart):
                        content.append({"type": "text", "text": item.value})
                    else:
                        content.append(_image_block(item))
                blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": p.tool_call_id,
                        "content": content,
                        "is_error": p.is_error,
                    }
                )
        if blocks:
            out.append({"role": m.role.value, "content": blocks})
    return ("\n\n".join(system_parts) or None), out


def to_anthropic_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out = []
    for t in tools:
        fn = tool_function(t)
        if not fn.get("name"):
            continue
        out.append(
            {
                "name": fn["name"],
                "description": fn.get("description", ""),
                "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
            }
        )
    return out


class AnthropicAdapter(ProviderAdapter):
    """Claude models through the streaming Messages API."""

    vendor = "anthropic"
    display_name = "Anthropic"

    def _create_client(self) -> Any:
        kwargs: dict[str, Any] = {"api_key": self.model.api_key}
        if self.model.base_url:
            kwargs["base_url"] = self.model.base_url
        return AsyncAnthropic(**kwargs)

    def map_request(self, messages: list[ChatMessage], options: ChatRequestOptions) -> dict[str, Any]:
        system, anthropic_messages = to_anthropic_messages(messages)
        body: dict[str, Any] = {
            "model": self.model.model_name,
            "messages": anthropic_messages,
            "max_tokens": self.request_max_tokens(options),
            "temperature": self.request_temperature(options),
            "stream": True,
        }
        if system:
            body["system"] = system
        tools = to_anthropic_tools(options.tools)
        if tools:
            body["tools"] = tools
        return body

    async def open_stream(self, body: dict[str, Any]) -> AsyncIterator[Any]:
        return await self.client.messages.create(**body)

    def parse_stream_chunk(self, chunk: Any, state: StreamState) -> list[StreamEvent]:
        kind = getattr(chunk, "type", None)
        index = getattr(chunk, "index", 0)
        if kind == "content_block_start":
            block = getattr(chunk, "content_block", None)
            if getattr(block, "type", None) == "tool_use":
                state.accumulator.add_fragment(index, call_id=block.id, name=block.name)
            return []
        if kind == "content_block_delta":
            delta = getattr(chunk, "delta", None)
            delta_type = getattr(delta, "type", None)
            if delta_type == "text_delta" and delta.text:
                return [TextDelta(value=delta.text)]
            if delta_type == "thinking_delta" and delta.thinking:
                return [ThinkingDelta(value=delta.thinking)]
            if delta_type == "input_json_delta":
                state.accumulator.add_fragment(index, arguments=delta.partial_json)
            return []
        if kind == "content_block_stop" and index in state.accumulator:
            event = state.accumulator.finalize_one(index)
            return [event] if event is not None else []
        return []

    async def count_tokens(self, message: ChatMessage) -> int:
        system, anthropic_messages = to_anthropic_messages([message])
        if not anthropic_messages:
            anthropic_messages = [{"role": "user", "content": system or ""}]
        result = await self.client.messages.count_tokens(
            model=self.model.model_name,
            messages=anthropic_messages,
        )
        return result.input_tokens
