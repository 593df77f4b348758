"""OpenAI Chat Completions provider adapter."""

from __future__ import annotations

import base64
import json
from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI

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
from .base import ProviderAdapter, StreamState, tool_result_text


def image_data_url(part: ImagePart) -> str:
    return f"data:{part.mime_type};base64,{base64.b64encode(part.data).decode('ascii')}"


def to_openai_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert canonical messages into OpenAI chat message dicts.

    Tool results become standalone ``role=tool`` messages placed where the
    carrying user message was; any other user content follows them.
    """
    out: list[dict[str, Any]] = []
    for m in messages:
        if m.role == ChatMessageRole.ASSISTANT:
            base: dict[str, Any] = {"role": "assistant", "content": m.text_content() or None}
            calls = [
                {
                    "id": p.tool_call_id,
                    "type": "function",
                    "function": {"name": p.name, "arguments": json.dumps(p.parameters)},
                }
                for p in m.content
                if isinstance(p, ToolUsePart)
            ]
            if calls:
                base["tool_calls"] = calls
            elif base["content"] is None:
                base["content"] = ""
            out.append(base)
            continue

        for result in m.tool_results():
            out.append({"role": "tool", "tool_call_id": result.tool_call_id, "content": tool_result_text(result)})

        parts = [p for p in m.content if not isinstance(p, (ToolResultPart, ToolUsePart))]
        images = [p for p in parts if isinstance(p, ImagePart)]
        if not parts:
            continue
        if images and m.role == ChatMessageRole.USER:
            content: list[dict[str, Any]] = []
            for p in parts:
                if isinstance(p, TextPart):
                    content.append({"type": "text", "text": p.value})
                elif isinstance(p, ImagePart):
                    content.append({"type": "image_url", "image_url": {"url": image_data_url(p)}})
            out.append({"role": "user", "content": content})
        else:
            out.append({"role": m.role.value, "content": m.text_content()})
    return out


class OpenAIAdapter(ProviderAdapter):
    """OpenAI-backed adapter using the streaming Chat Completions API."""

    vendor = "openai"
    display_name = "OpenAI"

    def _create_client(self) -> Any:
        kwargs: dict[str, Any] = {"api_key": self.model.api_key}
        if self.model.base_url:
            kwargs["base_url"] = self.model.base_url
        return AsyncOpenAI(**kwargs)

    def map_request(self, messages: list[ChatMessage], options: ChatRequestOptions) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model.model_name,
            "messages": to_openai_messages(messages),
            "temperature": self.request_temperature(options),
            "max_tokens": self.request_max_tokens(options),
            "stream": True,
        }
        if options.tools:
            body["tools"] = options.tools
            body["tool_choice"] = "auto"
        return body

    async def open_stream(self, body: dict[str, Any]) -> AsyncIterator[Any]:
        return await self.client.chat.completions.create(**body)

    def parse_stream_chunk(self, chunk: Any, state: StreamState) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for choice in getattr(chunk, "choices", None) or []:
            delta = getattr(choice, "delta", None)
            if delta is None:
                continue
            reasoning = getattr(delta, "reasoning_content", None)
            if reasoning:
                events.append(ThinkingDelta(value=reasoning))
            text = getattr(delta, "content", None)
            if text:
                events.append(TextDelta(value=text))
            for tc in getattr(delta, "tool_calls", None) or []:
                fn = getattr(tc, "function", None)
                index = getattr(tc, "index", None)
                state.accumulator.add_fragment(
                    index if isinstance(index, int) else 0,
                    call_id=getattr(tc, "id", None),
                    name=getattr(fn, "name", None),
                    arguments=getattr(fn, "arguments", None),
                )
        return events

    def error_detail(self, exc: BaseException) -> str:
        body = getattr(exc, "body", None)
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return ""
