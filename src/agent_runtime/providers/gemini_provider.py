"""Google Gemini provider adapter using the google-genai SDK."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from google import genai
from google.genai import types as genai_types

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
from .base import ProviderAdapter, StreamState, sanitize_schema, tool_function, tool_result_text

logger = logging.getLogger(__name__)


def _function_response_payload(part: ToolResultPart) -> dict[str, Any]:
    """Gemini wants an object: the tool's JSON output if it is one, else wrapped text."""
    first = next((p.value for p in part.value if isinstance(p, TextPart)), "")
    try:
        parsed = json.loads(first)
    except (json.JSONDecodeError, TypeError):
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    return {"result": tool_result_text(part)}


def to_gemini_contents(messages: list[ChatMessage]) -> tuple[list[genai_types.Content], str | None]:
    """Convert canonical messages into Gemini contents and a system instruction."""
    contents: list[genai_types.Content] = []
    system_parts: list[str] = []
    # tool_use id -> function name, from earlier assistant turns
    call_names: dict[str, str] = {}

    for m in messages:
        if m.role == ChatMessageRole.SYSTEM:
            text = m.text_content().strip()
            if text:
                system_parts.append(text)
            continue
        role = "model" if m.role == ChatMessageRole.ASSISTANT else "user"
        parts: list[genai_types.Part] = []
        for p in m.content:
            if isinstance(p, TextPart):
                if p.value:
                    parts.append(genai_types.Part(text=p.value))
            elif isinstance(p, ImagePart):
                parts.append(genai_types.Part(inline_data=genai_types.Blob(mime_type=p.mime_type, data=p.data)))
            elif isinstance(p, ToolUsePart):
                call_names[p.tool_call_id] = p.name
                kwargs: dict[str, Any] = {
                    "function_call": genai_types.FunctionCall(name=p.name, args=p.parameters),
                }
                if p.thought_signature is not None:
                    kwargs["thought_signature"] = p.thought_signature
                parts.append(genai_types.Part(**kwargs))
            elif isinstance(p, ToolResultPart):
                name = call_names.get(p.tool_call_id)
                if name is None:
                    logger.warning("No prior tool call for result %s; skipping", p.tool_call_id)
                    continue
                parts.append(
                    genai_types.Part(
                        function_response=genai_types.FunctionResponse(
                            name=name,
                            response=_function_response_payload(p),
                        )
                    )
                )
        if parts:
            contents.append(genai_types.Content(role=role, parts=parts))

    return contents, ("\n\n".join(system_parts) or None)


def to_gemini_tools(tools: list[dict[str, Any]]) -> list[genai_types.Tool] | None:
    declarations: list[genai_types.FunctionDeclaration] = []
    for t in tools:
        fn = tool_function(t)
        name = fn.get("name")
        if not name:
            continue
        declarations.append(
            genai_types.FunctionDeclaration(
                name=name,
                description=fn.get("description", ""),
                parameters=sanitize_schema(fn.get("parameters") or {"type": "object", "properties": {}}),
            )
        )
    if not declarations:
        return None
    return [genai_types.Tool(function_declarations=declarations)]


class GoogleAdapter(ProviderAdapter):
    """Gemini models through ``client.aio.models.generate_content_stream``."""

    vendor = "google"
    display_name = "Google"

    def _create_client(self) -> Any:
        return genai.Client(api_key=self.model.api_key, http_options={"api_version": "v1beta"})

    def map_request(self, messages: list[ChatMessage], options: ChatRequestOptions) -> dict[str, Any]:
        contents, system_instruction = to_gemini_contents(messages)
        config_args: dict[str, Any] = {
            "temperature": self.request_temperature(options),
            "max_output_tokens": self.request_max_tokens(options),
        }
        gemini_tools = to_gemini_tools(options.tools)
        if gemini_tools:
            config_args["tools"] = gemini_tools
            config_args["tool_config"] = genai_types.ToolConfig(
                function_calling_config=genai_types.FunctionCallingConfig(
                    mode=genai_types.FunctionCallingConfigMode.AUTO
                )
            )
        if system_instruction:
            config_args["system_instruction"] = system_instruction
        return {
            "model": self.model.model_name,
            "contents": contents,
            "config": genai_types.GenerateContentConfig(**config_args),
        }

    async def open_stream(self, body: dict[str, Any]) -> AsyncIterator[Any]:
        return await self.client.aio.models.generate_content_stream(**body)

    def parse_stream_chunk(self, chunk: Any, state: StreamState) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for cand in getattr(chunk, "candidates", None) or []:
            content = getattr(cand, "content", None)
            for part in getattr(content, "parts", None) or []:
                fc = getattr(part, "function_call", None)
                if fc is not None and getattr(fc, "name", None):
                    # Function calls arrive whole; surface them at stream end.
                    state.accumulator.set_call(
                        state.accumulator.next_index(),
                        name=fc.name,
                        arguments=dict(fc.args) if fc.args else {},
                        call_id=getattr(fc, "id", None),
                        thought_signature=getattr(part, "thought_signature", None),
                    )
                    continue
                text = getattr(part, "text", None)
                if not text:
                    continue
                if getattr(part, "thought", False):
                    events.append(ThinkingDelta(value=text))
                else:
                    events.append(TextDelta(value=text))
        return events

    def error_detail(self, exc: BaseException) -> str:
        message = getattr(exc, "message", None)
        return str(message) if message else ""

    async def count_tokens(self, message: ChatMessage) -> int:
        contents, system_instruction = to_gemini_contents([message])
        if not contents:
            contents = [genai_types.Content(role="user", parts=[genai_types.Part(text=system_instruction or "")])]
        result = await self.client.aio.models.count_tokens(model=self.model.model_name, contents=contents)
        return result.total_tokens or 0
