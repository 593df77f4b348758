"""Adapters for locally hosted models: OpenAI-compatible servers and Ollama.

Local models frequently lack native function calling. For those, tool
definitions are written into the system prompt and the model is asked to reply
with a single ``{"tool_calls": [...]}`` JSON object, which is cut out of the
text stream and surfaced as ordinary tool calls.
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from ollama import AsyncClient
from openai import AsyncOpenAI

from ..config import DEFAULT_LOCAL_SERVER_URL, DEFAULT_OLLAMA_URL, PROMPT_TOOL_HOLD_CHARS
from ..models import (
    ChatMessage,
    ChatMessageRole,
    ChatRequestOptions,
    ImagePart,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolUsePart,
)
from ..prompts import LOCAL_FALLBACK_SYSTEM_PROMPT, tool_protocol_prompt
from .base import StreamState, tool_result_text
from .openai_provider import OpenAIAdapter

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()
_PROTOCOL_KEY = '"tool_calls"'


def _may_be_protocol(buf: str) -> bool:
    """True while ``buf`` (starting at '{') can still become a tool_calls object."""
    rest = buf[1:].lstrip()
    if len(rest) <= len(_PROTOCOL_KEY):
        return _PROTOCOL_KEY.startswith(rest)
    if not rest.startswith(_PROTOCOL_KEY):
        return False
    after = rest[len(_PROTOCOL_KEY):].lstrip()
    return not after or after.startswith(":")


def inject_tool_protocol(messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Append the JSON tool protocol to the system message, adding one if absent."""
    extension = tool_protocol_prompt(tools)
    out = [dict(m) for m in messages]
    for m in out:
        if m.get("role") == "system":
            m["content"] = f"{m.get('content') or ''}{extension}"
            return out
    return [{"role": "system", "content": f"{LOCAL_FALLBACK_SYSTEM_PROMPT}{extension}"}, *out]


def _record_protocol_calls(payload: dict[str, Any], state: StreamState) -> None:
    for tc in payload.get("tool_calls") or []:
        if not isinstance(tc, dict):
            continue
        fn = tc.get("function") if isinstance(tc.get("function"), dict) else tc
        name = fn.get("name")
        if not name:
            continue
        arguments = fn.get("arguments")
        state.accumulator.set_call(
            state.accumulator.next_index(),
            name=name,
            arguments=arguments if isinstance(arguments, (dict, str)) else None,
            call_id=tc.get("id"),
        )


def feed_protocol_text(text: str, state: StreamState, *, final: bool = False) -> list[StreamEvent]:
    """Buffer free text, extract protocol objects and release everything else.

    Text from an opening brace onwards is held back while it could still be the
    start of a protocol object. Any brace text is held up to
    PROMPT_TOOL_HOLD_CHARS characters; text that opens with the tool_calls key
    is held until it decodes or the stream ends.
    """
    state.text_buffer += text
    released: list[str] = []
    while state.text_buffer:
        buf = state.text_buffer
        start = buf.find("{")
        if start < 0:
            released.append(buf)
            state.text_buffer = ""
            break
        if start:
            released.append(buf[:start])
            buf = state.text_buffer = buf[start:]
        try:
            obj, end = _decoder.raw_decode(buf)
        except json.JSONDecodeError:
            if not final and (len(buf) <= PROMPT_TOOL_HOLD_CHARS or _may_be_protocol(buf)):
                break
            nxt = buf.find("{", 1)
            released.append(buf if nxt < 0 else buf[:nxt])
            state.text_buffer = "" if nxt < 0 else buf[nxt:]
            continue
        if isinstance(obj, dict) and "tool_calls" in obj:
            _record_protocol_calls(obj, state)
        else:
            released.append(buf[:end])
        state.text_buffer = buf[end:]

    out = "".join(released)
    if not out:
        return []
    return [TextDelta(value=out)]


class LocalServerAdapter(OpenAIAdapter):
    """OpenAI-compatible local server (llama.cpp or any localhost endpoint)."""

    vendor = "local"
    display_name = "Local model server"
    retry_without_tools = True

    def _create_client(self) -> Any:
        return AsyncOpenAI(
            api_key=self.model.api_key or "not-needed",
            base_url=self.model.base_url or DEFAULT_LOCAL_SERVER_URL,
        )

    def uses_prompt_tools(self, state: StreamState) -> bool:
        return state.tools_requested and not self.model.native_tools

    def map_request(self, messages: list[ChatMessage], options: ChatRequestOptions) -> dict[str, Any]:
        if self.model.native_tools or not options.tools:
            return super().map_request(messages, options)
        body = super().map_request(messages, options.without_tools())
        body["messages"] = inject_tool_protocol(body["messages"], options.tools)
        logger.info("Injected %d tools into the system prompt for %s", len(options.tools), self.model.model_name)
        return body

    def parse_stream_chunk(self, chunk: Any, state: StreamState) -> list[StreamEvent]:
        events = super().parse_stream_chunk(chunk, state)
        if not self.uses_prompt_tools(state):
            return events
        out: list[StreamEvent] = []
        for event in events:
            if isinstance(event, TextDelta):
                out.extend(feed_protocol_text(event.value, state))
            else:
                out.append(event)
        return out

    def finish_stream(self, state: StreamState) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        if self.uses_prompt_tools(state):
            events.extend(feed_protocol_text("", state, final=True))
        events.extend(state.accumulator.finalize())
        return events

    def status_message(self, status_code: int) -> str | None:
        if status_code in (404, 502, 503):
            return self._not_running_message()
        return None

    def connection_message(self, exc: BaseException) -> str:
        return self._not_running_message()

    def _not_running_message(self) -> str:
        return (
            f'Local model server is not running. Start the llama.cpp server for "{self.model.model_name}" '
            f"at {self.model.base_url or DEFAULT_LOCAL_SERVER_URL} and try again."
        )


async def _prepend(head: list[Any], rest: AsyncIterator[Any]) -> AsyncIterator[Any]:
    for chunk in head:
        yield chunk
    async for chunk in rest:
        yield chunk


def to_ollama_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert canonical messages into Ollama chat message dicts."""
    out: list[dict[str, Any]] = []
    call_names: dict[str, str] = {}
    for m in messages:
        for result in m.tool_results():
            msg: dict[str, Any] = {"role": "tool", "content": tool_result_text(result)}
            if result.tool_call_id in call_names:
                msg["tool_name"] = call_names[result.tool_call_id]
            out.append(msg)

        text = m.text_content()
        images = [base64.b64encode(p.data).decode("ascii") for p in m.content if isinstance(p, ImagePart)]
        calls = [p for p in m.content if isinstance(p, ToolUsePart)]
        if not (text or images or calls):
            continue
        msg = {"role": m.role.value, "content": text}
        if images and m.role == ChatMessageRole.USER:
            msg["images"] = images
        if calls:
            for p in calls:
                call_names[p.tool_call_id] = p.name
            msg["tool_calls"] = [{"function": {"name": p.name, "arguments": p.parameters}} for p in calls]
        out.append(msg)
    return out


class OllamaAdapter(LocalServerAdapter):
    """Ollama's native chat API through ``ollama.AsyncClient``."""

    vendor = "ollama"
    display_name = "Ollama"

    @property
    def host(self) -> str:
        return self.model.base_url or DEFAULT_OLLAMA_URL

    def _create_client(self) -> Any:
        return AsyncClient(host=self.host)

    def map_request(self, messages: list[ChatMessage], options: ChatRequestOptions) -> dict[str, Any]:
        chat_messages = to_ollama_messages(messages)
        body: dict[str, Any] = {
            "model": self.model.model_name,
            "messages": chat_messages,
            "stream": True,
            "options": {
                "temperature": self.request_temperature(options),
                "num_predict": self.request_max_tokens(options),
            },
        }
        if options.tools:
            if self.model.native_tools:
                body["tools"] = options.tools
            else:
                body["messages"] = inject_tool_protocol(chat_messages, options.tools)
                logger.info("Injected %d tools into the system prompt for Ollama model %s", len(options.tools), self.model.model_name)
        return body

    async def open_stream(self, body: dict[str, Any]) -> AsyncIterator[Any]:
        stream = await self.client.chat(**body)
        # The request is sent on first iteration; pull it here so HTTP errors
        # surface while the request can still be retried.
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            return _prepend([], stream)
        return _prepend([first], stream)

    def parse_stream_chunk(self, chunk: Any, state: StreamState) -> list[StreamEvent]:
        msg = getattr(chunk, "message", None)
        if msg is None:
            return []
        events: list[StreamEvent] = []
        thinking = getattr(msg, "thinking", None)
        if thinking:
            events.append(ThinkingDelta(value=thinking))
        text = getattr(msg, "content", None)
        if text:
            if self.uses_prompt_tools(state):
                events.extend(feed_protocol_text(text, state))
            else:
                events.append(TextDelta(value=text))
        for tc in getattr(msg, "tool_calls", None) or []:
            fn = getattr(tc, "function", None)
            name = getattr(fn, "name", None)
            if not name:
                continue
            args = getattr(fn, "arguments", None)
            state.accumulator.set_call(
                state.accumulator.next_index(),
                name=name,
                arguments=args if isinstance(args, (dict, str)) else None,
            )
        return events

    def status_message(self, status_code: int) -> str | None:
        if status_code == 404:
            return (
                f'Model "{self.model.model_name}" not found in Ollama. Please make sure you have pulled the model '
                f"(e.g., 'ollama pull {self.model.model_name}')."
            )
        if 500 <= status_code < 600:
            return (
                "Ollama server is not responding. Please make sure Ollama is installed and running "
                f"({self.host})."
            )
        return None

    def connection_message(self, exc: BaseException) -> str:
        return f"Ollama server is not running at {self.host}. Please start Ollama and try again."
