"""Data models: canonical messages, stream events, tools and registry entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from .config import (
    CLOUD_MAX_INPUT_TOKENS,
    CLOUD_MAX_OUTPUT_TOKENS,
    LOCAL_MAX_INPUT_TOKENS,
    LOCAL_MAX_OUTPUT_TOKENS,
    LOCAL_VENDORS,
)


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    value: str


class ThinkingPart(BaseModel):
    type: Literal["thinking"] = "thinking"
    value: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    mime_type: str
    data: bytes


class ToolUsePart(BaseModel):
    """A model-requested tool call inside an assistant message."""

    type: Literal["tool_use"] = "tool_use"
    tool_call_id: str
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    # Opaque vendor continuation token (Gemini thought signature), resent verbatim.
    thought_signature: Any = None


class ToolResultPart(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    value: list[Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]] = Field(
        default_factory=list
    )
    is_error: bool = False

    def text(self) -> str:
        return "".join(p.value for p in self.value if isinstance(p, TextPart))


ContentPart = Annotated[
    Union[TextPart, ThinkingPart, ImagePart, ToolUsePart, ToolResultPart],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class ChatMessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """A single vendor-neutral chat turn."""

    role: ChatMessageRole
    content: list[ContentPart] = Field(default_factory=list)

    @classmethod
    def text(cls, role: ChatMessageRole | str, value: str) -> ChatMessage:
        return cls(role=ChatMessageRole(role), content=[TextPart(value=value)])

    def text_content(self) -> str:
        return "".join(p.value for p in self.content if isinstance(p, TextPart))

    def tool_uses(self) -> list[ToolUsePart]:
        return [p for p in self.content if isinstance(p, ToolUsePart)]

    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.content if isinstance(p, ToolResultPart)]


class HistoryEntry(BaseModel):
    """One prior user/assistant exchange supplied by the caller."""

    model_config = ConfigDict(frozen=True)

    request: str
    response: str = ""
    is_compaction_summary: bool = False

    def to_messages(self) -> list[ChatMessage]:
        messages = [ChatMessage.text(ChatMessageRole.USER, self.request)]
        if self.response:
            messages.append(ChatMessage.text(ChatMessageRole.ASSISTANT, self.response))
        return messages


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


class TextDelta(BaseModel):
    type: Literal["text"] = "text"
    value: str


class ThinkingDelta(BaseModel):
    type: Literal["thinking"] = "thinking"
    value: str


class ImageDelta(BaseModel):
    type: Literal["image"] = "image"
    mime_type: str
    data: bytes


class ToolUseEvent(BaseModel):
    """A finalized tool call; ``index`` is the stream-local fragment group."""

    type: Literal["tool_use"] = "tool_use"
    index: int
    tool_call_id: str
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    thought_signature: Any = None

    def to_part(self) -> ToolUsePart:
        return ToolUsePart(
            tool_call_id=self.tool_call_id,
            name=self.name,
            parameters=self.parameters,
            thought_signature=self.thought_signature,
        )


StreamEvent = Union[TextDelta, ThinkingDelta, ImageDelta, ToolUseEvent]


# ---------------------------------------------------------------------------
# Provider registry entries
# ---------------------------------------------------------------------------


class ModelInfo(BaseModel):
    """A configured language model (provider registry entry)."""

    id: str
    vendor: str
    model_name: str
    name: str = ""
    family: str | None = None
    api_key: str = ""
    base_url: str | None = None
    max_input_tokens: int | None = None
    max_output_tokens: int | None = None
    native_tools: bool = True

    @property
    def is_local(self) -> bool:
        return self.vendor in LOCAL_VENDORS

    @property
    def input_token_limit(self) -> int:
        if self.max_input_tokens:
            return self.max_input_tokens
        return LOCAL_MAX_INPUT_TOKENS if self.is_local else CLOUD_MAX_INPUT_TOKENS

    @property
    def output_token_limit(self) -> int:
        if self.max_output_tokens:
            return self.max_output_tokens
        return LOCAL_MAX_OUTPUT_TOKENS if self.is_local else CLOUD_MAX_OUTPUT_TOKENS


class ChatRequestOptions(BaseModel):
    """Per-request options forwarded to a provider adapter."""

    tools: list[dict[str, Any]] = Field(default_factory=list)
    temperature: float | None = None
    max_output_tokens: int | None = None

    def without_tools(self) -> ChatRequestOptions:
        return self.model_copy(update={"tools": []})


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass
class DataPart:
    """Binary tool output (e.g. an image read from disk)."""

    mime_type: str
    data: bytes


@dataclass
class ToolInvocation:
    """Request to run one registered tool."""

    call_id: str
    tool_id: str
    parameters: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    request_id: str | None = None


@dataclass
class ToolResult:
    """Result of a single tool execution."""

    content: list[TextPart | DataPart] = field(default_factory=list)
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_text(cls, text: str) -> ToolResult:
        return cls(content=[TextPart(value=text)])


@dataclass
class ToolDefinition:
    """Tool catalog entry as seen by the model."""

    id: str
    model_description: str
    input_schema: dict[str, Any] | None = None
    # Compatibility selector: model ids, vendors or families; None matches all.
    models: list[str] | None = None

    def matches_model(self, model: ModelInfo) -> bool:
        if not self.models:
            return True
        return any(sel in (model.id, model.vendor, model.family, model.model_name) for sel in self.models)

    def to_tool_schema(self) -> dict[str, Any]:
        """Standard function-calling schema (OpenAI-style) for any provider."""
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.model_description,
                "parameters": self.input_schema
                or {"type": "object", "properties": {}, "required": []},
            },
        }
