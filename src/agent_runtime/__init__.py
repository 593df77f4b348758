"""Agent runtime: multi-provider streaming, tool-calling loop and context compaction."""

from .errors import (
    AgentRuntimeError,
    AuthError,
    CancellationError,
    InvalidRequestError,
    ModelUnavailableError,
    ProviderError,
    RateLimitError,
    ToolExecutionError,
    TransportError,
    UnknownModelError,
)
from .events import ChatResponse, EventStream
from .llm import ProviderRegistry, get_default_registry, set_default_registry
from .loop import AbortReason, AgentLoop, LoopOptions, LoopResult, LoopState, Progress
from .models import (
    ChatMessage,
    ChatMessageRole,
    ChatRequestOptions,
    DataPart,
    HistoryEntry,
    ImagePart,
    ModelInfo,
    TextPart,
    ThinkingPart,
    ToolDefinition,
    ToolInvocation,
    ToolResult,
    ToolResultPart,
    ToolUsePart,
)
from .tool_gateway import ToolGateway, ToolPhaseResult
from .tools import BaseTool, ToolRegistry

__all__ = [
    "AbortReason",
    "AgentLoop",
    "AgentRuntimeError",
    "AuthError",
    "BaseTool",
    "CancellationError",
    "ChatMessage",
    "ChatMessageRole",
    "ChatRequestOptions",
    "ChatResponse",
    "DataPart",
    "EventStream",
    "HistoryEntry",
    "ImagePart",
    "InvalidRequestError",
    "LoopOptions",
    "LoopResult",
    "LoopState",
    "ModelInfo",
    "ModelUnavailableError",
    "Progress",
    "ProviderError",
    "ProviderRegistry",
    "RateLimitError",
    "TextPart",
    "ThinkingPart",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolGateway",
    "ToolInvocation",
    "ToolPhaseResult",
    "ToolRegistry",
    "ToolResult",
    "ToolResultPart",
    "ToolUsePart",
    "TransportError",
    "UnknownModelError",
    "get_default_registry",
    "set_default_registry",
]
