"""Provider adapters: one per vendor streaming protocol."""

from .anthropic_provider import AnthropicAdapter
from .base import ProviderAdapter, StreamState, ToolCallAccumulator, sanitize_schema
from .gemini_provider import GoogleAdapter
from .local_provider import LocalServerAdapter, OllamaAdapter
from .openai_provider import OpenAIAdapter

__all__ = [
    "ProviderAdapter",
    "StreamState",
    "ToolCallAccumulator",
    "sanitize_schema",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GoogleAdapter",
    "LocalServerAdapter",
    "OllamaAdapter",
]
