"""Provider registry: resolves model ids to adapters and dispatches chat requests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .config import EVENT_QUEUE_SIZE, vendor_credentials
from .errors import UnknownModelError
from .events import ChatResponse
from .models import ChatMessage, ChatRequestOptions, ModelInfo
from .providers import (
    AnthropicAdapter,
    GoogleAdapter,
    LocalServerAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    ProviderAdapter,
)

logger = logging.getLogger(__name__)

DEFAULT_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GoogleAdapter,
    "ollama": OllamaAdapter,
    "local": LocalServerAdapter,
}

VENDOR_ALIASES = {
    "gemini": "google",
    "claude": "anthropic",
    "llamacpp": "local",
    "llama.cpp": "local",
    "huggingface": "local",
    "localhost": "local",
}


def normalize_vendor(vendor: str) -> str:
    vendor = vendor.strip().lower()
    return VENDOR_ALIASES.get(vendor, vendor)


class ProviderRegistry:
    """
    Process-wide catalog of configured models and their adapters.

    Model ids not registered explicitly are resolved ad hoc:
    - "vendor:model_name" (e.g. "openai:gpt-4.1-nano", "gemini:gemini-2.5-flash")
    - "model_name" with no known vendor prefix, treated as an Ollama model
      (so "llama3:8b" stays a single Ollama tag).
    """

    def __init__(self, adapters: dict[str, type[ProviderAdapter]] | None = None) -> None:
        self._models: dict[str, ModelInfo] = {}
        self._adapter_classes = dict(DEFAULT_ADAPTERS if adapters is None else adapters)
        self._adapters: dict[str, ProviderAdapter] = {}
        self._listeners: list[Callable[[], None]] = []

    # -- catalog ------------------------------------------------------------

    def register(self, model: ModelInfo) -> None:
        model = model.model_copy(update={"vendor": normalize_vendor(model.vendor)})
        self._models[model.id] = model
        self._adapters.pop(model.id, None)
        logger.info("Registered model %s (%s:%s)", model.id, model.vendor, model.model_name)
        self._notify()

    def unregister(self, model_id: str) -> bool:
        removed = self._models.pop(model_id, None) is not None
        self._adapters.pop(model_id, None)
        if removed:
            self._notify()
        return removed

    def models(self) -> list[ModelInfo]:
        return list(self._models.values())

    def get(self, model_id: str) -> ModelInfo:
        """Return the registry entry for ``model_id``, resolving ad hoc ids."""
        if model_id in self._models:
            return self._models[model_id]
        model_id = (model_id or "").strip()
        if not model_id:
            raise UnknownModelError("No model selected.")
        vendor, sep, name = model_id.partition(":")
        vendor = normalize_vendor(vendor)
        if not sep or vendor not in self._adapter_classes:
            vendor, name = "ollama", model_id
        name = name.strip()
        if not name:
            raise UnknownModelError(f'Model id "{model_id}" has no model name.')
        api_key, base_url = vendor_credentials(vendor)
        return ModelInfo(id=model_id, vendor=vendor, model_name=name, name=name, api_key=api_key, base_url=base_url)

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call ``listener`` whenever the catalog changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    # -- adapters -----------------------------------------------------------

    def register_adapter(self, vendor: str, adapter_cls: type[ProviderAdapter]) -> None:
        vendor = normalize_vendor(vendor)
        self._adapter_classes[vendor] = adapter_cls
        for model_id in [k for k, a in self._adapters.items() if a.model.vendor == vendor]:
            del self._adapters[model_id]

    def adapter_for(self, model_id: str, client: Any | None = None) -> ProviderAdapter:
        model = self.get(model_id)
        cached = self._adapters.get(model.id)
        if cached is not None and cached.model == model and client is None:
            return cached
        adapter_cls = self._adapter_classes.get(model.vendor)
        if adapter_cls is None:
            raise UnknownModelError(f'Unsupported provider "{model.vendor}" for model {model.id}.')
        adapter = adapter_cls(model, client=client)
        self._adapters[model.id] = adapter
        return adapter

    # -- dispatch -----------------------------------------------------------

    def send_chat_request(
        self,
        model_id: str,
        messages: list[ChatMessage],
        options: ChatRequestOptions | None = None,
        cancellation: asyncio.Event | None = None,
        *,
        queue_size: int = EVENT_QUEUE_SIZE,
    ) -> ChatResponse:
        return self.adapter_for(model_id).send_chat_request(messages, options, cancellation, queue_size=queue_size)

    async def count_tokens(self, model_id: str, message: ChatMessage) -> int:
        return await self.adapter_for(model_id).count_tokens(message)


_default_registry: ProviderRegistry | None = None


def get_default_registry() -> ProviderRegistry:
    """Return the process-wide provider registry."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ProviderRegistry()
    return _default_registry


def set_default_registry(registry: ProviderRegistry) -> None:
    global _default_registry
    _default_registry = registry
