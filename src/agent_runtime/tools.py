"""Tool protocol and the tool registry."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from .errors import ToolExecutionError
from .models import ModelInfo, ToolDefinition, ToolInvocation, ToolResult

logger = logging.getLogger(__name__)


class BaseTool(ABC):
    """Base class for tools the agent loop can call."""

    @property
    @abstractmethod
    def id(self) -> str:
        ...

    @property
    @abstractmethod
    def model_description(self) -> str:
        ...

    @property
    def input_schema(self) -> dict[str, Any] | None:
        """JSON Schema for parameters."""
        return None

    @property
    def models(self) -> list[str] | None:
        """Model ids, vendors or families this tool is offered to; None means all."""
        return None

    @abstractmethod
    async def invoke(self, invocation: ToolInvocation, cancellation: asyncio.Event | None = None) -> ToolResult:
        ...

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            id=self.id,
            model_description=self.model_description,
            input_schema=self.input_schema,
            models=self.models,
        )

    def to_tool_schema(self) -> dict[str, Any]:
        """Standard function-calling schema for any provider."""
        return self.to_definition().to_tool_schema()


class ToolRegistry:
    """Catalog of available tools. Read fresh by the gateway at every tool phase."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._listeners: list[Callable[[], None]] = []

    def register(self, tool: BaseTool) -> Callable[[], None]:
        """Add or replace a tool; returns a callable that unregisters it."""
        self._tools[tool.id] = tool
        self._notify()
        return lambda: self.unregister(tool.id)

    def unregister(self, tool_id: str) -> bool:
        removed = self._tools.pop(tool_id, None) is not None
        if removed:
            self._notify()
        return removed

    def get(self, tool_id: str) -> BaseTool | None:
        return self._tools.get(tool_id)

    def tools(self) -> list[ToolDefinition]:
        return [t.to_definition() for t in self._tools.values()]

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def tools_for_model(
        self,
        model: ModelInfo,
        user_selected_tools: dict[str, bool] | None = None,
    ) -> list[dict[str, Any]]:
        """Function schemas for the tools compatible with ``model`` and not disabled by the user."""
        selected = user_selected_tools or {}
        return [
            definition.to_tool_schema()
            for definition in self.tools()
            if definition.matches_model(model) and selected.get(definition.id, True) is not False
        ]

    async def invoke_tool(
        self,
        invocation: ToolInvocation,
        cancellation: asyncio.Event | None = None,
    ) -> ToolResult:
        tool = self.get(invocation.tool_id)
        if tool is None:
            raise ToolExecutionError(f"Tool {invocation.tool_id} not found")
        logger.info("Invoking tool %s (call %s)", invocation.tool_id, invocation.call_id)
        return await tool.invoke(invocation, cancellation)
