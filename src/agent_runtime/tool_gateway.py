"""Tool invocation gateway: runs a batch of model tool calls and shapes the results."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .errors import CANCELED_MESSAGE
from .models import (
    ChatMessage,
    ChatMessageRole,
    DataPart,
    ImagePart,
    TextPart,
    ToolInvocation,
    ToolResult,
    ToolResultPart,
    ToolUsePart,
)
from .prompts import EMPTY_TOOL_RESULT, TOOL_IMAGE_HEADER, TOOL_IMAGE_PLACEHOLDER
from .tools import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class ToolPhaseResult:
    """Results of one tool phase, in call order."""

    results: list[ToolResultPart] = field(default_factory=list)
    images: list[ImagePart] = field(default_factory=list)
    image_sources: list[str] = field(default_factory=list)

    def to_messages(self) -> list[ChatMessage]:
        """The tool_result message, followed by a user message carrying any images."""
        messages = [ChatMessage(role=ChatMessageRole.USER, content=list(self.results))]
        if self.images:
            header = TOOL_IMAGE_HEADER.format(tool=", ".join(dict.fromkeys(self.image_sources)))
            messages.append(ChatMessage(role=ChatMessageRole.USER, content=[TextPart(value=header), *self.images]))
        return messages


def _error_part(call_id: str, message: str) -> ToolResultPart:
    return ToolResultPart(tool_call_id=call_id, value=[TextPart(value=message)], is_error=True)


class ToolGateway:
    """Executes model-requested tool calls sequentially against a ToolRegistry."""

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    async def execute(
        self,
        calls: list[ToolUsePart],
        cancellation: asyncio.Event | None = None,
        *,
        session_id: str | None = None,
        request_id: str | None = None,
        user_selected_tools: dict[str, bool] | None = None,
    ) -> ToolPhaseResult:
        """Run every call in order; every call gets exactly one result."""
        phase = ToolPhaseResult()
        available = {definition.id for definition in self.registry.tools()}
        disabled = {tool_id for tool_id, enabled in (user_selected_tools or {}).items() if enabled is False}

        for call in calls:
            if cancellation is not None and cancellation.is_set():
                phase.results.append(_error_part(call.tool_call_id, CANCELED_MESSAGE))
                continue
            if call.name not in available:
                logger.error("Model requested unknown tool %s", call.name)
                phase.results.append(_error_part(call.tool_call_id, f"Error executing tool: Tool {call.name} not found"))
                continue
            if call.name in disabled:
                logger.warning("Model requested disabled tool %s", call.name)
                phase.results.append(_error_part(call.tool_call_id, f"Error executing tool: Tool {call.name} is disabled"))
                continue

            invocation = ToolInvocation(
                call_id=call.tool_call_id,
                tool_id=call.name,
                parameters=call.parameters,
                session_id=session_id,
                request_id=request_id,
            )
            try:
                result = await self.registry.invoke_tool(invocation, cancellation)
            except Exception as exc:
                logger.error("Tool %s failed: %s", call.name, exc)
                phase.results.append(_error_part(call.tool_call_id, f"Error executing tool: {exc}"))
                continue

            if result.error:
                logger.error("Tool %s returned an error: %s", call.name, result.error)
                phase.results.append(_error_part(call.tool_call_id, f"Error executing tool: {result.error}"))
                continue

            phase.results.append(self._to_result_part(call, result, phase))

        return phase

    @staticmethod
    def _to_result_part(call: ToolUsePart, result: ToolResult, phase: ToolPhaseResult) -> ToolResultPart:
        value: list[TextPart] = []
        for part in result.content:
            if isinstance(part, DataPart):
                if part.mime_type.startswith("image/"):
                    phase.images.append(ImagePart(mime_type=part.mime_type, data=part.data))
                    phase.image_sources.append(call.name)
                    value.append(TextPart(value=TOOL_IMAGE_PLACEHOLDER))
                else:
                    value.append(TextPart(value=part.data.decode("utf-8", errors="replace")))
            elif part.value:
                value.append(part)
        if not value:
            value = [TextPart(value=EMPTY_TOOL_RESULT)]
        return ToolResultPart(tool_call_id=call.tool_call_id, value=value)
