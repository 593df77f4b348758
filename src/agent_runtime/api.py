"""FastAPI router for the agent runtime."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, FastAPI
from pydantic import BaseModel, Field

from .config import RuntimeSettings
from .llm import get_default_registry
from .loop import AgentLoop, LoopOptions
from .models import HistoryEntry
from .tools import ToolRegistry

router = APIRouter(prefix="/agent", tags=["agent"])

_default_tools = ToolRegistry()
_default_loop: AgentLoop | None = None


def get_tool_registry() -> ToolRegistry:
    """Tools served by this process; register BaseTool instances here at startup."""
    return _default_tools


def get_agent_loop() -> AgentLoop:
    global _default_loop
    if _default_loop is None:
        settings = RuntimeSettings.from_env()
        _default_loop = AgentLoop(
            get_default_registry(),
            get_tool_registry(),
            options=LoopOptions.from_settings(settings),
        )
    return _default_loop


class AgentRunRequest(BaseModel):
    """Request body for POST /agent/run."""

    message: str = Field(..., description="User message")
    model: str = Field(
        ...,
        description=(
            "Registered model id, or 'vendor:model' (e.g. 'openai:gpt-4o-mini', "
            "'anthropic:claude-sonnet-4-5', 'gemini:gemini-2.5-flash'). Without a known "
            "vendor prefix the value is treated as an Ollama model name."
        ),
    )
    system_prompt: str | None = Field(None, description="Optional system prompt")
    history: list[HistoryEntry] = Field(default_factory=list, description="Prior exchanges, oldest first")
    max_iterations: int | None = Field(None, description="Loop iteration limit (1-100)")
    disabled_tools: list[str] = Field(default_factory=list, description="Tool ids to withhold from the model")


class ProgressItem(BaseModel):
    kind: str
    content: str


class AgentRunResponse(BaseModel):
    """Response for POST /agent/run."""

    state: str
    abort_reason: str | None = None
    reply: str
    iterations: int = 0
    tool_invocations: int = 0
    progress: list[ProgressItem] = Field(default_factory=list)


@router.post("/run", response_model=AgentRunResponse)
async def run_agent(request: AgentRunRequest, loop: AgentLoop = Depends(get_agent_loop)) -> AgentRunResponse:
    """Run one agent turn and return the outcome. Loop aborts are reported, not raised."""
    base = loop.options
    options = LoopOptions(
        max_iterations=request.max_iterations or base.max_iterations,
        progress_interval=base.progress_interval,
        event_queue_size=base.event_queue_size,
        user_selected_tools={tool_id: False for tool_id in request.disabled_tools} or None,
        temperature=base.temperature,
        system_prompt_path=base.system_prompt_path,
        request_id=uuid.uuid4().hex,
    )
    result = await loop.run_turn(
        request.message,
        request.model,
        history=request.history,
        system_prompt=request.system_prompt,
        options=options,
    )
    return AgentRunResponse(
        state=result.state.value,
        abort_reason=result.abort_reason.value if result.abort_reason else None,
        reply=result.reply,
        iterations=result.iterations,
        tool_invocations=result.tool_invocations,
        progress=[ProgressItem(kind=p.kind, content=p.content) for p in result.progress],
    )


def create_app() -> FastAPI:
    app = FastAPI(title="Agent Runtime", version="0.1.0")
    app.include_router(router)
    return app
