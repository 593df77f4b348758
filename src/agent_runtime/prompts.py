"""Prompt text used by the agent loop, the compactor and local-model adapters."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "[TASK_COMPLETE]"

NUDGE_MESSAGE = (
    "Use the available tools to complete the task, or if you have given your final answer, "
    f"end your next message with {COMPLETION_MARKER}."
)

SILENCE_MESSAGE = "The model did not return a response. Please try again or try with another model."

REPETITION_NOTE = (
    "\n*Stopped: the same tool was called repeatedly with no progress. "
    "If the task is done, you can start a new message.*\n"
)

ITERATION_LIMIT_NOTE = "\n\n*Note: Reached maximum number of iterations. The task may be incomplete.*"

TOOL_IMAGE_PLACEHOLDER = "Image file: see the image in the next user message for vision."
TOOL_IMAGE_HEADER = "Image(s) from {tool}: view below for vision."
EMPTY_TOOL_RESULT = "Tool executed successfully (no output)"

SUMMARY_ENTRY_REQUEST = "[Earlier conversation summary]"

DEFAULT_SYSTEM_PROMPT = f"""You are a coding agent working in an iterative loop. You can call tools, read \
their results and call more tools until the task is done.

# COMPLETION SIGNAL
- Always end with {COMPLETION_MARKER} when you are done and no further tool calls are needed.
- For greetings, thanks or general questions, reply with one short message ending with {COMPLETION_MARKER} \
and do not call any tools.
- For code or project tasks, do not include {COMPLETION_MARKER} until you have finished using tools and \
are giving your final summary.
- When you say you will do something, call the corresponding tool in that same response."""

LOCAL_FALLBACK_SYSTEM_PROMPT = "You are a helpful assistant."

_TOOL_PROTOCOL = (
    "\n\nYou have access to the following tools. To call a tool, respond ONLY with a JSON object in this "
    'format: {"tool_calls": [{"id": "call_abc123", "type": "function", "function": {"name": "tool_name", '
    '"arguments": "{\\"arg1\\": \\"val1\\"}"}}]}. \n\n'
    "IMPORTANT: After outputting the JSON tool call, you MUST STOP your response immediately. "
    "Do not provide any explanation or tool response yourself.\n\n"
    "Available tools:\n"
)


def summarizer_system_prompt(max_summary_tokens: int) -> str:
    return (
        'You are a conversation summarizer. Your task is to produce a concise "memory" summary of the '
        "following conversation that preserves all information important for continuing the discussion later.\n\n"
        "Preserve: key facts, decisions, code changes, file names and paths, user preferences, requirements, "
        "errors and fixes, and any context that would be needed to answer follow-up questions. Write in clear, "
        "dense prose. Do not include greetings or filler. "
        f"Keep the summary under {max_summary_tokens} tokens. Output only the summary, no preamble."
    )


def summarizer_user_prompt(transcript: str) -> str:
    return f"Summarize this conversation:\n\n{transcript}"


def tool_protocol_prompt(tools: list[dict[str, Any]]) -> str:
    """System-prompt extension teaching a model without native tools the JSON call format."""
    lines = []
    for t in tools:
        fn = t.get("function", t)
        lines.append(f"- {fn.get('name', '')}: {fn.get('description', '')}\n  Parameters: {json.dumps(fn.get('parameters'))}")
    return _TOOL_PROTOCOL + "\n".join(lines)


_prompt_cache: dict[Path | None, str] = {}


def _read_file(path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        logger.warning("Could not read system prompt file %s; using the built-in prompt", path)
        return ""
    return text.strip()


def get_default_system_prompt(path: Path | None = None) -> str:
    """Return the system prompt from ``path`` (cached after first read), else the built-in one."""
    if path not in _prompt_cache:
        _prompt_cache[path] = (_read_file(path) if path is not None else "") or DEFAULT_SYSTEM_PROMPT
    return _prompt_cache[path]
