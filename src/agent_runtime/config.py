"""Runtime configuration: defaults, limits and environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Agent loop
DEFAULT_MAX_ITERATIONS = 25
MAX_ITERATIONS_CEILING = 100
REPEATED_TOOL_CALL_THRESHOLD = 3
REPEATED_TOOL_CALL_WINDOW = 6
MAX_NO_COMPLETION_RESPONSES = 2
PROGRESS_UPDATE_INTERVAL = 0.1  # seconds

# Streaming
EVENT_QUEUE_SIZE = 256
DEFAULT_TEMPERATURE = 0.3

# Context compaction
COMPACTION_THRESHOLD = 0.9
RECENT_HISTORY_FRACTION = 0.1
SUMMARY_LENGTH_FRACTION = 0.1
MIN_SUMMARY_TOKENS = 100
CHARS_PER_TOKEN = 4
DEFAULT_MAX_INPUT_TOKENS = 128000

# Model registry defaults
LOCAL_VENDORS = frozenset({"ollama", "local"})
CLOUD_MAX_INPUT_TOKENS = 100000
CLOUD_MAX_OUTPUT_TOKENS = 8000
LOCAL_MAX_INPUT_TOKENS = 32000
LOCAL_MAX_OUTPUT_TOKENS = 1000

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_LOCAL_SERVER_URL = "http://127.0.0.1:38452/v1"

# Local servers without native tool calling: hold back text that may be a
# tool-call JSON object until it grows past this many characters.
PROMPT_TOOL_HOLD_CHARS = 500


def clamp_max_iterations(value: int | str | None) -> int:
    """Clamp an operator-supplied iteration limit to [1, MAX_ITERATIONS_CEILING]."""
    try:
        n = int(value) if value is not None else DEFAULT_MAX_ITERATIONS
    except (TypeError, ValueError):
        return DEFAULT_MAX_ITERATIONS
    return min(MAX_ITERATIONS_CEILING, max(1, n))


@dataclass
class RuntimeSettings:
    """Process-level settings, usually built from the environment."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_interval: float = PROGRESS_UPDATE_INTERVAL
    event_queue_size: int = EVENT_QUEUE_SIZE
    system_prompt_path: Path | None = None

    @classmethod
    def from_env(cls) -> RuntimeSettings:
        load_dotenv()
        interval_ms = os.getenv("AGENT_PROGRESS_INTERVAL_MS")
        queue_size = os.getenv("AGENT_EVENT_QUEUE_SIZE")
        prompt_path = os.getenv("AGENT_SYSTEM_PROMPT_PATH")
        return cls(
            max_iterations=clamp_max_iterations(os.getenv("AGENT_MAX_ITERATIONS")),
            progress_interval=(
                int(interval_ms) / 1000 if interval_ms and interval_ms.isdigit() else PROGRESS_UPDATE_INTERVAL
            ),
            event_queue_size=int(queue_size) if queue_size and queue_size.isdigit() else EVENT_QUEUE_SIZE,
            system_prompt_path=Path(prompt_path) if prompt_path else None,
        )


def vendor_credentials(vendor: str) -> tuple[str, str | None]:
    """Return (api_key, base_url) for a vendor from the environment."""
    load_dotenv()
    if vendor == "openai":
        return os.getenv("OPENAI_API_KEY") or "", os.getenv("OPENAI_BASE_URL")
    if vendor == "anthropic":
        return os.getenv("ANTHROPIC_API_KEY") or "", os.getenv("ANTHROPIC_BASE_URL")
    if vendor == "google":
        return os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY") or "", None
    if vendor == "ollama":
        return "", os.getenv("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if vendor == "local":
        return "", os.getenv("LOCAL_SERVER_URL") or DEFAULT_LOCAL_SERVER_URL
    return "", None
