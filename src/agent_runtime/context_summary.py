"""Context compaction: summarize older history when usage nears the input budget."""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Iterable

from .config import (
    CHARS_PER_TOKEN,
    COMPACTION_THRESHOLD,
    MIN_SUMMARY_TOKENS,
    RECENT_HISTORY_FRACTION,
    SUMMARY_LENGTH_FRACTION,
)
from .llm import ProviderRegistry, get_default_registry
from .models import ChatMessage, ChatMessageRole, ChatRequestOptions, HistoryEntry, TextDelta
from .prompts import SUMMARY_ENTRY_REQUEST, summarizer_system_prompt, summarizer_user_prompt

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per CHARS_PER_TOKEN characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _message_text(message: ChatMessage) -> str:
    parts = [message.text_content()]
    parts.extend(r.text() for r in message.tool_results())
    parts.extend(json.dumps(u.parameters) for u in message.tool_uses())
    return "".join(parts)


async def count_tokens(
    messages: Iterable[ChatMessage],
    model_id: str,
    *,
    registry: ProviderRegistry,
) -> int:
    """Sum per-message provider token counts, estimating where the provider cannot count."""
    total = 0
    estimated = 0
    for message in messages:
        try:
            total += await registry.count_tokens(model_id, message)
        except Exception as exc:
            logger.debug("Token count unavailable for %s: %s", model_id, exc)
            total += estimate_tokens(_message_text(message))
            estimated += 1
    if estimated:
        logger.warning(
            "Estimated %d message token count(s) for %s at %d chars/token (uncalibrated)",
            estimated,
            model_id,
            CHARS_PER_TOKEN,
        )
    return total


def format_transcript(entries: list[HistoryEntry]) -> str:
    """Format history entries as text for the summarizer."""
    parts = []
    for entry in entries:
        parts.append(f"User: {entry.request.strip()}")
        if entry.response.strip():
            parts.append(f"Assistant: {entry.response.strip()}")
    return "\n\n".join(parts)


async def summarize_entries(
    entries: list[HistoryEntry],
    model_id: str,
    max_summary_tokens: int,
    cancellation: asyncio.Event | None = None,
    *,
    registry: ProviderRegistry,
) -> str:
    """Use the model to summarize ``entries``. Returns the summary text (may be empty)."""
    transcript = format_transcript(entries)
    if not transcript.strip():
        return ""
    messages = [
        ChatMessage.text(ChatMessageRole.SYSTEM, summarizer_system_prompt(max_summary_tokens)),
        ChatMessage.text(ChatMessageRole.USER, summarizer_user_prompt(transcript)),
    ]
    response = registry.send_chat_request(
        model_id,
        messages,
        ChatRequestOptions(max_output_tokens=max_summary_tokens),
        cancellation,
    )
    chunks: list[str] = []
    try:
        async for event in response.stream:
            if cancellation is not None and cancellation.is_set():
                return ""
            if isinstance(event, TextDelta):
                chunks.append(event.value)
    finally:
        response.discard()
    return "".join(chunks).strip()


async def maybe_compact(
    history: list[HistoryEntry],
    model_id: str,
    max_input_tokens: int,
    cancellation: asyncio.Event | None = None,
    *,
    registry: ProviderRegistry | None = None,
    extra_messages: Iterable[ChatMessage] = (),
) -> list[HistoryEntry]:
    """
    If history (plus ``extra_messages``) uses at least COMPACTION_THRESHOLD of
    ``max_input_tokens``, replace all but the most recent entries with one
    summary entry. Returns the original list whenever compaction is skipped or
    fails.
    """
    if len(history) <= 1:
        return history
    registry = registry or get_default_registry()

    messages = [m for entry in history for m in entry.to_messages()]
    messages.extend(extra_messages)
    used = await count_tokens(messages, model_id, registry=registry)
    limit = COMPACTION_THRESHOLD * max_input_tokens
    if used < limit:
        logger.debug("History uses %d of %d tokens; no compaction", used, max_input_tokens)
        return history

    # round() absorbs float error, e.g. 0.1 * 30 == 3.0000000000000004
    keep = max(1, math.ceil(round(RECENT_HISTORY_FRACTION * len(history), 9)))
    older, recent = history[:-keep], history[-keep:]
    max_summary_tokens = max(MIN_SUMMARY_TOKENS, math.floor(round(SUMMARY_LENGTH_FRACTION * max_input_tokens, 9)))
    logger.info(
        "History uses %d of %d tokens; summarizing %d older entries, keeping %d",
        used,
        max_input_tokens,
        len(older),
        len(recent),
    )

    try:
        summary = await summarize_entries(older, model_id, max_summary_tokens, cancellation, registry=registry)
    except Exception as exc:
        logger.error("History summarization failed; keeping full history: %s", exc)
        return history
    if cancellation is not None and cancellation.is_set():
        logger.info("History summarization canceled; keeping full history")
        return history
    if not summary:
        logger.warning("Summarizer returned no text; keeping full history")
        return history

    summary_entry = HistoryEntry(request=SUMMARY_ENTRY_REQUEST, response=summary, is_compaction_summary=True)
    return [summary_entry, *recent]
