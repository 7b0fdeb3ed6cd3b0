"""
Mind context -- assembles what the model should know before it answers.

A ContextBundle pairs the recent transcript of the current chat (short-term)
with memories recalled from every chat of the persona (long-term).
``format_context`` renders a bundle into a prompt block.
"""

import logging
from datetime import datetime
from typing import List, Optional

from mind.config import MemoryConfig
from mind.retriever import Retriever
from mind.sqlite_store import MemoryStore
from mind.temporal import parse_time_range
from mind.types import ContextBundle, as_utc, utcnow

logger = logging.getLogger("mind.context")

# Rough chars-per-token ratio for English text
_CHARS_PER_TOKEN = 4


def estimate_tokens(*texts: str) -> int:
    return sum(len(t) for t in texts) // _CHARS_PER_TOKEN


def format_age(created_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Format a datetime as relative age string (e.g. '2d ago', '1w ago')."""
    if not created_at:
        return ""
    delta = as_utc(now or utcnow()) - as_utc(created_at)
    seconds = int(delta.total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    days = seconds // 86400
    if days < 7:
        return f"{days}d ago"
    if days < 30:
        return f"{days // 7}w ago"
    return f"{days // 30}mo ago"


class ContextBuilder:
    def __init__(self, store: MemoryStore, retriever: Retriever, config: Optional[MemoryConfig] = None):
        self._store = store
        self._retriever = retriever
        self._config = config or MemoryConfig()

    def context_for(self, message: str, persona_id: str, chat_id: str,
                    max_tokens: Optional[int] = None) -> ContextBundle:
        """Short-term transcript of ``chat_id`` plus long-term recall for ``message``.

        ``max_tokens`` is only a hint: the estimate is reported in
        ``total_tokens`` and trimming is left to the caller. Raises
        RetrievalError when recall fails outright.
        """
        config = self._config
        short_term = self._store.list_recent_for_chat(persona_id, chat_id, config.short_term_limit)

        filters = None
        if config.infer_time_range:
            time_range = parse_time_range(message)
            if time_range is not None:
                logger.debug("Restricting recall to %s", time_range.description)
                filters = time_range.to_filters()

        long_term = self._retriever.recall(persona_id, message, k=config.long_term_k, filters=filters)

        total_tokens = estimate_tokens(
            *(m.text for m in short_term), *(h.memory.text for h in long_term)
        )
        budget = config.max_tokens if max_tokens is None else max_tokens
        if budget and total_tokens > budget:
            logger.debug("Context estimate %d tokens exceeds budget %d", total_tokens, budget)
        return ContextBundle(short_term=short_term, long_term=long_term, total_tokens=total_tokens)


def format_context(bundle: ContextBundle, now: Optional[datetime] = None) -> str:
    """Render a bundle as a plain-text prompt block. Empty bundles render as ''."""
    now = now or utcnow()
    lines: List[str] = []
    if bundle.long_term:
        lines.append(f"[MEMORY] Relevant memories ({len(bundle.long_term)}):")
        for hit in bundle.long_term:
            memory = hit.memory
            details = [memory.kind.value.lower()]
            age = format_age(memory.created_at, now)
            if age:
                details.append(age)
            if hit.from_chat_title:
                details.append(f'from "{hit.from_chat_title}"')
            lines.append(f"  - ({', '.join(details)}) {memory.text}")
    if bundle.short_term:
        if lines:
            lines.append("")
        lines.append(f"[RECENT] This conversation ({len(bundle.short_term)} messages):")
        for memory in bundle.short_term:
            lines.append(f"  {memory.role.value}: {memory.text}")
    return "\n".join(lines)
