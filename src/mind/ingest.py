"""
Mind ingestion -- turns chat turns into stored memories.

Each non-blank side of a turn (user and assistant) is handled on its own:
normalize, classify, score, embed, quantize, then one atomic store write
that also collapses near-duplicates. Embedding happens before the write so
a failing embedder never leaves a half-written memory behind.
"""

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from mind.config import MemoryConfig
from mind.embeddings import Embedder, EmbeddingError, check_dimension
from mind.heuristics import calculate_importance, classify_kind, detect_emotion
from mind.normalize import normalize
from mind.quantize import quantize
from mind.sqlite_store import MemoryStore
from mind.types import ChatTurn, Memory, Role, as_utc, utcnow

logger = logging.getLogger("mind.ingest")


@dataclass
class IngestResult:
    """What happened to each side of a turn.

    ``stored`` holds ids of new memories, ``deduplicated`` ids of existing
    memories a message collapsed into, and ``errors`` one message per side
    that failed.
    """

    stored: List[str] = field(default_factory=list)
    deduplicated: List[str] = field(default_factory=list)
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class Ingestor:
    def __init__(self, store: MemoryStore, embedder: Embedder, config: Optional[MemoryConfig] = None):
        self._store = store
        self._embedder = embedder
        self._config = config or MemoryConfig()
        self._last_prune: Dict[str, float] = {}

    def ingest(self, turn: ChatTurn, persona_id: str, incognito: bool = False) -> IngestResult:
        """Store both sides of a turn. One side failing does not stop the other.

        ``incognito`` is accepted for callers that track it but does not
        change what is stored.
        """
        if incognito:
            logger.debug("Ingesting incognito turn for chat %s", turn.chat_id)
        created_at = as_utc(turn.timestamp) if turn.timestamp is not None else utcnow()
        result = IngestResult()

        for role, raw in ((Role.USER, turn.user_message), (Role.MODEL, turn.assistant_message)):
            if raw is None:
                continue
            try:
                outcome = self.ingest_message(
                    raw, role, persona_id, turn.user_id, turn.chat_id,
                    created_at, chat_title=turn.chat_title,
                )
            except (EmbeddingError, ValueError, sqlite3.Error) as e:
                logger.error("Failed to ingest %s message for persona %s: %s", role.value, persona_id, e)
                result.errors.append(f"{role.value}: {e}")
                continue
            if outcome is None:
                result.skipped += 1
                continue
            memory_id, created = outcome
            (result.stored if created else result.deduplicated).append(memory_id)

        if result.stored:
            self._maybe_prune(persona_id)
        return result

    def ingest_message(
        self,
        text: str,
        role: Role,
        persona_id: str,
        user_id: str,
        chat_id: Optional[str],
        created_at: datetime,
        chat_title: Optional[str] = None,
    ) -> Optional[Tuple[str, bool]]:
        """Store one message. Returns None when it normalizes to nothing.

        Raises EmbeddingError when the embedder fails, in which case nothing
        is written.
        """
        normalized = normalize(text)
        if not normalized:
            logger.debug("Skipping blank %s message", Role(role).value)
            return None

        kind = classify_kind(normalized)
        emotion = detect_emotion(normalized)
        importance = calculate_importance(normalized, kind, emotion)

        try:
            raw_vector = self._embedder.embed(normalized)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"embedder failed: {e}") from e
        vector = quantize(check_dimension(raw_vector, self._config.dim))

        memory = Memory(
            id=str(uuid.uuid4()),
            persona_id=persona_id,
            user_id=user_id,
            chat_id=chat_id,
            role=Role(role),
            text=normalized,
            kind=kind,
            emotion=emotion,
            importance=importance,
            created_at=created_at,
            last_accessed=created_at,
        )
        memory_id, created = self._store.insert_memory(
            memory,
            vector,
            chat_title=chat_title,
            dedupe_threshold=self._config.dedupe_cosine,
            dedupe_window=self._config.dedupe_window,
            max_per_persona=self._config.max_per_persona,
        )
        if created:
            logger.debug("Stored %s memory %s (importance %.2f)", kind.value, memory_id, importance)
        return memory_id, created

    def prune(self, persona_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        """Delete old memories whose importance is below the configured floor."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self._config.prune_after_days)
        return self._store.prune_low_importance(cutoff, self._config.importance_floor, persona_id=persona_id)

    def _maybe_prune(self, persona_id: str) -> None:
        """Prune at most once per ``prune_interval_s`` per persona."""
        now = time.monotonic()
        last = self._last_prune.get(persona_id)
        if last is not None and now - last < self._config.prune_interval_s:
            return
        self._last_prune[persona_id] = now
        try:
            self.prune(persona_id)
        except sqlite3.Error as e:
            logger.warning("Periodic prune failed: %s", e)
