"""
Mind retrieval -- hybrid lexical + vector recall with fused scoring.

    score = w1*lexical + w2*cosine + w3*recency + w4*importance

Candidates come from the FTS5 index and the vector index separately and are
merged by memory id; a signal a candidate lacks counts as 0. If one index
fails the other still answers; only both failing is an error.
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional

from mind.config import MemoryConfig
from mind.embeddings import Embedder, check_dimension
from mind.normalize import normalize
from mind.sqlite_store import MemoryStore
from mind.types import Memory, MemoryFilters, MemoryHit, as_utc, utcnow

logger = logging.getLogger("mind.retriever")


class RetrievalError(RuntimeError):
    """Both the lexical and the vector index failed for a query."""


def recency_score(created_at: datetime, now: datetime, decay_days: float = 30.0) -> float:
    """exp(-age / decay_days), in [0, 1]. Timestamps in the future score 1.0."""
    age_days = (as_utc(now) - as_utc(created_at)).total_seconds() / 86400.0
    if age_days <= 0:
        return 1.0
    return math.exp(-age_days / decay_days)


def fuse_score(lexical: float, cosine: float, recency: float, importance: float,
               config: Optional[MemoryConfig] = None) -> float:
    w1, w2, w3, w4 = (config or MemoryConfig()).weights
    return w1 * lexical + w2 * cosine + w3 * recency + w4 * importance


class Retriever:
    def __init__(self, store: MemoryStore, embedder: Embedder, config: Optional[MemoryConfig] = None):
        self._store = store
        self._embedder = embedder
        self._config = config or MemoryConfig()

    def recall(
        self,
        persona_id: str,
        query: str,
        k: Optional[int] = None,
        filters: Optional[MemoryFilters] = None,
        now: Optional[datetime] = None,
    ) -> List[MemoryHit]:
        """Top ``k`` memories of one persona for ``query``, best first.

        Ties on score go to the newer memory. Returned memories have their
        last_accessed refreshed. Raises RetrievalError when neither index
        could be searched.
        """
        config = self._config
        k = config.k_return if k is None else k
        if k <= 0:
            return []
        text = normalize(query)
        if not text:
            return []
        now = now or utcnow()

        candidates: Dict[str, Memory] = {}
        lexical: Dict[str, float] = {}
        cosine: Dict[str, float] = {}
        failures = []

        try:
            for memory, score in self._store.search_fts(persona_id, text, config.k_fts):
                candidates[memory.id] = memory
                lexical[memory.id] = score
        except Exception as e:
            logger.warning("Lexical search failed, continuing with vectors only: %s", e)
            failures.append(e)

        try:
            embedding = check_dimension(self._embedder.embed(text), config.dim)
            for memory, similarity in self._store.search_vectors(persona_id, embedding, config.k_vec):
                candidates.setdefault(memory.id, memory)
                cosine[memory.id] = similarity
        except Exception as e:
            logger.warning("Vector search failed, continuing with lexical only: %s", e)
            failures.append(e)

        if len(failures) == 2:
            raise RetrievalError(
                f"both indices failed: lexical: {failures[0]}; vector: {failures[1]}"
            ) from failures[1]

        hits = []
        for memory_id, memory in candidates.items():
            if filters is not None and not filters.matches(memory):
                continue
            lex = lexical.get(memory_id, 0.0)
            cos = cosine.get(memory_id, 0.0)
            rec = recency_score(memory.created_at, now, config.recency_decay_days)
            score = fuse_score(lex, cos, rec, memory.importance, config)
            hits.append(MemoryHit(memory=memory, score=score, lexical=lex, cosine=cos, recency=rec))

        hits.sort(key=lambda h: (h.score, h.memory.created_at), reverse=True)
        hits = hits[:k]
        if not hits:
            return hits

        try:
            self._store.touch([h.memory.id for h in hits], now)
            for hit in hits:
                hit.memory.last_accessed = now
        except Exception as e:
            logger.warning("Failed to refresh last_accessed for %d hits: %s", len(hits), e)

        titles = self._store.get_chat_titles(h.memory.chat_id for h in hits)
        for hit in hits:
            hit.from_chat_title = titles.get(hit.memory.chat_id)
        logger.debug("Recalled %d of %d candidates for persona %s", len(hits), len(candidates), persona_id)
        return hits
