"""
Mind Engine -- async facade over ingestion, retrieval and the store.

This is the surface the chat layer talks to. Blocking SQLite and embedding
work runs on a thread pool so the event loop never waits on disk or a model.
Operations that can fail return a result dict (``{"success": False,
"error": ...}``) or an empty ContextBundle carrying ``error``; they do not
raise.

Usage:
    async with MemoryEngine.open(embedder=HashEmbedder()) as engine:
        await engine.ingest(ChatTurn("chat-1", "user-1", "I love hiking"), "persona-1")
        bundle = await engine.context_for("hiking plans?", "persona-1", "chat-1")
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, Dict, List, Optional

from mind.config import MemoryConfig
from mind.context import ContextBuilder
from mind.embeddings import Embedder, LocalModelEmbedder
from mind.ingest import Ingestor
from mind.retriever import Retriever
from mind.sqlite_store import MemoryStore
from mind.types import CategoryCount, ChatTurn, ContextBundle, MemoryHit, MemoryKind

logger = logging.getLogger("mind.engine")


class MemoryEngine:
    """Per-persona memory operations for one store.

    Create one per process (or per test) and pass it where it is needed;
    ``init()``/``dispose()`` or ``async with`` bound its lifetime.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        config: Optional[MemoryConfig] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        owns_store: bool = False,
    ):
        self.config = config or MemoryConfig()
        if store.dim != self.config.dim:
            raise ValueError(f"store dimension {store.dim} does not match config dim {self.config.dim}")
        if getattr(embedder, "dim", self.config.dim) != self.config.dim:
            raise ValueError(f"embedder dimension {embedder.dim} does not match config dim {self.config.dim}")
        self.store = store
        self.embedder = embedder
        self.ingestor = Ingestor(store, embedder, self.config)
        self.retriever = Retriever(store, embedder, self.config)
        self.context_builder = ContextBuilder(store, self.retriever, self.config)
        self._executor = executor
        self._owns_executor = executor is None
        self._owns_store = owns_store
        self._disposed = False

    @classmethod
    def open(cls, db_path=None, embedder: Optional[Embedder] = None,
             config: Optional[MemoryConfig] = None, use_vec_index: bool = True) -> "MemoryEngine":
        """Build an engine that owns its store (closed on dispose)."""
        config = config or MemoryConfig.from_env()
        embedder = embedder or LocalModelEmbedder(dim=config.dim)
        store = MemoryStore(db_path, dim=config.dim, use_vec_index=use_vec_index)
        return cls(store, embedder, config, owns_store=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> "MemoryEngine":
        """Start the worker pool and prune memories that aged out while closed."""
        self._get_executor()
        try:
            pruned = await self._run(self.ingestor.prune)
            if pruned:
                logger.info("Startup: pruned %d low-importance memories", pruned)
        except Exception as e:
            logger.warning("Startup prune failed: %s", e)
        return self

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=True)
        self._executor = None
        if self._owns_store:
            self.store.close()

    async def __aenter__(self) -> "MemoryEngine":
        return await self.init()

    async def __aexit__(self, *exc) -> None:
        await self.dispose()

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._disposed:
            raise RuntimeError("memory engine has been disposed")
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="mind")
        return self._executor

    async def _run(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._get_executor(), functools.partial(fn, *args, **kwargs))

    # ------------------------------------------------------------------
    # Enablement
    # ------------------------------------------------------------------

    async def enable(self, persona_id: str, enabled: bool = True) -> Dict[str, Any]:
        try:
            await self._run(self.store.set_enabled, persona_id, enabled)
            logger.info("Memory %s for persona %s", "enabled" if enabled else "disabled", persona_id)
            return {"success": True, "persona_id": persona_id, "enabled": enabled}
        except Exception as e:
            logger.error("Failed to set enablement for persona %s: %s", persona_id, e)
            return {"success": False, "error": str(e)}

    async def is_enabled(self, persona_id: str) -> bool:
        """Whether memory is on for a persona. Reports False if it cannot tell."""
        try:
            return await self._run(self.store.is_enabled, persona_id)
        except Exception as e:
            logger.error("Failed to read enablement for persona %s: %s", persona_id, e)
            return False

    async def clear_all_settings(self) -> Dict[str, Any]:
        """Forget every persona's enable flag (e.g. on sign-out)."""
        try:
            await self._run(self.store.clear_persona_settings)
            return {"success": True}
        except Exception as e:
            logger.error("Failed to clear persona settings: %s", e)
            return {"success": False, "error": str(e)}

    # ------------------------------------------------------------------
    # Ingest and context
    # ------------------------------------------------------------------

    async def ingest(self, turn: ChatTurn, persona_id: str, incognito: bool = False) -> Dict[str, Any]:
        """Remember a chat turn. A no-op while memory is disabled for the persona."""
        try:
            if not await self._run(self.store.is_enabled, persona_id):
                logger.debug("Memory disabled for persona %s, turn not stored", persona_id)
                return {"success": True, "skipped": "disabled", "stored": [], "deduplicated": []}
            result = await self._run(self.ingestor.ingest, turn, persona_id, incognito)
        except Exception as e:
            logger.error("Ingest failed for persona %s: %s", persona_id, e)
            return {"success": False, "error": str(e), "stored": [], "deduplicated": []}
        response: Dict[str, Any] = {
            "success": result.success,
            "stored": result.stored,
            "deduplicated": result.deduplicated,
            "skipped": result.skipped,
        }
        if result.errors:
            response["error"] = "; ".join(result.errors)
        return response

    async def context_for(self, message: str, persona_id: str, chat_id: str,
                          max_tokens: Optional[int] = None) -> ContextBundle:
        """Context for the next reply. Empty when disabled or on failure."""
        try:
            if not await self._run(self.store.is_enabled, persona_id):
                return ContextBundle.empty()
            return await self._run(self.context_builder.context_for, message, persona_id, chat_id, max_tokens)
        except Exception as e:
            logger.error("Context build failed for persona %s: %s", persona_id, e)
            return ContextBundle.empty(error=str(e))

    async def recall(self, persona_id: str, query: str, k: Optional[int] = None) -> List[MemoryHit]:
        try:
            return await self._run(self.retriever.recall, persona_id, query, k)
        except Exception as e:
            logger.error("Recall failed for persona %s: %s", persona_id, e)
            return []

    # ------------------------------------------------------------------
    # Live views
    # ------------------------------------------------------------------

    async def _watch(self, fetch) -> AsyncIterator[Any]:
        """Yield ``fetch()`` now and again whenever the store has changed."""
        last_version = None
        last_value = None
        first = True
        while True:
            version = self.store.version
            if version != last_version:
                try:
                    value = await self._run(fetch)
                except Exception as e:
                    logger.warning("Live view refresh failed: %s", e)
                else:
                    last_version = version
                    if first or value != last_value:
                        first = False
                        last_value = value
                        yield value
            await asyncio.sleep(self.config.observe_interval_s)

    def observe_counts(self, persona_id: str, user_id: Optional[str] = None) -> AsyncIterator[List[CategoryCount]]:
        """Live per-kind counts. Cancel the consuming task or ``aclose()`` to stop."""
        return self._watch(functools.partial(self.store.counts_by_kind, persona_id, user_id))

    def feed(
        self,
        persona_id: str,
        kind: Optional[MemoryKind] = None,
        query: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[List[MemoryHit]]:
        """Live list of memories, newest first, filtered by kind and text."""
        def fetch() -> List[MemoryHit]:
            memories = self.store.list_by_persona(
                persona_id, user_id=user_id, kind=kind, text_query=query or None, limit=limit,
            )
            titles = self.store.get_chat_titles(m.chat_id for m in memories)
            return [MemoryHit(memory=m, score=1.0, from_chat_title=titles.get(m.chat_id)) for m in memories]

        return self._watch(fetch)

    # ------------------------------------------------------------------
    # Deletion and maintenance
    # ------------------------------------------------------------------

    async def delete(self, memory_id: str) -> Dict[str, Any]:
        try:
            if await self._run(self.store.delete, memory_id):
                logger.info("Deleted memory %s", memory_id[:12])
                return {"success": True, "deleted_id": memory_id}
            return {"success": False, "error": f"Memory {memory_id} not found"}
        except Exception as e:
            logger.error("Failed to delete memory %s: %s", memory_id[:12], e)
            return {"success": False, "error": str(e)}

    async def delete_all(self, persona_id: str) -> Dict[str, Any]:
        try:
            deleted = await self._run(self.store.delete_all_for_persona, persona_id)
            return {"success": True, "deleted": deleted}
        except Exception as e:
            logger.error("Failed to delete memories of persona %s: %s", persona_id, e)
            return {"success": False, "error": str(e)}

    async def delete_all_for_user(self, user_id: str) -> Dict[str, Any]:
        try:
            deleted = await self._run(self.store.delete_all_for_user, user_id)
            return {"success": True, "deleted": deleted}
        except Exception as e:
            logger.error("Failed to delete memories of user %s: %s", user_id, e)
            return {"success": False, "error": str(e)}

    async def counts(self, persona_id: str, user_id: Optional[str] = None) -> List[CategoryCount]:
        """One-shot per-kind counts; see observe_counts for the live version."""
        try:
            return await self._run(self.store.counts_by_kind, persona_id, user_id)
        except Exception as e:
            logger.error("Failed to count memories of persona %s: %s", persona_id, e)
            return []

    async def stats(self) -> Dict[str, Any]:
        try:
            return await self._run(self.store.stats)
        except Exception as e:
            logger.error("Status check failed: %s", e)
            return {"ok": False, "error": str(e)}

    async def get_count(self, persona_id: str, user_id: Optional[str] = None) -> int:
        """Number of memories of a persona. Reports 0 if the store cannot be read."""
        try:
            return await self._run(self.store.count, persona_id, user_id)
        except Exception as e:
            logger.error("Failed to count memories of persona %s: %s", persona_id, e)
            return 0

    async def prune(self, persona_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            pruned = await self._run(self.ingestor.prune, persona_id)
            return {"success": True, "pruned": pruned}
        except Exception as e:
            logger.error("Prune failed: %s", e)
            return {"success": False, "error": str(e)}
