"""Mind -- long-term memory for chat personas.

Direct Python API::

    from mind import MemoryEngine, ChatTurn, HashEmbedder
    async with MemoryEngine.open(embedder=HashEmbedder()) as engine:
        await engine.ingest(ChatTurn("chat-1", "user-1", "I love hiking in Colorado"), "persona-1")
        bundle = await engine.context_for("any hiking tips?", "persona-1", "chat-1")

For on-device semantic embeddings install with ``pip install persona-mind[onnx]``.
"""

__version__ = "0.1.0"

from mind.config import MemoryConfig, mind_home
from mind.context import ContextBuilder, format_context
from mind.embeddings import (
    Embedder,
    EmbeddingError,
    HashEmbedder,
    LocalModelEmbedder,
)
from mind.engine import MemoryEngine
from mind.ingest import Ingestor, IngestResult
from mind.retriever import RetrievalError, Retriever
from mind.sqlite_store import MemoryStore
from mind.temporal import TimeRange, parse_time_range
from mind.types import (
    CategoryCount,
    ChatTurn,
    ContextBundle,
    EmotionType,
    Memory,
    MemoryFilters,
    MemoryHit,
    MemoryKind,
    Role,
)

__all__ = [
    "MemoryEngine",
    "MemoryStore",
    "MemoryConfig",
    "mind_home",
    # Pipeline
    "Ingestor",
    "IngestResult",
    "Retriever",
    "RetrievalError",
    "ContextBuilder",
    "format_context",
    "parse_time_range",
    "TimeRange",
    # Embeddings
    "Embedder",
    "EmbeddingError",
    "HashEmbedder",
    "LocalModelEmbedder",
    # Data model
    "CategoryCount",
    "ChatTurn",
    "ContextBundle",
    "EmotionType",
    "Memory",
    "MemoryFilters",
    "MemoryHit",
    "MemoryKind",
    "Role",
    # Meta
    "__version__",
]
