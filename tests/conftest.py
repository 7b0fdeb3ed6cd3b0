"""Mind test configuration."""
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio

# Ensure the mind package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mind.config import MemoryConfig
from mind.context import ContextBuilder
from mind.embeddings import EmbeddingError, HashEmbedder
from mind.engine import MemoryEngine
from mind.heuristics import calculate_importance, classify_kind, detect_emotion
from mind.ingest import Ingestor
from mind.quantize import quantize
from mind.retriever import Retriever
from mind.sqlite_store import MemoryStore
from mind.types import Memory, Role

TEST_DIM = 128


class FailingEmbedder:
    """Embedder whose capability is unavailable."""

    dim = TEST_DIM

    def embed(self, text):
        raise EmbeddingError("model not loaded")


class WrongDimEmbedder:
    dim = TEST_DIM

    def embed(self, text):
        return [0.1] * (TEST_DIM // 2)


@pytest.fixture(autouse=True)
def tmp_mind_dir(tmp_path, monkeypatch):
    """Point MIND_HOME at a temporary directory and clear MIND_* overrides."""
    import os

    for var in list(os.environ):
        if var.startswith("MIND_"):
            monkeypatch.delenv(var, raising=False)
    mind_dir = tmp_path / ".mind"
    mind_dir.mkdir()
    monkeypatch.setenv("MIND_HOME", str(mind_dir))
    return mind_dir


@pytest.fixture
def config():
    return MemoryConfig(dim=TEST_DIM, observe_interval_s=0.05)


@pytest.fixture
def embedder():
    return HashEmbedder(dim=TEST_DIM)


@pytest.fixture
def store(tmp_mind_dir):
    """Create a fresh MemoryStore for testing."""
    s = MemoryStore(db_path=tmp_mind_dir / "test.db", dim=TEST_DIM)
    yield s
    s.close()


@pytest.fixture
def brute_store(tmp_mind_dir):
    """A store that never uses the sqlite-vec index."""
    s = MemoryStore(db_path=tmp_mind_dir / "brute.db", dim=TEST_DIM, use_vec_index=False)
    yield s
    s.close()


@pytest.fixture
def ingestor(store, embedder, config):
    return Ingestor(store, embedder, config)


@pytest.fixture
def retriever(store, embedder, config):
    return Retriever(store, embedder, config)


@pytest.fixture
def context_builder(store, retriever, config):
    return ContextBuilder(store, retriever, config)


@pytest_asyncio.fixture
async def engine(store, embedder, config):
    eng = MemoryEngine(store, embedder, config)
    await eng.init()
    yield eng
    await eng.dispose()


@pytest.fixture
def add_memory(embedder):
    """Insert a classified, embedded memory straight into a store."""
    def _add(target, text, persona_id="p1", chat_id="c1", user_id="u1", role=Role.USER,
             created_at=None, importance=None, dedupe=False, chat_title=None):
        created_at = created_at or datetime.now(timezone.utc)
        kind = classify_kind(text)
        emotion = detect_emotion(text)
        memory = Memory(
            id=str(uuid.uuid4()),
            persona_id=persona_id,
            user_id=user_id,
            chat_id=chat_id,
            role=role,
            text=text,
            kind=kind,
            emotion=emotion,
            importance=calculate_importance(text, kind, emotion) if importance is None else importance,
            created_at=created_at,
            last_accessed=created_at,
        )
        target.insert_memory(
            memory,
            quantize(embedder.embed(text)),
            chat_title=chat_title,
            dedupe_threshold=0.97 if dedupe else None,
        )
        return memory
    return _add

