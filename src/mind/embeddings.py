"""
Mind embeddings -- text to fixed-dimension float vectors.

Provides:
- Embedder protocol (``dim`` attribute plus ``embed(text)``)
- HashEmbedder: deterministic feature hashing, no model download needed
- LocalModelEmbedder: on-device model via ONNX Runtime, falling back to
  sentence-transformers (PyTorch) when ONNX is unavailable
- check_dimension() to validate whatever an embedder returns

Unlike a search index, memory writes must not silently store vectors from a
different model, so LocalModelEmbedder raises EmbeddingError instead of
degrading to hashes when no backend loads.
"""

from collections import OrderedDict
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, runtime_checkable
import hashlib
import importlib.util
import logging
import os
import re
import threading
import time

import numpy as np

__all__ = [
    "Embedder",
    "EmbeddingError",
    "HashEmbedder",
    "LocalModelEmbedder",
    "check_dimension",
    "has_onnx_runtime",
    "has_sentence_transformers",
]

logger = logging.getLogger("mind.embeddings")

_TOKEN_RE = re.compile(r"[a-z0-9']+")

_DEFAULT_MODEL_NAME = "BAAI/bge-base-en-v1.5"
_ONNX_DEFAULT_DIR = "~/.cache/mind/models/bge-base-en-v1.5-onnx"
_CACHE_MAX = 512
_MAX_LOAD_ATTEMPTS = 3
_CIRCUIT_BREAKER_COOLDOWN_S = 300


class EmbeddingError(RuntimeError):
    """The embedder failed or produced an unusable vector."""


@runtime_checkable
class Embedder(Protocol):
    dim: int

    def embed(self, text: str) -> List[float]:
        ...


def check_dimension(vector: Sequence[float], dim: int) -> np.ndarray:
    """Return ``vector`` as float32, or raise EmbeddingError if it is unusable."""
    try:
        arr = np.asarray(vector, dtype=np.float32).ravel()
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"embedder returned a non-numeric vector: {e}") from e
    if arr.size != dim:
        raise EmbeddingError(f"embedder returned {arr.size} dimensions, expected {dim}")
    if not np.all(np.isfinite(arr)):
        raise EmbeddingError("embedder returned non-finite values")
    return arr


def has_onnx_runtime() -> bool:
    return importlib.util.find_spec("onnxruntime") is not None


def has_sentence_transformers() -> bool:
    return importlib.util.find_spec("sentence_transformers") is not None


def _features(text: str) -> List[str]:
    """Word tokens plus padded character trigrams of each word."""
    feats = []
    for token in _TOKEN_RE.findall(text.lower()):
        feats.append("w:" + token)
        padded = f"#{token}#"
        feats.extend("c:" + padded[i:i + 3] for i in range(len(padded) - 2))
    return feats


class HashEmbedder:
    """Deterministic feature-hashing embedder.

    Texts sharing words or word fragments get positive cosine similarity,
    which is enough for tests and for running without a model on disk.
    """

    name = "hash"

    def __init__(self, dim: int = 768):
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim

    def embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dim, dtype=np.float32)
        feats = _features(text)
        if not feats:
            # No word characters at all: hash the whole string to one slot
            feats = ["t:" + text]
        for feat in feats:
            digest = hashlib.md5(feat.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], byteorder="big") % self.dim
            vector[index] += 1.0 if digest[4] & 1 else -1.0
        norm = float(np.linalg.norm(vector))
        if norm == 0:
            # Every feature cancelled out; fall back to a fixed unit vector
            vector[int.from_bytes(hashlib.md5(text.encode("utf-8")).digest()[:4], "big") % self.dim] = 1.0
            return vector.tolist()
        return (vector / norm).tolist()


def _onnx_encode(tokenizer, session, texts: List[str]) -> np.ndarray:
    """Encode texts using ONNX Runtime. Returns normalized embeddings."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    input_names = {i.name for i in session.get_inputs()}
    if "token_type_ids" in input_names:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
    if embeddings.ndim == 3:
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        sum_emb = np.sum(embeddings * mask_expanded, axis=1)
        sum_mask = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        embeddings = sum_emb / sum_mask
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


class LocalModelEmbedder:
    """On-device sentence embedding model, loaded lazily on first use.

    Priority: ONNX Runtime export in ``model_dir`` (or MIND_ONNX_MODEL_DIR),
    then sentence-transformers with ``model_name``. Load failures count
    against a small circuit breaker that resets after a cooldown.
    """

    name = "local"

    def __init__(self, dim: int = 768, model_name: str = _DEFAULT_MODEL_NAME,
                 model_dir: Optional[str] = None):
        self.dim = dim
        self.model_name = model_name
        self.model_dir = model_dir or os.environ.get("MIND_ONNX_MODEL_DIR") or _ONNX_DEFAULT_DIR
        self.backend: Optional[str] = None
        self._model = None
        self._lock = threading.Lock()
        self._attempts = 0
        self._first_failure = 0.0
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()

    def _onnx_dir(self) -> Optional[Path]:
        path = Path(os.path.expanduser(self.model_dir))
        if (path / "model.onnx").exists() and (path / "tokenizer.json").exists():
            return path
        return None

    def _load(self):
        if self._model is not None:
            return self._model
        if self._attempts >= _MAX_LOAD_ATTEMPTS:
            if time.monotonic() - self._first_failure < _CIRCUIT_BREAKER_COOLDOWN_S:
                raise EmbeddingError("embedding model unavailable (circuit breaker open)")
            logger.info("Circuit breaker cooldown expired, retrying model load")
            self._attempts = 0
        self._attempts += 1
        if self._attempts == 1:
            self._first_failure = time.monotonic()

        os.environ.setdefault("TQDM_DISABLE", "1")

        onnx_dir = self._onnx_dir() if has_onnx_runtime() else None
        if onnx_dir is not None:
            try:
                import onnxruntime as ort
                from tokenizers import Tokenizer as FastTokenizer

                tokenizer = FastTokenizer.from_file(str(onnx_dir / "tokenizer.json"))
                tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                tokenizer.enable_truncation(max_length=512)
                sess_opts = ort.SessionOptions()
                sess_opts.log_severity_level = 4
                sess_opts.enable_cpu_mem_arena = False
                session = ort.InferenceSession(
                    str(onnx_dir / "model.onnx"),
                    sess_options=sess_opts,
                    providers=["CPUExecutionProvider"],
                )
                self._model = (tokenizer, session)
                self.backend = "onnx"
                self._attempts = 0
                logger.info("Loaded ONNX embedding model from %s", onnx_dir)
                return self._model
            except Exception as e:
                logger.warning("Failed to load ONNX model (attempt %d): %s", self._attempts, e)

        if has_sentence_transformers():
            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(self.model_name)
                self.backend = "sentence-transformers"
                self._attempts = 0
                logger.info("Loaded sentence-transformers model %s", self.model_name)
                return self._model
            except Exception as e:
                logger.warning("Failed to load sentence-transformers: %s", e)

        raise EmbeddingError(
            f"no embedding backend could be loaded (attempt {self._attempts}/{_MAX_LOAD_ATTEMPTS}); "
            f"ONNX available: {has_onnx_runtime()}, "
            f"sentence-transformers available: {has_sentence_transformers()}"
        )

    def embed(self, text: str) -> List[float]:
        cache_key = hashlib.md5(text.encode("utf-8")).hexdigest()
        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._cache.move_to_end(cache_key)
                return cached
            model = self._load()
            try:
                if self.backend == "onnx":
                    tokenizer, session = model
                    result = _onnx_encode(tokenizer, session, [text])[0].tolist()
                else:
                    result = model.encode(text, normalize_embeddings=True).tolist()
            except Exception as e:
                raise EmbeddingError(f"embedding generation failed: {e}") from e
            check_dimension(result, self.dim)
            self._cache[cache_key] = result
            while len(self._cache) > _CACHE_MAX:
                self._cache.popitem(last=False)
            return result
