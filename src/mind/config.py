"""
Mind configuration -- one immutable MemoryConfig per session.

Defaults come from the production deployment. ``MemoryConfig.from_env()``
overrides them from ``MIND_*`` environment variables, e.g.::

    MIND_DIM=384 MIND_WEIGHTS=0.5,0.3,0.1,0.1 mind query "hiking"
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Mapping, Optional, Tuple


def mind_home() -> Path:
    """Resolve MIND_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("MIND_HOME", str(Path.home() / ".mind")))


def default_db_path() -> Path:
    return mind_home() / "mind.db"


# env var -> field name
_ENV_FIELDS = {
    "MIND_DIM": "dim",
    "MIND_MAX_PER_PERSONA": "max_per_persona",
    "MIND_K_FTS": "k_fts",
    "MIND_K_VEC": "k_vec",
    "MIND_K_RETURN": "k_return",
    "MIND_IMPORTANCE_FLOOR": "importance_floor",
    "MIND_PRUNE_AFTER_DAYS": "prune_after_days",
    "MIND_DEDUPE_COSINE": "dedupe_cosine",
    "MIND_DEDUPE_WINDOW": "dedupe_window",
    "MIND_RECENCY_DECAY_DAYS": "recency_decay_days",
    "MIND_SHORT_TERM_LIMIT": "short_term_limit",
    "MIND_LONG_TERM_K": "long_term_k",
    "MIND_MAX_TOKENS": "max_tokens",
    "MIND_INFER_TIME_RANGE": "infer_time_range",
}


@dataclass(frozen=True)
class MemoryConfig:
    """Process-wide memory settings, read once at construction."""

    dim: int = 768
    max_per_persona: int = 100_000
    k_fts: int = 200
    k_vec: int = 200
    k_return: int = 50
    importance_floor: float = 0.05
    prune_after_days: int = 365
    dedupe_cosine: float = 0.97
    # Fusion weights: lexical, cosine, recency, importance. Need not sum to 1.
    w1_lexical: float = 0.4
    w2_cosine: float = 0.3
    w3_recency: float = 0.2
    w4_importance: float = 0.1
    recency_decay_days: float = 30.0
    dedupe_window: int = 200
    short_term_limit: int = 100
    long_term_k: int = 50
    max_tokens: int = 2000
    observe_interval_s: float = 0.5
    prune_interval_s: float = 3600.0
    infer_time_range: bool = False

    def __post_init__(self):
        self.validate()

    @property
    def weights(self) -> Tuple[float, float, float, float]:
        return (self.w1_lexical, self.w2_cosine, self.w3_recency, self.w4_importance)

    def validate(self) -> None:
        """Raise ValueError on settings that would make retrieval meaningless."""
        for name in ("dim", "max_per_persona", "k_fts", "k_vec", "k_return",
                     "dedupe_window", "short_term_limit", "long_term_k"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("importance_floor", "dedupe_cosine"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if any(w < 0 for w in self.weights):
            raise ValueError(f"fusion weights must be non-negative, got {self.weights}")
        if self.recency_decay_days <= 0:
            raise ValueError("recency_decay_days must be positive")
        if self.prune_after_days < 0 or self.max_tokens < 0:
            raise ValueError("prune_after_days and max_tokens must not be negative")
        if self.observe_interval_s <= 0:
            raise ValueError("observe_interval_s must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MemoryConfig":
        """Build a config from defaults overridden by MIND_* env vars."""
        env = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(cls)}
        overrides = {}
        for var, name in _ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or raw.strip() == "":
                continue
            overrides[name] = _coerce(var, raw.strip(), types[name])
        raw_weights = env.get("MIND_WEIGHTS", "").strip()
        if raw_weights:
            parts = [p.strip() for p in raw_weights.split(",")]
            if len(parts) != 4:
                raise ValueError(f"MIND_WEIGHTS needs four comma-separated numbers, got {raw_weights!r}")
            try:
                w1, w2, w3, w4 = (float(p) for p in parts)
            except ValueError:
                raise ValueError(f"MIND_WEIGHTS is not numeric: {raw_weights!r}") from None
            overrides.update(w1_lexical=w1, w2_cosine=w2, w3_recency=w3, w4_importance=w4)
        return replace(cls(), **overrides)


def _coerce(var: str, raw: str, annotation) -> object:
    kind = annotation if isinstance(annotation, str) else getattr(annotation, "__name__", str(annotation))
    try:
        if kind == "bool":
            return raw.lower() in ("1", "true", "yes", "on")
        if kind == "int":
            return int(raw)
        return float(raw)
    except ValueError:
        raise ValueError(f"{var} has invalid value {raw!r}") from None
