"""
Mind types -- memory categories and the records passed between layers.

Memory kinds and emotions are ``str`` enums so they round-trip through the
SQLite store as plain text and compare equal to their stored values.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class MemoryKind(str, Enum):
    """What a memory is about."""

    FACT = "FACT"
    EVENT = "EVENT"
    PREFERENCE = "PREFERENCE"
    PROJECT = "PROJECT"
    KNOWLEDGE = "KNOWLEDGE"
    EMOTION = "EMOTION"
    OTHER = "OTHER"


class EmotionType(str, Enum):
    """Emotional tone detected in a memory. NEUTRAL is a real category."""

    HAPPY = "HAPPY"
    EXCITED = "EXCITED"
    SAD = "SAD"
    FRUSTRATED = "FRUSTRATED"
    ANXIOUS = "ANXIOUS"
    CURIOUS = "CURIOUS"
    CONFIDENT = "CONFIDENT"
    NEUTRAL = "NEUTRAL"


class Role(str, Enum):
    USER = "user"
    MODEL = "model"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Memory:
    """One classified, scored and embedded unit of conversational text."""

    id: str
    persona_id: str
    user_id: str
    chat_id: Optional[str]
    role: Role
    text: str
    kind: MemoryKind
    emotion: Optional[EmotionType]
    importance: float
    created_at: datetime
    last_accessed: datetime


@dataclass
class MemoryHit:
    """A retrieved memory with its fused score. Never persisted.

    ``lexical``, ``cosine`` and ``recency`` keep the individual signals that
    went into ``score`` so callers can see why a memory ranked where it did.
    """

    memory: Memory
    score: float
    from_chat_title: Optional[str] = None
    lexical: float = 0.0
    cosine: float = 0.0
    recency: float = 0.0


@dataclass
class ContextBundle:
    """Short-term and long-term memories for the next model call.

    The two lists stay separate so the caller decides where each goes in
    the prompt. ``error`` is set when the bundle is empty because building
    it failed.
    """

    short_term: List[Memory] = field(default_factory=list)
    long_term: List[MemoryHit] = field(default_factory=list)
    total_tokens: int = 0
    error: Optional[str] = None

    @classmethod
    def empty(cls, error: Optional[str] = None) -> "ContextBundle":
        return cls(error=error)

    @property
    def is_empty(self) -> bool:
        return not self.short_term and not self.long_term


@dataclass(frozen=True)
class ChatTurn:
    """One exchange handed over by the chat layer."""

    chat_id: str
    user_id: str
    user_message: str
    assistant_message: Optional[str] = None
    timestamp: Optional[datetime] = None
    chat_title: Optional[str] = None


@dataclass(frozen=True)
class CategoryCount:
    kind: MemoryKind
    count: int


@dataclass(frozen=True)
class MemoryFilters:
    """Optional constraints applied to recall candidates and feeds.

    ``after`` is inclusive and ``before`` exclusive.
    """

    kind: Optional[MemoryKind] = None
    min_importance: Optional[float] = None
    after: Optional[datetime] = None
    before: Optional[datetime] = None

    def matches(self, memory: Memory) -> bool:
        if self.kind is not None and memory.kind != self.kind:
            return False
        if self.min_importance is not None and memory.importance < self.min_importance:
            return False
        created = as_utc(memory.created_at)
        if self.after is not None and created < as_utc(self.after):
            return False
        if self.before is not None and created >= as_utc(self.before):
            return False
        return True
