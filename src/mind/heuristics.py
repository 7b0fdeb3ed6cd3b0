"""
Rule-based classification of memory text.

Each rule table is an ordered list of ``(predicate, category)`` pairs and the
first matching rule wins. Predicates receive the text as given and its
lowercased form; every kind and emotion rule matches on the lowercased form.
"""

import re
from typing import Callable, List, Optional, Tuple

from mind.types import EmotionType, MemoryKind

Predicate = Callable[[str, str], bool]

_TIME_RE = re.compile(r"\d{1,2}[:/]\d{1,2}")
_CAPITALIZED_RE = re.compile(r"\b[A-Z][a-z]+\b")


def _contains_any(*phrases: str) -> Predicate:
    def predicate(text: str, lower: str) -> bool:
        return any(p in lower for p in phrases)
    return predicate


_mentions_time = _contains_any(
    "yesterday", "today", "tomorrow", "last week", "went to", "going to",
)


def _is_event(text: str, lower: str) -> bool:
    return _mentions_time(text, lower) or _TIME_RE.search(lower) is not None


KIND_RULES: List[Tuple[Predicate, MemoryKind]] = [
    (_contains_any("i like", "i prefer", "i love", "i hate", "i enjoy", "my favorite"),
     MemoryKind.PREFERENCE),
    (_is_event, MemoryKind.EVENT),
    (_contains_any("working on", "building", "project", "planning to", "goal"),
     MemoryKind.PROJECT),
    (_contains_any("my name is", "i am", "i'm", "i live"), MemoryKind.FACT),
    (_contains_any("learned", "discovered", "found out", "understand"),
     MemoryKind.KNOWLEDGE),
    (_contains_any("feel", "feeling", "emotion"), MemoryKind.EMOTION),
]

# EXCITED is checked before HAPPY so "so excited" is not swallowed by the
# broader "excited" phrase in the HAPPY rule.
EMOTION_RULES: List[Tuple[Predicate, EmotionType]] = [
    (_contains_any("can't wait", "can’t wait", "so excited", "amazing", "\U0001f929"),
     EmotionType.EXCITED),
    (_contains_any("happy", "excited", "great", "awesome", "wonderful",
                   "\U0001f60a", "\U0001f600", "\U0001f389"),
     EmotionType.HAPPY),
    (_contains_any("sad", "disappointed", "unfortunate", "\U0001f622", "\U0001f61e"),
     EmotionType.SAD),
    (_contains_any("frustrated", "annoying", "difficult", "struggling"),
     EmotionType.FRUSTRATED),
    (_contains_any("worried", "nervous", "anxious", "concerned"), EmotionType.ANXIOUS),
    (_contains_any("curious", "wondering", "how does", "why", "what if"), EmotionType.CURIOUS),
    (_contains_any("confident", "sure", "definitely"), EmotionType.CONFIDENT),
]

_KIND_BONUS = {
    MemoryKind.PREFERENCE: 0.15,
    MemoryKind.PROJECT: 0.15,
    MemoryKind.FACT: 0.10,
    MemoryKind.EVENT: 0.05,
}

_EMOTION_BONUS = {
    EmotionType.EXCITED: 0.10,
    EmotionType.FRUSTRATED: 0.10,
    EmotionType.ANXIOUS: 0.10,
    EmotionType.HAPPY: 0.05,
    EmotionType.SAD: 0.05,
}


def _first_match(rules, text: str, default):
    lower = text.lower()
    for predicate, category in rules:
        if predicate(text, lower):
            return category
    return default


def classify_kind(text: str) -> MemoryKind:
    return _first_match(KIND_RULES, text, MemoryKind.OTHER)


def detect_emotion(text: str) -> Optional[EmotionType]:
    return _first_match(EMOTION_RULES, text, EmotionType.NEUTRAL)


def calculate_importance(text: str, kind: MemoryKind, emotion: Optional[EmotionType]) -> float:
    """Score how worth remembering a text is, clamped to [0, 1].

    Starts at 0.5 and adjusts for length, kind, emotional intensity and
    the number of capitalized words (names, places).
    """
    score = 0.5
    words = len(re.split(r"\s+", text))
    if words > 50:
        score += 0.2
    elif words > 20:
        score += 0.1
    elif words < 5:
        score -= 0.1

    score += _KIND_BONUS.get(kind, 0.0)
    if emotion is not None:
        score += _EMOTION_BONUS.get(emotion, 0.0)

    score += len(_CAPITALIZED_RE.findall(text)) * 0.02
    return max(0.0, min(1.0, score))
