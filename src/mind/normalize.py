"""
Text normalization applied before anything is classified, embedded or stored.
"""

import re

MAX_TEXT_LENGTH = 2000
MAX_KEY_LENGTH = 200

_WHITESPACE_RE = re.compile(r"\s+")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")

_GREETINGS = frozenset({
    "hi", "hello", "hey", "goodbye", "bye", "thanks", "thank you",
    "ok", "okay", "sure", "yes", "no", "got it",
})


def normalize(text: str) -> str:
    """Collapse whitespace, drop control characters and cap the length.

    Whitespace is collapsed before control characters are removed so that
    newlines and tabs still separate words.
    """
    text = _WHITESPACE_RE.sub(" ", text)
    text = _CONTROL_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:MAX_TEXT_LENGTH].rstrip()


def dedup_key(text: str) -> str:
    """Lowercase alphanumeric form used to spot textual duplicates."""
    key = _NON_ALNUM_RE.sub("", text.lower())
    key = _WHITESPACE_RE.sub(" ", key).strip()
    return key[:MAX_KEY_LENGTH]


def is_too_short(text: str) -> bool:
    return len(text.split()) < 3


def is_greeting(text: str) -> bool:
    return text.strip().lower() in _GREETINGS
