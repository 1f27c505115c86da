"""Derive short conversation titles from the first user message."""

from __future__ import annotations

import re
from typing import Any, FrozenSet

FALLBACK_TITLE = "New Conversation"
MAX_TITLE_WORDS = 7

LEADING_STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "what",
        "how",
        "why",
        "when",
        "where",
        "who",
        "is",
        "are",
        "can",
        "could",
        "would",
        "should",
        "explain",
        "tell",
        "describe",
        "help",
        "show",
    }
)

# Auxiliaries, pronouns and articles that trail an opening question word,
# e.g. "what IS THE ..." or "could YOU ...". Dropped only while two words remain.
OPENER_FILLERS: FrozenSet[str] = frozenset(
    {"is", "are", "was", "were", "do", "does", "did", "you", "i", "we", "me", "us", "the", "a", "an"}
)
MIN_FILLER_SURVIVORS = 2

_TRAILING_QUESTION_MARKS = re.compile(r"\?+$")


def synthesize_title(first_message: Any) -> str:
    """Return a display title of at most seven words for ``first_message``.

    >>> synthesize_title("What is the capital of France?")
    'Capital Of France'
    >>> synthesize_title("How are you")
    'Are You'
    >>> synthesize_title("   ")
    'New Conversation'
    """
    if not isinstance(first_message, str):
        return FALLBACK_TITLE

    words = _TRAILING_QUESTION_MARKS.sub("", first_message.strip()).split()
    # A lone question word is the whole title, not a prefix.
    if len(words) > 1 and words[0].lower() in LEADING_STOP_WORDS:
        words = words[1:]
        while len(words) > MIN_FILLER_SURVIVORS and words[0].lower() in OPENER_FILLERS:
            words = words[1:]

    words = words[:MAX_TITLE_WORDS]
    if not words:
        return FALLBACK_TITLE
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)
