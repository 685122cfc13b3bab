"""
Spoken dismissal detection

Recognizes phrases like "never mind", "cancel that" or "that's all" in a
transcript so a command cycle can end without classification. Matching is done
on normalized text:

- Lowercased, punctuation stripped, apostrophes removed
- A leading wake phrase ("hey lara, never mind") is dropped
- Trailing politeness ("please", "thanks", "for now") is trimmed
"""

from __future__ import annotations

import re
from collections.abc import Sequence

STOP_RESPONSE = "Okay, no problem."


def normalize_stop_text(text: str, prefixes: Sequence[str] | None = None) -> str:
    """Normalize text for stop phrase matching."""
    lowered = (text or "").strip().lower()
    if not lowered:
        return ""
    lowered = lowered.replace("’", "'")
    lowered = re.sub(r"[^\w\s']", " ", lowered)
    lowered = lowered.replace("'", "")
    lowered = re.sub(r"\s+", " ", lowered).strip()
    if not lowered:
        return ""
    if prefixes:
        for prefix in prefixes:
            normalized_prefix = re.sub(r"[^\w\s]", " ", prefix.strip().lower())
            normalized_prefix = re.sub(r"\s+", " ", normalized_prefix).strip()
            if not normalized_prefix:
                continue
            if lowered == normalized_prefix:
                return ""
            if lowered.startswith(normalized_prefix + " "):
                lowered = lowered[len(normalized_prefix) + 1 :].strip()
                break
    suffixes = ("please", "thanks", "thank you", "for now", "right now", "lara")
    trimmed = True
    while trimmed and lowered:
        trimmed = False
        for suffix in suffixes:
            needle = " " + suffix
            if lowered.endswith(needle):
                lowered = lowered[: -len(needle)].rstrip()
                trimmed = True
    return lowered


_STOP_PHRASES_RAW = (
    "nevermind",
    "never mind",
    "never mind that",
    "forget it",
    "forget about it",
    "forget that",
    "nothing",
    "nothing else",
    "that's all",
    "that is all",
    "that's it",
    "cancel",
    "cancel that",
    "cancel it",
    "stop",
    "no thanks",
    "no thank you",
    "stop listening",
    "im good",
    "i am good",
    "don't worry about it",
)

STOP_PHRASES: frozenset[str] = frozenset(
    normalized for normalized in (normalize_stop_text(phrase) for phrase in _STOP_PHRASES_RAW) if normalized
)


def is_stop_phrase(transcript: str | None, prefixes: Sequence[str] = ()) -> bool:
    """Check if a transcript only asks the assistant to stop."""
    normalized = normalize_stop_text(transcript or "", prefixes=prefixes)
    if not normalized:
        return False
    return normalized in STOP_PHRASES
