"""Deterministic pattern-matching intent classifier.

Used whenever the remote classifier fails. Rules are evaluated in priority
order; the first match wins and yields a fixed confidence that sits below what
the remote classifier usually reports:

- show tasks / show reminders: 0.8
- add reminder: 0.8 with a time expression, 0.7 without
- add task: 0.75
- play music: 0.75 when the request names songs/music, 0.65 for a bare "play"
- navigate: 0.7 for a known app section, 0.6 otherwise
- loose keyword matches ("reminder", "task", "music"): 0.6-0.65
- question-shaped text: general_query at 0.6
- anything else: general_query at 0.3

Everything here is a pure function of the input text.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from .models import ClassificationResult, ClassificationSource, EntityValue, Intent

NO_MATCH_CONFIDENCE = 0.3

NAVIGATION_TARGETS: dict[str, str] = {
    "tasks": "/professional",
    "task": "/professional",
    "task list": "/professional",
    "todo": "/professional",
    "to do": "/professional",
    "reminders": "/reminders",
    "reminder": "/reminders",
    "reminder list": "/reminders",
    "health": "/healthcare",
    "healthcare": "/healthcare",
    "health care": "/healthcare",
    "health data": "/healthcare",
    "medical": "/healthcare",
    "doctor": "/healthcare",
    "professional": "/professional",
    "work": "/professional",
    "projects": "/professional",
    "meetings": "/professional",
    "home": "/at-home",
    "at home": "/at-home",
    "home tasks": "/at-home",
    "chores": "/at-home",
    "family": "/at-home",
    "growth": "/personal-growth",
    "personal growth": "/personal-growth",
    "learning": "/personal-growth",
    "habits": "/personal-growth",
    "goals": "/personal-growth",
    "dashboard": "/dashboard",
    "main": "/dashboard",
    "start": "/dashboard",
    "profile": "/profile",
    "settings": "/profile",
    "account": "/profile",
    "insights": "/insights",
}

_NUMBER_WORDS = (
    r"(?:\d+|an?|one|two|three|four|five|six|seven|eight|nine|ten"
    r"|fifteen|twenty|thirty|forty|forty five|half an?)"
)

_TIME_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"\b(?:at|by|around)\s+"
        r"(?P<time>\d{1,2}(?::\d{2})?\s*(?:am|pm)|\d{1,2}:\d{2}|noon|midnight|\d{1,2}\s+o'?clock|\d{1,2})"
        r"(?![\w:])"
    ),
    re.compile(r"\b(?P<time>\d{1,2}(?::\d{2})?\s*(?:am|pm))(?![\w:])"),
    re.compile(rf"\b(?P<time>in\s+{_NUMBER_WORDS}\s+(?:seconds?|minutes?|mins?|hours?|hrs?|days?|weeks?))\b"),
    re.compile(
        r"\b(?P<time>(?:tomorrow|tonight|today|this\s+(?:morning|afternoon|evening))"
        r"(?:\s+(?:morning|afternoon|evening|night))?)\b"
    ),
    re.compile(
        r"\b(?:on\s+)?(?P<time>(?:next\s+)?(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday))\b"
    ),
)

_MUSIC_WORDS = re.compile(r"\b(?:songs?|music|tracks?|album|playlist|tunes?)\b")
_QUESTION_START = re.compile(
    r"^(?:what|what's|whats|who|who's|where|when|why|how|which|is|are|can|could|do|does|will|tell\s+me|explain)\b"
)
_LEADING_FILLER = re.compile(r"^(?:(?:hey\s+)?lara\s+)?(?:please\s+|can\s+you\s+|could\s+you\s+|would\s+you\s+)*")
_TRAILING_FILLER = re.compile(r"\s+(?:please|for\s+me|now)$")
_LINKING_WORDS = re.compile(r"^(?:to|for|about|that|called|named|me)\s+")
_DANGLING_WORDS = re.compile(r"\s+(?:at|on|in|by|for|to)$")


def normalize_command(text: str) -> str:
    """Lowercase, drop punctuation (keeping clock colons and apostrophes), collapse whitespace."""
    lowered = (text or "").strip().lower()
    if not lowered:
        return ""
    lowered = lowered.replace("’", "'")
    lowered = re.sub(r"\b([ap])\.\s?m\.?", r"\1m", lowered)
    lowered = re.sub(r"[^\w\s:']", " ", lowered)
    lowered = re.sub(r"(?<!\d):|:(?!\d)", " ", lowered)
    lowered = re.sub(r"\s+", " ", lowered).strip()
    return lowered


def extract_time(text: str) -> tuple[str | None, str]:
    """Find time expressions in normalized text.

    Returns the joined time phrases (or None) and the text with them removed.
    """
    spans: list[tuple[int, int, str]] = []
    for pattern in _TIME_PATTERNS:
        for match in pattern.finditer(text):
            start, end = match.span()
            if any(start < other_end and end > other_start for other_start, other_end, _ in spans):
                continue
            spans.append((start, end, match.group("time")))
    if not spans:
        return None, text
    spans.sort()
    remainder_parts: list[str] = []
    cursor = 0
    for start, end, _ in spans:
        remainder_parts.append(text[cursor:start])
        cursor = end
    remainder_parts.append(text[cursor:])
    remainder = re.sub(r"\s+", " ", " ".join(remainder_parts)).strip()
    time_text = " ".join(value.strip() for _, _, value in spans)
    return time_text, remainder


def _clean_slot(text: str) -> str:
    cleaned = text.strip()
    previous = None
    while cleaned and cleaned != previous:
        previous = cleaned
        cleaned = _LINKING_WORDS.sub("", cleaned).strip()
        cleaned = _DANGLING_WORDS.sub("", cleaned).strip()
        cleaned = _TRAILING_FILLER.sub("", cleaned).strip()
    return cleaned


def map_navigation_target(target: str) -> str:
    cleaned = re.sub(r"^(?:the|my)\s+", "", target.strip())
    cleaned = re.sub(r"\s+(?:page|section|tab|screen)$", "", cleaned)
    return NAVIGATION_TARGETS.get(cleaned, cleaned)


Extractor = Callable[[re.Match[str], str], tuple[dict[str, EntityValue], float]]


@dataclass(frozen=True)
class FallbackRule:
    name: str
    intent: Intent
    pattern: re.Pattern[str]
    confidence: float
    extract: Extractor | None = None

    def apply(self, text: str) -> ClassificationResult | None:
        match = self.pattern.search(text)
        if match is None:
            return None
        entities: dict[str, EntityValue] = {}
        confidence = self.confidence
        if self.extract is not None:
            entities, confidence = self.extract(match, text)
        return ClassificationResult.create(self.intent, confidence, entities, ClassificationSource.FALLBACK)


def _reminder_entities(match: re.Match[str], _text: str) -> tuple[dict[str, EntityValue], float]:
    time_text, remainder = extract_time(match.group("body") or "")
    entities: dict[str, EntityValue] = {}
    reminder_text = _clean_slot(remainder)
    if reminder_text:
        entities["reminderText"] = reminder_text
    if time_text:
        entities["time"] = time_text
        return entities, 0.8
    return entities, 0.7


def _loose_reminder_entities(match: re.Match[str], text: str) -> tuple[dict[str, EntityValue], float]:
    entities, _ = _reminder_entities(match, text)
    return entities, 0.6


def _task_entities(match: re.Match[str], _text: str) -> tuple[dict[str, EntityValue], float]:
    time_text, remainder = extract_time(match.group("body") or "")
    entities: dict[str, EntityValue] = {}
    task_text = _clean_slot(remainder)
    if task_text:
        entities["taskText"] = task_text
    if time_text:
        entities["time"] = time_text
    return entities, 0.75


def _loose_task_entities(match: re.Match[str], text: str) -> tuple[dict[str, EntityValue], float]:
    entities, _ = _task_entities(match, text)
    return entities, 0.6


def _music_entities(match: re.Match[str], _text: str) -> tuple[dict[str, EntityValue], float]:
    body = _clean_slot(match.group("body") or "")
    body = re.sub(r"^(?:the\s+)?(?:song|track)\s+(?:called|named)\s+", "", body)
    entities: dict[str, EntityValue] = {}
    by_match = re.match(r"(?P<query>.+?)\s+by\s+(?P<artist>.+)$", body)
    if by_match:
        entities["musicQuery"] = by_match.group("query").strip()
        entities["artist"] = by_match.group("artist").strip()
    elif body:
        entities["musicQuery"] = body
    confidence = 0.75 if _MUSIC_WORDS.search(match.group(0)) else 0.65
    return entities, confidence


def _loose_music_entities(match: re.Match[str], text: str) -> tuple[dict[str, EntityValue], float]:
    return {"musicQuery": _clean_slot(text)}, 0.6


def _navigation_entities(match: re.Match[str], _text: str) -> tuple[dict[str, EntityValue], float]:
    raw_target = _clean_slot(match.group("target") or "")
    if not raw_target:
        return {}, 0.6
    mapped = map_navigation_target(raw_target)
    confidence = 0.7 if mapped.startswith("/") else 0.6
    return {"navigationTarget": mapped}, confidence


def _query_entities(_match: re.Match[str], text: str) -> tuple[dict[str, EntityValue], float]:
    return {"query": text}, 0.6


_SHOW_VERBS = r"(?:show|list|display|open|read|see|check)"
_SECTIONS = "|".join(sorted((re.escape(name) for name in NAVIGATION_TARGETS), key=len, reverse=True))

FALLBACK_RULES: tuple[FallbackRule, ...] = (
    FallbackRule(
        "show_tasks",
        Intent.SHOW_TASKS,
        re.compile(
            rf"^(?:{_SHOW_VERBS}\s+(?:me\s+)?(?:all\s+)?(?:of\s+)?(?:my\s+|the\s+)?tasks?(?:\s+(?:list|page))?"
            r"|what\s+(?:are|is)\s+(?:on\s+)?my\s+tasks?(?:\s+list)?"
            r"|what\s+(?:do\s+i\s+have|are\s+my)\s+to\s+do(?:\s+today)?)$"
        ),
        0.8,
    ),
    FallbackRule(
        "show_reminders",
        Intent.SHOW_REMINDERS,
        re.compile(
            rf"^(?:{_SHOW_VERBS}\s+(?:me\s+)?(?:all\s+)?(?:of\s+)?(?:my\s+|the\s+)?reminders?(?:\s+(?:list|page))?"
            r"|what\s+(?:are|is)\s+my\s+reminders?)$"
        ),
        0.8,
    ),
    FallbackRule(
        "add_reminder",
        Intent.ADD_REMINDER,
        re.compile(
            r"\b(?:remind\s+me|(?:set|add|create|make)\s+(?:a\s+|an\s+)?(?:new\s+)?reminder|new\s+reminder)\b"
            r"\s*(?P<body>.*)$"
        ),
        0.7,
        _reminder_entities,
    ),
    FallbackRule(
        "add_task_suffix",
        Intent.ADD_TASK,
        re.compile(
            r"^add\s+(?P<body>.+?)\s+to\s+(?:my\s+|the\s+)?"
            r"(?:tasks?|task\s+list|to\s?do(?:\s+list)?|todo(?:\s+list)?)$"
        ),
        0.75,
        _task_entities,
    ),
    FallbackRule(
        "add_task",
        Intent.ADD_TASK,
        re.compile(
            r"\b(?:add|create|make|new)\s+(?:a\s+)?(?:new\s+)?task\b"
            r"(?:\s+to\s+(?:my\s+)?(?:task\s+)?list)?\s*(?P<body>.*)$"
        ),
        0.75,
        _task_entities,
    ),
    FallbackRule(
        "navigate",
        Intent.NAVIGATE,
        re.compile(r"^(?:go|navigate|take\s+me|switch|jump)\s+(?:back\s+)?to\s+(?P<target>.+)$"),
        0.7,
        _navigation_entities,
    ),
    FallbackRule(
        "open_section",
        Intent.NAVIGATE,
        re.compile(rf"^(?:open|show)\s+(?:the\s+|my\s+)?(?P<target>{_SECTIONS})(?:\s+(?:page|section|tab|screen))?$"),
        0.7,
        _navigation_entities,
    ),
    FallbackRule(
        "play_music",
        Intent.PLAY_MUSIC,
        re.compile(r"\bplay\s+(?P<body>.+)$"),
        0.65,
        _music_entities,
    ),
    FallbackRule(
        "reminder_keyword_show",
        Intent.SHOW_REMINDERS,
        re.compile(rf"\b(?:{_SHOW_VERBS}|what|any)\b.*\breminders?\b"),
        0.65,
    ),
    FallbackRule(
        "reminder_keyword",
        Intent.ADD_REMINDER,
        re.compile(r"\breminders?\b\s*(?P<body>.*)$"),
        0.6,
        _loose_reminder_entities,
    ),
    FallbackRule(
        "task_keyword_show",
        Intent.SHOW_TASKS,
        re.compile(rf"\b(?:{_SHOW_VERBS}|what|any)\b.*\btasks?\b"),
        0.65,
    ),
    FallbackRule(
        "task_keyword_add",
        Intent.ADD_TASK,
        re.compile(r"\b(?:add|create|new)\b.*\btasks?\b\s*(?P<body>.*)$"),
        0.6,
        _loose_task_entities,
    ),
    FallbackRule(
        "listen_music",
        Intent.PLAY_MUSIC,
        re.compile(r"\blisten\s+to\s+(?P<body>.+)$"),
        0.65,
        _music_entities,
    ),
    FallbackRule(
        "music_keyword",
        Intent.PLAY_MUSIC,
        _MUSIC_WORDS,
        0.6,
        _loose_music_entities,
    ),
    FallbackRule(
        "question",
        Intent.GENERAL_QUERY,
        _QUESTION_START,
        0.6,
        _query_entities,
    ),
)


def classify_fallback(text: str) -> ClassificationResult:
    """Classify text with the local rule table. Never raises, never touches the network."""
    normalized = normalize_command(text)
    command = _LEADING_FILLER.sub("", normalized).strip()
    if not command:
        return ClassificationResult.create(Intent.GENERAL_QUERY, 0.0, {}, ClassificationSource.FALLBACK)
    for rule in FALLBACK_RULES:
        result = rule.apply(command)
        if result is not None:
            return result
    return ClassificationResult.create(
        Intent.GENERAL_QUERY,
        NO_MATCH_CONFIDENCE,
        {"query": (text or "").strip()},
        ClassificationSource.FALLBACK,
    )
