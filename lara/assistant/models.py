"""Value types passed between pipeline stages."""

from __future__ import annotations

import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ErrorKind

EntityValue = str | int | float


class Intent(str, Enum):
    PLAY_MUSIC = "play_music"
    ADD_TASK = "add_task"
    SHOW_TASKS = "show_tasks"
    ADD_REMINDER = "add_reminder"
    SHOW_REMINDERS = "show_reminders"
    NAVIGATE = "navigate"
    GENERAL_QUERY = "general_query"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> Intent | None:
        """Return the matching intent, or None when the value is outside the closed set."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


ACTIONABLE_INTENTS: tuple[Intent, ...] = tuple(intent for intent in Intent if intent is not Intent.UNKNOWN)

INTENT_ENTITY_KEYS: dict[Intent, frozenset[str]] = {
    Intent.PLAY_MUSIC: frozenset({"musicQuery", "artist"}),
    Intent.ADD_TASK: frozenset({"taskText", "time"}),
    Intent.SHOW_TASKS: frozenset(),
    Intent.ADD_REMINDER: frozenset({"reminderText", "time"}),
    Intent.SHOW_REMINDERS: frozenset(),
    Intent.NAVIGATE: frozenset({"navigationTarget"}),
    Intent.GENERAL_QUERY: frozenset({"query"}),
    Intent.UNKNOWN: frozenset(),
}

REQUIRED_ENTITIES: dict[Intent, tuple[str, ...]] = {
    Intent.PLAY_MUSIC: ("musicQuery",),
    Intent.ADD_TASK: ("taskText",),
    Intent.ADD_REMINDER: ("reminderText",),
    Intent.NAVIGATE: ("navigationTarget",),
    Intent.GENERAL_QUERY: ("query",),
}


class ClassificationSource(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


def clamp_confidence(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class Utterance:
    text: str
    session_id: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ClassificationResult:
    intent: Intent
    confidence: float
    entities: Mapping[str, EntityValue]
    source: ClassificationSource

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence out of range: {self.confidence}")
        allowed = INTENT_ENTITY_KEYS[self.intent]
        extra = set(self.entities) - allowed
        if extra:
            raise ValueError(f"entities {sorted(extra)} not allowed for {self.intent.value}")

    @classmethod
    def create(
        cls,
        intent: Intent,
        confidence: float,
        entities: Mapping[str, Any] | None,
        source: ClassificationSource,
    ) -> ClassificationResult:
        """Build a result, clamping confidence and keeping only the slots the intent allows."""
        allowed = INTENT_ENTITY_KEYS[intent]
        cleaned: dict[str, EntityValue] = {}
        for key, value in (entities or {}).items():
            if key not in allowed or isinstance(value, bool):
                continue
            if isinstance(value, str):
                value = value.strip()
                if not value:
                    continue
            elif not isinstance(value, (int, float)):
                continue
            cleaned[key] = value
        return cls(
            intent=intent,
            confidence=clamp_confidence(confidence),
            entities=cleaned,
            source=source,
        )

    def entity(self, key: str) -> str | None:
        value = self.entities.get(key)
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def as_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent.value,
            "confidence": round(self.confidence, 3),
            "entities": dict(self.entities),
            "source": self.source.value,
        }


@dataclass(frozen=True)
class ActionRequest:
    intent: Intent
    entities: Mapping[str, EntityValue]
    user_id: str
    session_id: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent.value,
            "entities": dict(self.entities),
            "userId": self.user_id,
            "sessionId": self.session_id,
        }


@dataclass(frozen=True)
class ActionResult:
    success: bool
    message: str
    data: Any = None
    error: ErrorKind | None = None

    @classmethod
    def failure(cls, message: str, error: ErrorKind, data: Any = None) -> ActionResult:
        return cls(success=False, message=message, data=data, error=error)
