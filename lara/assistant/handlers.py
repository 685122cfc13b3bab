"""Action handler adapters.

The pipeline never performs the actions itself. A handler receives an
``ActionRequest`` and returns an ``ActionResult`` whose ``message`` is spoken
back to the user. Two adapters ship with the assistant:

- ``CallbackActionHandler`` wraps a sync or async callable supplied by an
  embedding application.
- ``MqttActionHandler`` forwards the request as JSON to
  ``<topic_base>/actions/<intent>`` so another process can act on it.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol

from .models import ActionRequest, ActionResult, EntityValue, Intent

LOGGER = logging.getLogger("lara-assistant.handlers")

HandlerCallback = Callable[[ActionRequest], ActionResult | Awaitable[ActionResult]]


class ActionHandler(Protocol):
    async def handle(self, request: ActionRequest) -> ActionResult: ...


class Publisher(Protocol):
    def publish(self, topic: str, payload: str, retain: bool = False, qos: int = 0) -> None: ...


class CallbackActionHandler:
    def __init__(self, callback: HandlerCallback) -> None:
        self._callback = callback

    async def handle(self, request: ActionRequest) -> ActionResult:
        result = self._callback(request)
        if inspect.isawaitable(result):
            result = await result
        return result


def _describe_time(entities: Mapping[str, EntityValue]) -> str:
    value = entities.get("time")
    return f" for {value}" if value else ""


def confirmation_message(request: ActionRequest) -> str:
    """Build the spoken confirmation for a forwarded request."""
    entities = request.entities
    intent = request.intent
    if intent is Intent.PLAY_MUSIC:
        query = entities.get("musicQuery", "")
        artist = entities.get("artist")
        return f"Playing {query} by {artist}." if artist else f"Playing {query}."
    if intent is Intent.ADD_TASK:
        return f"Added {entities.get('taskText', '')} to your tasks{_describe_time(entities)}."
    if intent is Intent.ADD_REMINDER:
        return f"Okay, I'll remind you to {entities.get('reminderText', '')}{_describe_time(entities)}."
    if intent is Intent.SHOW_TASKS:
        return "Here are your tasks."
    if intent is Intent.SHOW_REMINDERS:
        return "Here are your reminders."
    if intent is Intent.NAVIGATE:
        return "Opening that now."
    if intent is Intent.GENERAL_QUERY:
        return "Let me look into that."
    return "Done."


class MqttActionHandler:
    """Publish action requests over MQTT and confirm optimistically."""

    def __init__(
        self,
        publisher: Publisher,
        topics: Mapping[str, str],
        *,
        qos: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        self._publisher = publisher
        self._topics = dict(topics)
        self._qos = qos
        self._logger = logger or LOGGER

    async def handle(self, request: ActionRequest) -> ActionResult:
        topic = self._topics.get(request.intent.value)
        if not topic:
            raise LookupError(f"no action topic configured for {request.intent.value}")
        payload = json.dumps(request.as_dict())
        self._publisher.publish(topic, payload, retain=False, qos=self._qos)
        self._logger.debug("[actions] Published %s to %s", request.intent.value, topic)
        return ActionResult(success=True, message=confirmation_message(request), data={"topic": topic})


def build_mqtt_handlers(
    publisher: Publisher,
    topics: Mapping[str, str],
    intents: tuple[Intent, ...],
) -> dict[Intent, ActionHandler]:
    """Register one shared MQTT handler for every given intent."""
    handler = MqttActionHandler(publisher, topics)
    return {intent: handler for intent in intents}
